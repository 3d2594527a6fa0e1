import random

import pytest

from slc.errors import ConfigError, CycleError
from slc.graph import DependencyGraph


def test_three_tier_order():
    g = DependencyGraph({"frontend": ["backend"], "backend": ["db"], "db": []})
    assert g.topological_order() == ["db", "backend", "frontend"]
    assert g.dependents_of("db") == {"backend"}
    assert g.dependencies_of("frontend") == {"backend"}


def test_ties_are_broken_by_name():
    g = DependencyGraph({"web": ["db"], "api": ["db"], "db": [], "cache": []})
    assert g.topological_order() == ["cache", "db", "api", "web"]


@pytest.mark.parametrize("seed", range(25))
def test_random_dags_respect_every_edge(seed):
    rng = random.Random(seed)
    names = [f"s{i}" for i in range(rng.randint(1, 12))]
    rng.shuffle(names)
    # Edges only point to earlier names in the shuffled list, so the graph is acyclic.
    edges = {n: [m for m in names[:i] if rng.random() < 0.3] for i, n in enumerate(names)}

    order = DependencyGraph(edges).topological_order()

    assert sorted(order) == sorted(names)
    pos = {n: i for i, n in enumerate(order)}
    for n, deps in edges.items():
        for d in deps:
            assert pos[d] < pos[n]


def test_cycle_is_rejected_and_named():
    with pytest.raises(CycleError) as ei:
        DependencyGraph({"a": ["c"], "b": ["a"], "c": ["b"], "d": []})
    cycle = ei.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_self_loop_is_a_cycle():
    with pytest.raises(CycleError):
        DependencyGraph({"a": ["a"]})


def test_unknown_dependency():
    with pytest.raises(ConfigError):
        DependencyGraph({"a": ["ghost"]})


def test_transitive_dependents_and_dependencies():
    g = DependencyGraph({"frontend": ["backend"], "backend": ["db"], "db": [], "cache": []})
    assert g.all_dependents_of("db") == {"backend", "frontend"}
    assert g.all_dependencies_of("frontend") == {"backend", "db"}
    assert g.all_dependents_of("cache") == frozenset()
