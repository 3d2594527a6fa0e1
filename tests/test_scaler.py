from threading import Event

import pytest

from slc.errors import BoundsError, OperationInProgress

from conftest import three_tier


def test_scale_up_waits_for_health(started):
    ctl, fake = started

    result = ctl.scaler.scale("backend", 5)

    assert result.ok
    assert result.replicas == 5
    rec = ctl.registry.get("backend")
    assert rec.available_replicas == 5
    assert rec.desired_replicas == 5
    assert fake.versions_of("backend") == ["v1"] * 5


def test_scale_up_uses_stable_version(started):
    ctl, fake = started
    assert ctl.rollouts.rollout("backend", "v2").ok

    ctl.scaler.scale("backend", 4)

    assert fake.versions_of("backend") == ["v2"] * 4


def test_scale_down_is_lifo(started):
    ctl, fake = started
    ctl.scaler.scale("backend", 5)
    ids = fake.ids_of("backend")

    result = ctl.scaler.scale("backend", 2)

    assert result.ok
    assert fake.ids_of("backend") == ids[:2]
    removed = [c[2] for c in fake.calls if c[0] == "remove_replica"]
    assert removed == [ids[4], ids[3], ids[2]]


@pytest.mark.parametrize("target", [0, 7, -1])
def test_out_of_bounds_is_rejected(started, target):
    ctl, fake = started
    before = fake.ids_of("backend")
    calls = len(fake.calls)

    with pytest.raises(BoundsError):
        ctl.scaler.scale("backend", target)

    assert fake.ids_of("backend") == before
    assert len(fake.calls) == calls
    assert ctl.registry.get("backend").desired_replicas == 3


def test_dependency_of_running_service_cannot_go_to_zero(make_controller):
    raw = three_tier()
    raw["services"]["backend"]["min_replicas"] = 0
    ctl, fake = make_controller(raw)
    assert ctl.start().ok

    with pytest.raises(BoundsError):
        ctl.scaler.scale("backend", 0)
    assert fake.versions_of("backend") == ["v1"] * 3

    # Leaf services may go to zero.
    assert ctl.scaler.scale("frontend", 0).ok
    assert fake.ids_of("frontend") == []
    # Now nothing running depends on backend.
    assert ctl.scaler.scale("backend", 0).ok


def test_unhealthy_new_replica_is_removed(started):
    ctl, fake = started
    fake.unhealthy_ids.add("backend-6")

    result = ctl.scaler.scale("backend", 4)

    assert not result.ok
    assert result.outcome == "failed"
    assert result.replicas == 3
    assert "backend-6" not in fake.ids_of("backend")
    assert ctl.registry.get("backend").desired_replicas == 3


def test_cancelled_scale_stops_between_replicas(started):
    ctl, fake = started
    cancel = Event()
    cancel.set()

    result = ctl.scaler.scale("backend", 5, cancel=cancel)

    assert not result.ok
    assert result.replicas == 3


def test_scale_is_serialized_with_rollout(started):
    ctl, _ = started
    ctl.registry.begin_operation("backend", "rollout")
    try:
        with pytest.raises(OperationInProgress):
            ctl.scaler.scale("backend", 4)
    finally:
        ctl.registry.end_operation("backend")


def test_orchestrator_error_keeps_last_known_good(started):
    ctl, fake = started
    fake.fail_on.add("set_replicas")

    result = ctl.scaler.scale("backend", 4)

    assert not result.ok
    assert "injected" in result.message
    assert result.replicas == 3
    assert ctl.registry.get("backend").desired_replicas == 3


def _all_optional():
    raw = three_tier()
    for name in ("db", "backend", "frontend"):
        raw["services"][name]["min_replicas"] = 0
    return raw


def test_indirect_dependent_keeps_database_up(make_controller):
    ctl, fake = make_controller(_all_optional())
    assert ctl.start().ok
    assert ctl.scaler.scale("frontend", 0).ok
    assert ctl.scaler.scale("backend", 0).ok

    # frontend cannot come back while backend has nothing running.
    with pytest.raises(BoundsError, match="backend"):
        ctl.scaler.scale("frontend", 1)
    assert fake.ids_of("frontend") == []

    # Nothing above db runs, so it may go to zero now; then backend cannot return.
    assert ctl.scaler.scale("db", 0).ok
    with pytest.raises(BoundsError, match="db"):
        ctl.scaler.scale("backend", 1)


def test_database_cannot_go_to_zero_under_a_transitive_dependent(make_controller):
    ctl, fake = make_controller(_all_optional())
    assert ctl.start().ok
    # Simulate a lone frontend: backend emptied behind the guard's back.
    for rid in fake.ids_of("backend"):
        fake.remove_replica("backend", rid)
    ctl.registry.sync_replicas("backend", fake.get_replica_status("backend"))

    with pytest.raises(BoundsError, match="frontend"):
        ctl.scaler.scale("db", 0)
    assert len(fake.ids_of("db")) == 1
