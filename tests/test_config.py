import pytest

from slc import config
from slc.config import load_config, parse_config
from slc.errors import ConfigError, CycleError
from slc.settings import Settings

from conftest import three_tier

YAML = """
services:
  db:
    image: postgres
    version: "16"
    port: 5432
    replicas: 1
    min_replicas: 1
    max_replicas: 1
  backend:
    image: registry.local/backend
    version: v1
    port: 8000
    depends_on: [db]
    replicas: 3
    max_replicas: 6
    health:
      path: /ready
      healthy_threshold: 4
    rollout:
      batch_size: 2
backups:
  - name: nightly
    target: db
    schedule: "0 3 * * *"
    image: registry.local/pg-snapshot:latest
"""


def test_load_yaml(tmp_path):
    p = tmp_path / "slc.yaml"
    p.write_text(YAML)
    cfg = load_config(str(p))

    backend = cfg.services["backend"]
    assert backend.depends_on == ("db",)
    assert backend.health.path == "/ready"
    assert backend.health.healthy_threshold == 4
    assert backend.health.unhealthy_threshold == 2
    assert backend.rollout.batch_size == 2
    assert backend.rollout.batch_timeout_s == 60.0
    assert backend.startup_timeout_s == 120.0
    assert cfg.backups[0].timeout_s == 1800.0
    assert cfg.graph().topological_order() == ["db", "backend"]


def test_config_is_frozen():
    cfg = parse_config(three_tier())
    with pytest.raises(Exception):
        cfg.services["db"].replicas = 5


def test_missing_file():
    with pytest.raises(ConfigError):
        load_config("/nonexistent/slc.yaml")


def test_cycle_fails_the_load():
    raw = three_tier()
    raw["services"]["db"]["depends_on"] = ["frontend"]
    with pytest.raises(CycleError):
        parse_config(raw)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda raw: raw["services"]["backend"].update(replicas=9, max_replicas=6),
        lambda raw: raw["services"]["backend"].update(depends_on=["ghost"]),
        lambda raw: raw["services"]["backend"].update(version="bad version!"),
        lambda raw: raw["services"]["backend"].update(health={"path": "http://evil/health"}),
        lambda raw: raw["backups"][0].update(schedule="every day"),
        lambda raw: raw["backups"][0].update(target="cache"),
        lambda raw: raw["services"].update(Bad_Name=dict(raw["services"]["db"])),
    ],
)
def test_invalid_configs(mutate):
    raw = three_tier()
    mutate(raw)
    with pytest.raises(ConfigError):
        parse_config(raw)


def test_probe_timeout_defaults_to_setting(monkeypatch):
    monkeypatch.setattr(config, "settings", Settings(probe_timeout_s=7.5))
    cfg = parse_config(three_tier())
    assert cfg.services["backend"].health.timeout_s == 7.5

    raw = three_tier()
    raw["services"]["backend"]["health"] = {"timeout_s": 1.5}
    assert parse_config(raw).services["backend"].health.timeout_s == 1.5
