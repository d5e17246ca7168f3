"""Tests for ReplicationConfig and topology loading."""
from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
import yaml

import georeplication
from georeplication.topology.config import (
    ReplicationConfig, Topology, load_topology, validate_topology,
)
from georeplication.topology.models import (
    ConfigValidationError, FailoverGroup, Site, SiteRole, SiteStatus,
)

EXAMPLE = Path(georeplication.__file__).parent / "topology.example.yaml"


def _write(tmp_path: Path, data: dict) -> str:
    path = tmp_path / "topology.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_env_defaults(monkeypatch):
    monkeypatch.setenv("MAX_REPLICATION_LAG_MS", "1234")
    monkeypatch.setenv("AUTOMATIC_FAILOVER", "true")
    cfg = ReplicationConfig()
    assert cfg.max_lag_ms == 1234
    assert cfg.automatic_failover is True


def test_config_is_frozen():
    cfg = ReplicationConfig(max_lag_ms=100)
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.max_lag_ms = 200  # type: ignore[misc]


def test_rejects_non_positive_values():
    with pytest.raises(ConfigValidationError):
        ReplicationConfig(probe_timeout_s=0)
    with pytest.raises(ConfigValidationError):
        ReplicationConfig(status_port=70000)


def test_from_yaml_overlays_settings(tmp_path):
    path = _write(tmp_path, {"settings": {"max_lag_ms": 777, "rollback_on_failure": True}})
    cfg = ReplicationConfig.from_yaml(path)
    assert cfg.max_lag_ms == 777
    assert cfg.rollback_on_failure is True


def test_from_yaml_rejects_unknown_setting(tmp_path):
    path = _write(tmp_path, {"settings": {"max_lagg_ms": 1}})
    with pytest.raises(ConfigValidationError, match="max_lagg_ms"):
        ReplicationConfig.from_yaml(path)


def test_load_example_topology():
    cfg = ReplicationConfig.from_yaml(str(EXAMPLE))
    topology = load_topology(str(EXAMPLE), cfg)

    assert [s.id for s in topology.sites] == ["primary-nyc", "replica-chicago", "replica-london", "dr-tokyo"]
    tokyo = topology.sites[3]
    assert tokyo.role == SiteRole.DISASTER_RECOVERY
    assert tokyo.status == SiteStatus.STANDBY
    assert tokyo.capacity.cpu == 64
    assert "PCI-DSS" in tokyo.compliance_tags

    groups = {g.id: g for g in topology.failover_groups}
    assert groups["us-group"].auto_failover is True
    assert groups["global-group"].ordered_candidate_site_ids == ["replica-chicago", "replica-london", "dr-tokyo"]
    assert groups["global-group"].max_failover_duration_ms == 600000
    assert groups["us-group"].max_failover_duration_ms == cfg.failover_timeout_ms


def test_group_defaults_come_from_config(tmp_path):
    path = _write(tmp_path, {
        "sites": [
            {"id": "a", "role": "primary", "region": "r1"},
            {"id": "b", "role": "replica", "region": "r2"},
        ],
        "failover_groups": [
            {"id": "g", "primary_site_id": "a", "ordered_candidate_site_ids": ["b"]},
        ],
    })
    cfg = ReplicationConfig(automatic_failover=True, failover_timeout_ms=1234)
    group = load_topology(path, cfg).failover_groups[0]
    assert group.auto_failover is True
    assert group.max_failover_duration_ms == 1234
    assert group.name == "g"


def test_invalid_site_entry(tmp_path):
    path = _write(tmp_path, {"sites": [{"id": "a", "role": "leader", "region": "r1"}]})
    with pytest.raises(ConfigValidationError):
        load_topology(path, ReplicationConfig())


def _topology(*sites: Site, groups: tuple = ()) -> Topology:
    return Topology(sites=list(sites), failover_groups=list(groups))


def test_validate_requires_exactly_one_primary():
    with pytest.raises(ConfigValidationError):
        validate_topology(_topology(Site(id="a", role=SiteRole.REPLICA, region="r")))
    with pytest.raises(ConfigValidationError):
        validate_topology(_topology(
            Site(id="a", role=SiteRole.PRIMARY, region="r"),
            Site(id="b", role=SiteRole.PRIMARY, region="r"),
        ))


def test_validate_rejects_duplicate_ids():
    with pytest.raises(ConfigValidationError):
        validate_topology(_topology(
            Site(id="a", role=SiteRole.PRIMARY, region="r"),
            Site(id="a", role=SiteRole.REPLICA, region="r"),
        ))


def test_validate_rejects_unknown_group_sites():
    with pytest.raises(ConfigValidationError, match="ghost"):
        validate_topology(_topology(
            Site(id="a", role=SiteRole.PRIMARY, region="r"),
            groups=(FailoverGroup(id="g", primary_site_id="a", ordered_candidate_site_ids=["ghost"]),),
        ))
