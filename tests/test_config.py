import pytest

from rsr.config import ConfigStore, ServiceSpec, parse_config, validate_health_path, validate_service_name
from rsr.errors import ConfigError


def test_defaults_for_empty_document():
    cfg = parse_config(None)
    assert cfg.manager.check_interval == 60
    assert cfg.manager.log_level == "info"
    assert cfg.manager.docker_network == "coolify"
    assert cfg.order == ()


def test_services_keep_file_order_and_isolate_bad_entries():
    cfg = parse_config(
        {
            "manager": {"check_interval": 30, "log_level": "WARNING"},
            "services": {
                "web": {"enabled": True, "primary_pattern": "web-", "health_endpoint": "/health", "health_port": 80},
                "broken": {"enabled": True, "primary_pattern": "x"},
                "scalar": "oops",
                "api": {"primary_pattern": "api-", "health_endpoint": "/health", "health_port": 3000},
            },
        }
    )

    assert cfg.order == ("web", "broken", "scalar", "api")
    assert cfg.manager.log_level == "warn"
    assert set(cfg.invalid) == {"broken", "scalar"}
    assert "health_port" in str(cfg.invalid["broken"])
    assert cfg.invalid["broken"].service == "broken"
    assert [s.name for s in cfg.enabled_services()] == ["web"]
    assert cfg.entry("api").enabled is False
    assert cfg.entry("missing") is None


def test_legacy_jq_key_and_null_path():
    spec = ServiceSpec.model_validate(
        {"name": "api", "primary_pattern": "api-", "health_endpoint": "/health", "health_port": 3000, "version_jq_path": ".build.version"}
    )
    assert spec.version_path == ".build.version"

    spec = ServiceSpec.model_validate({"name": "api", "primary_pattern": "api-", "health_endpoint": "/health", "health_port": 3000, "version_path": "null"})
    assert spec.version_path is None


@pytest.mark.parametrize(
    "override",
    [
        {"primary_pattern": "("},
        {"health_port": 0},
        {"health_port": 70000},
        {"health_endpoint": "health"},
        {"health_endpoint": "http://x/health"},
        {"version_path": ".a["},
    ],
)
def test_invalid_service_fields(override):
    body = {"enabled": True, "primary_pattern": "api-", "health_endpoint": "/health", "health_port": 3000, **override}
    cfg = parse_config({"services": {"api": body}})
    assert "api" in cfg.invalid


@pytest.mark.parametrize(
    "raw",
    [
        ["not", "a", "mapping"],
        {"manager": "nope"},
        {"manager": {"check_interval": 0}},
        {"manager": {"log_level": "verbose"}},
        {"services": ["api"]},
    ],
)
def test_document_level_errors_raise(raw):
    with pytest.raises(ConfigError):
        parse_config(raw)


def test_service_name_rules():
    validate_service_name("api-v2.internal")
    with pytest.raises(ValueError):
        validate_service_name("Api")
    with pytest.raises(ValueError):
        validate_service_name("-api")


def test_health_path_rules():
    validate_health_path("/api/health")
    for bad in ("/a b", "/../etc", "health"):
        with pytest.raises(ValueError):
            validate_health_path(bad)


def test_store_rereads_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("manager:\n  check_interval: 10\n")
    store = ConfigStore(str(path))
    assert store.load().manager.check_interval == 10

    path.write_text("manager:\n  check_interval: 20\n")
    assert store.load().manager.check_interval == 20


def test_store_missing_and_malformed(tmp_path):
    store = ConfigStore(str(tmp_path / "absent.yaml"))
    assert not store.exists()
    with pytest.raises(ConfigError, match="not found"):
        store.load()

    path = tmp_path / "bad.yaml"
    path.write_text("services: {api: [\n")
    with pytest.raises(ConfigError, match="not valid YAML"):
        ConfigStore(str(path)).load()


def test_validate_lists_every_problem(write_config):
    store = write_config(
        {
            "api": {"enabled": True, "primary_pattern": "api-"},
            "web": {"enabled": True, "primary_pattern": "web-", "health_endpoint": "/health", "health_port": 80},
            "db": {"health_port": "x"},
        }
    )
    problems = store.validate()
    assert len(problems) == 2
    assert any("'api'" in p for p in problems)
    assert any("'db'" in p for p in problems)


def test_missing_health_endpoint_makes_entry_incomplete():
    cfg = parse_config({"services": {"api": {"enabled": True, "primary_pattern": "api-", "health_port": 3000}}})
    assert "api" in cfg.invalid
    assert "health_endpoint" in str(cfg.invalid["api"])
    assert cfg.enabled_services() == []
