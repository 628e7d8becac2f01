import json

import pytest

from vmsupervisor.backend import DummyDriver
from vmsupervisor.config import ConfigManager, optional_seconds, resolve_capacity
from vmsupervisor.config import manager as config_manager
from vmsupervisor.orchestration import Supervisor


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("VMSUP_CONFIG", "VMSUP_BIND_HOST", "VMSUP_BIND_PORT"):
        monkeypatch.delenv(var, raising=False)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "supervisor.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return str(path)


class TestLoadAgentConfig:

    def test_defaults_without_file(self, tmp_path):
        cfg = ConfigManager(str(tmp_path / "missing.json")).load_agent_config()
        assert cfg["bind_host"] == "127.0.0.1"
        assert cfg["bind_port"] == 8080
        assert cfg["stop_vms_on_shutdown"] is True
        assert cfg["defaults"]["driver"]["name"] == "process"
        assert cfg["defaults"]["dispatcher"]["max_workers"] == 8

    def test_file_is_deep_merged(self, tmp_path):
        path = write_config(tmp_path, {
            "bind_port": 9000,
            "defaults": {"driver": {"name": "dummy"}, "host": {"memory_mb": 2048, "vcpus": 4}},
        })
        cfg = ConfigManager(path).load_agent_config()
        assert cfg["bind_port"] == 9000
        assert cfg["defaults"]["driver"] == {"name": "dummy"}
        assert cfg["defaults"]["host"] == {"memory_mb": 2048, "vcpus": 4}
        assert cfg["defaults"]["state"]["retention"]["keep_destroyed"] is True

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"bind_host": "10.0.0.1", "bind_port": 9000})
        monkeypatch.setenv("VMSUP_BIND_HOST", "0.0.0.0")
        monkeypatch.setenv("VMSUP_BIND_PORT", "9100")
        cfg = ConfigManager(path).load_agent_config()
        assert cfg["bind_host"] == "0.0.0.0"
        assert cfg["bind_port"] == 9100

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VMSUP_CONFIG", write_config(tmp_path, {"bind_port": 7000}))
        assert ConfigManager().load_agent_config()["bind_port"] == 7000

    def test_invalid_json_is_fatal(self, tmp_path):
        with pytest.raises(RuntimeError):
            ConfigManager(write_config(tmp_path, "{oops")).load_agent_config()

    def test_invalid_port_is_fatal(self, tmp_path):
        with pytest.raises(RuntimeError):
            ConfigManager(write_config(tmp_path, {"bind_port": "http"})).load_agent_config()

    def test_non_object_sections_rejected(self, tmp_path):
        with pytest.raises(RuntimeError):
            ConfigManager(write_config(tmp_path, {"defaults": []})).load_agent_config()


class TestCapacity:

    def test_explicit_capacity(self):
        capacity = resolve_capacity({"host": {"memory_mb": "4096", "vcpus": 8}})
        assert (capacity.memory_mb, capacity.vcpus) == (4096, 8)

    def test_capacity_from_host(self, monkeypatch):
        monkeypatch.setattr(config_manager, "host_summary", lambda: {"memory_mb": 8192, "cpu_count": 16})
        capacity = resolve_capacity({"host": {"reserved_memory_mb": 1024}})
        assert (capacity.memory_mb, capacity.vcpus) == (7168, 16)

    def test_invalid_capacity(self):
        with pytest.raises(RuntimeError):
            resolve_capacity({"host": {"memory_mb": 0, "vcpus": 1}})
        with pytest.raises(RuntimeError):
            resolve_capacity({"host": {"memory_mb": "lots", "vcpus": 1}})


def test_optional_seconds():
    assert optional_seconds(None) is None
    assert optional_seconds(0) is None
    assert optional_seconds("") is None
    assert optional_seconds("0") is None
    assert optional_seconds("0.0") is None
    assert optional_seconds("2.5") == 2.5
    with pytest.raises(RuntimeError):
        optional_seconds(-1)
    with pytest.raises(RuntimeError):
        optional_seconds("-3")
    with pytest.raises(RuntimeError):
        optional_seconds("soon")


def test_supervisor_from_defaults(tmp_path):
    supervisor = Supervisor.from_defaults({
        "host": {"memory_mb": 1024, "vcpus": 2},
        "driver": {"name": "dummy", "provision_delay": 0},
        "state": {"state_file": str(tmp_path / "vm-states.json"), "retention": {"max_tombstones": 5}},
        "timeouts": {"create": 30, "stop": None},
        "dispatcher": {"max_workers": 2},
    })
    assert isinstance(supervisor.engine.driver, DummyDriver)
    assert supervisor.ledger.capacity.memory_mb == 1024
    assert supervisor.registry.max_tombstones == 5
    assert supervisor.dispatcher.create_timeout == 30.0
    assert supervisor.dispatcher.stop_timeout is None
    assert supervisor.state_manager.enabled
    supervisor.shutdown()


def test_unknown_driver_rejected():
    with pytest.raises(ValueError):
        Supervisor.from_defaults({"host": {"memory_mb": 64, "vcpus": 1}, "driver": {"name": "xen"}})


class TestTLSOptions:

    def test_disabled_by_default(self):
        from vmsupervisor.agent import build_tls_options

        assert build_tls_options({}) == {}
        assert build_tls_options({"tls": {"enabled": False, "cert_file": "x"}}) == {}

    def test_enabled_with_files(self, tmp_path):
        import ssl

        from vmsupervisor.agent import build_tls_options

        cert = tmp_path / "cert.pem"
        key = tmp_path / "key.pem"
        ca = tmp_path / "ca.pem"
        for path in (cert, key, ca):
            path.write_text("dummy")
        options = build_tls_options({"tls": {
            "enabled": True, "cert_file": str(cert), "key_file": str(key),
            "ca_file": str(ca), "client_auth": "required",
        }})
        assert options["ssl_cert_reqs"] == ssl.CERT_REQUIRED
        assert options["ssl_ca_certs"] == str(ca)

    @pytest.mark.parametrize("tls", [
        {"enabled": True},
        {"enabled": True, "cert_file": "/nonexistent/cert.pem", "key_file": "/nonexistent/key.pem"},
    ])
    def test_misconfiguration_is_fatal(self, tls):
        from vmsupervisor.agent import build_tls_options

        with pytest.raises(RuntimeError):
            build_tls_options({"tls": tls})
