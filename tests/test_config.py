import json, pytest
from ipyark.config import ConnectionConfig, KernelSettings, digest_name
from ipyark.errors import ConfigError

GOOD = dict(transport="tcp", ip="127.0.0.1", shell_port=50001, iopub_port=50002, stdin_port=50003, control_port=50004,
    hb_port=50005, key="a0436f6c-1916-498b-8eb9-e81ab9368e84", signature_scheme="hmac-sha256")


def test_from_dict():
    cfg = ConnectionConfig.from_dict(GOOD)
    assert cfg.key == GOOD["key"].encode()
    assert cfg.shell_port == 50001 and cfg.hb_port == 50005
    assert cfg.addr(cfg.iopub_port) == "tcp://127.0.0.1:50002"
    assert cfg.digest == "sha256"


def test_string_ports_are_accepted():
    cfg = ConnectionConfig.from_dict(GOOD | dict(shell_port="50011"))
    assert cfg.shell_port == 50011


def test_defaults_for_optional_fields():
    data = {k: v for k, v in GOOD.items() if k not in ("key", "signature_scheme")}
    cfg = ConnectionConfig.from_dict(data)
    assert cfg.key == b"" and cfg.signature_scheme == "hmac-sha256"


@pytest.mark.parametrize("bad", [dict(shell_port="nope"), dict(hb_port=70000), dict(control_port=0), dict(iopub_port=True),
    dict(transport="udp"), dict(ip=""), dict(key=12), dict(signature_scheme="hmac-nosuchhash")])
def test_invalid_fields(bad):
    with pytest.raises(ConfigError): ConnectionConfig.from_dict(GOOD | bad)


def test_missing_field_is_named():
    data = dict(GOOD)
    del data["stdin_port"]
    with pytest.raises(ConfigError, match="stdin_port"): ConnectionConfig.from_dict(data)


def test_ipc_addresses():
    cfg = ConnectionConfig.from_dict(GOOD | dict(transport="ipc", ip="/tmp/kernel", shell_port=1))
    assert cfg.addr(cfg.shell_port) == "ipc:///tmp/kernel-1"


def test_from_file(tmp_path):
    path = tmp_path / "conn.json"
    path.write_text(json.dumps(GOOD))
    assert ConnectionConfig.from_file(str(path)).control_port == 50004
    path.write_text("{broken")
    with pytest.raises(ConfigError): ConnectionConfig.from_file(str(path))
    with pytest.raises(ConfigError): ConnectionConfig.from_file(str(tmp_path / "missing.json"))
    path.write_text("[]")
    with pytest.raises(ConfigError): ConnectionConfig.from_file(str(path))


def test_digest_name():
    assert digest_name("hmac-sha512") == "sha512"
    with pytest.raises(ConfigError): digest_name("sha256")


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("IPYARK_SHUTDOWN_TIMEOUT", "1.5")
    monkeypatch.setenv("IPYARK_SHELL_QMAX", "7")
    monkeypatch.setenv("IPYARK_IOPUB_SNDHWM", "100")
    s = KernelSettings.from_env()
    assert s.shutdown_timeout == 1.5 and s.shell_qmax == 7 and s.iopub_sndhwm == 100
    assert s.iopub_qmax == 10000


def test_invalid_settings_fall_back(monkeypatch):
    monkeypatch.setenv("IPYARK_SHUTDOWN_TIMEOUT", "soon")
    monkeypatch.setenv("IPYARK_IOPUB_QMAX", "lots")
    monkeypatch.delenv("IPYARK_IOPUB_SNDHWM", raising=False)
    s = KernelSettings.from_env()
    assert s.shutdown_timeout == 5.0 and s.iopub_qmax == 10000 and s.iopub_sndhwm is None
