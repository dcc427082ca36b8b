"Connection descriptor and environment-driven kernel settings."
import hashlib, json, logging, os, uuid
from dataclasses import dataclass, field
from .errors import ConfigError

log = logging.getLogger("ipyark.config")

port_fields = ("shell_port", "iopub_port", "stdin_port", "control_port", "hb_port")


def digest_name(signature_scheme:str)->str:
    "Map `hmac-<hash>` to a hashlib name, raising ConfigError when unsupported."
    scheme, _, name = (signature_scheme or "").partition("-")
    if scheme != "hmac" or not name: raise ConfigError(f"unsupported signature scheme {signature_scheme!r}")
    if name not in hashlib.algorithms_available or not callable(getattr(hashlib, name, None)):
        raise ConfigError(f"unsupported signature hash {name!r}")
    return name


@dataclass(frozen=True)
class ConnectionConfig:
    transport:str
    ip:str
    shell_port:int
    iopub_port:int
    stdin_port:int
    control_port:int
    hb_port:int
    key:bytes = b""
    signature_scheme:str = "hmac-sha256"
    session_id:str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self): digest_name(self.signature_scheme)

    @classmethod
    def from_dict(cls, data)->"ConnectionConfig":
        "Validate a parsed connection descriptor."
        if not isinstance(data, dict): raise ConfigError("connection descriptor must be a JSON object")
        missing = [k for k in ("transport", "ip", *port_fields) if k not in data]
        if missing: raise ConfigError(f"connection descriptor missing fields: {', '.join(missing)}")
        transport, ip = data["transport"], data["ip"]
        if transport not in ("tcp", "ipc"): raise ConfigError(f"unsupported transport {transport!r}")
        if not isinstance(ip, str) or not ip: raise ConfigError("connection descriptor has an empty ip")
        ports = {}
        for name in port_fields:
            raw = data[name]
            if isinstance(raw, bool): raise ConfigError(f"{name} must be an integer")
            try: ports[name] = int(raw)
            except (TypeError, ValueError): raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
            if transport == "tcp" and not 0 < ports[name] < 65536: raise ConfigError(f"{name} out of range: {ports[name]}")
        key = data.get("key", "")
        if not isinstance(key, (str, bytes)): raise ConfigError("key must be a string")
        if isinstance(key, str): key = key.encode()
        scheme = data.get("signature_scheme") or "hmac-sha256"
        return cls(transport=transport, ip=ip, key=key, signature_scheme=scheme, **ports)

    @classmethod
    def from_file(cls, path:str)->"ConnectionConfig":
        "Load connection info from JSON connection file at `path`."
        try:
            with open(path, encoding="utf-8") as f: data = json.load(f)
        except OSError as exc: raise ConfigError(f"cannot read connection file {path}: {exc}") from exc
        except json.JSONDecodeError as exc: raise ConfigError(f"connection file {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    @property
    def digest(self)->str: return digest_name(self.signature_scheme)

    def addr(self, port:int)->str:
        if self.transport == "ipc": return f"ipc://{self.ip}-{port}"
        return f"{self.transport}://{self.ip}:{port}"


def _env_float(name:str, default:float)->float:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default


def _env_int(name:str, default:int)->int:
    raw = os.environ.get(name)
    if raw is None: return default
    try: return int(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class KernelSettings:
    shutdown_timeout:float = 5.0
    shell_qmax:int = 1000
    iopub_qmax:int = 10000
    iopub_put_timeout:float = 5.0
    iopub_sndhwm:int|None = None

    @classmethod
    def from_env(cls)->"KernelSettings":
        "Read IPYARK_* tunables from the environment."
        hwm = _env_int("IPYARK_IOPUB_SNDHWM", 0)
        return cls(shutdown_timeout=_env_float("IPYARK_SHUTDOWN_TIMEOUT", 5.0), shell_qmax=max(1, _env_int("IPYARK_SHELL_QMAX", 1000)),
            iopub_qmax=max(1, _env_int("IPYARK_IOPUB_QMAX", 10000)), iopub_put_timeout=_env_float("IPYARK_IOPUB_PUT_TIMEOUT", 5.0),
            iopub_sndhwm=hwm or None)
