"""The runtime collaborator seam: the only calls the kernel makes into an embedded language.

A runtime is created on, and only ever called from, the runtime-owner thread. It may be
given a host (see `RuntimeHost`) to publish output live and to ask the front-end for input."""
from dataclasses import dataclass, field
from enum import Enum
from .errors import ExecutionError


class Completeness(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RuntimeInfo:
    language:str
    version:str
    banner:str = ""
    file_extension:str = ""
    mimetype:str = "text/plain"
    pygments_lexer:str|None = None
    codemirror_mode:dict|str|None = None

    def language_info(self)->dict:
        "Build the `language_info` block of kernel_info_reply."
        info = dict(name=self.language, version=self.version, mimetype=self.mimetype, file_extension=self.file_extension)
        if self.pygments_lexer: info["pygments_lexer"] = self.pygments_lexer
        if self.codemirror_mode: info["codemirror_mode"] = self.codemirror_mode
        return info


@dataclass
class EvalResult:
    status:str = "ok"
    data:dict|None = None
    metadata:dict = field(default_factory=dict)
    streams:list[tuple[str, str]] = field(default_factory=list)
    error:ExecutionError|None = None

    @classmethod
    def failed(cls, error:ExecutionError, streams=None)->"EvalResult": return cls(status="error", error=error, streams=list(streams or []))

    @property
    def value_repr(self)->str|None: return None if self.data is None else self.data.get("text/plain")

    @property
    def stdout_chunks(self)->list[str]: return [text for name, text in self.streams if name == "stdout"]

    @property
    def stderr_chunks(self)->list[str]: return [text for name, text in self.streams if name == "stderr"]


class RuntimeHost:
    "Callbacks a runtime may use mid-evaluation; bound to the request being executed."

    def stream(self, name:str, text:str): raise NotImplementedError

    def display(self, data:dict, metadata:dict|None=None, transient:dict|None=None, update:bool=False): raise NotImplementedError

    def clear_output(self, wait:bool=False): raise NotImplementedError

    def request_input(self, prompt:str, password:bool=False)->str: raise NotImplementedError


class Runtime:
    "Base class for embedded-language runtimes."
    supports_interrupt = False
    concurrent_introspection = False

    def bind(self, host:RuntimeHost): self.host = host

    def describe(self)->RuntimeInfo: raise NotImplementedError

    def evaluate(self, code:str, want_result:bool, *, store_history:bool=True, allow_stdin:bool=False)->EvalResult:
        raise NotImplementedError

    def check_complete(self, code:str)->tuple[Completeness, str]: raise NotImplementedError

    def interrupt(self):
        "Ask an in-flight `evaluate` to stop at its next safe point."
        raise NotImplementedError

    def shutdown(self): pass
