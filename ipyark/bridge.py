"IPython-backed runtime: runs cells in an InteractiveShell and streams output through the host."
import builtins, getpass, logging, os, platform, signal, sys
from contextlib import contextmanager
from IPython.core.displayhook import DisplayHook
from IPython.core.displaypub import DisplayPublisher
from IPython.core.interactiveshell import InteractiveShell
from IPython.core.shellapp import InteractiveShellApp
from IPython.core.application import BaseIPythonApplication
from .errors import ExecutionError
from .runtime import Completeness, EvalResult, Runtime, RuntimeInfo

log = logging.getLogger("ipyark.bridge")
_STARTUP_DONE = False


class StdinNotImplementedError(RuntimeError): pass


class MiniStream:
    def __init__(self, name:str, sink):
        "Line-buffered stream that hands complete lines to `sink(name, text)`."
        self.name, self._sink = name, sink
        self._buffer = ""

    def write(self, value)->int:
        if value is None: return 0
        if isinstance(value, bytes): text = value.decode(errors="replace")
        else: text = value if isinstance(value, str) else str(value)
        if not text: return 0
        self._buffer += text
        if "\n" in self._buffer:
            head, _, self._buffer = self._buffer.rpartition("\n")
            self._sink(self.name, head + "\n")
        return len(text)

    def writelines(self, lines)->int: return sum(self.write(line) or 0 for line in lines)

    def flush(self):
        "Hand any partial line to the sink."
        if self._buffer: self._sink(self.name, self.take())

    def take(self)->str:
        text, self._buffer = self._buffer, ""
        return text

    def isatty(self)->bool: return False


class MiniDisplayPublisher(DisplayPublisher):
    def __init__(self, runtime:"IPythonRuntime"):
        "Forward display_pub events to the runtime host."
        super().__init__()
        self.runtime = runtime

    def publish(self, data, metadata=None, source=None, *, transient=None, update=False, **kwargs):
        self.runtime.display(data, metadata, transient, update)

    def clear_output(self, wait:bool=False): self.runtime.clear_output(wait)


class MiniDisplayHook(DisplayHook):
    def __init__(self, shell=None):
        "DisplayHook that captures last result metadata."
        super().__init__(shell=shell)
        self.last = None
        self.last_metadata = None

    def write_output_prompt(self): pass

    def write_format_data(self, format_dict, md_dict=None):
        self.last = format_dict
        self.last_metadata = md_dict or {}

    def finish_displayhook(self): self._is_active = False


class _MiniShellApp(BaseIPythonApplication, InteractiveShellApp):
    "Minimal IPython app for loading config/extensions/startup."
    name = "ipython-kernel"

    def __init__(self, shell, **kwargs):
        super().__init__(**kwargs)
        self.shell = shell

    def init_shell(self):
        if self.shell: self.shell.configurables.append(self)

def _init_ipython_app(shell):
    "Load IPython config, extensions, and startup files once per process."
    global _STARTUP_DONE
    if _STARTUP_DONE: return
    app = _MiniShellApp(shell)
    app.init_profile_dir()
    app.init_config_files()
    app.load_config_file()
    app.init_path()
    app.init_shell()
    app.init_extensions()
    app.init_code()
    _STARTUP_DONE = True


class IPythonRuntime(Runtime):
    "Python via IPython; interrupted with SIGINT, which surfaces as KeyboardInterrupt in the cell."
    supports_interrupt = True

    def __init__(self, user_ns:dict|None=None, load_startup:bool=True):
        from IPython.core import page
        os.environ.setdefault("MPLBACKEND", "module://matplotlib_inline.backend_inline")
        self.host = None
        self.allow_stdin = False
        self.shell = InteractiveShell.instance(user_ns=user_ns)
        self.shell.display_pub = MiniDisplayPublisher(self)
        self.shell.displayhook = MiniDisplayHook(shell=self.shell)
        self.shell.display_trap.hook = self.shell.displayhook
        self.stdout = MiniStream("stdout", self._emit_stream)
        self.stderr = MiniStream("stderr", self._emit_stream)
        self.shell.set_hook("show_in_pager", page.as_hook(self._page), 99)
        self.last_traceback = None

        def _showtraceback(etype, evalue, stb): self.last_traceback = stb
        def _enable_gui(gui=None): self.shell.active_eventloop = gui

        self.shell._showtraceback = _showtraceback
        self.shell.enable_gui = _enable_gui
        if load_startup: _init_ipython_app(self.shell)

    def describe(self)->RuntimeInfo:
        import IPython
        return RuntimeInfo(language="python", version=platform.python_version(), banner=f"ipyark on IPython {IPython.__version__}",
            file_extension=".py", mimetype="text/x-python", pygments_lexer="ipython3", codemirror_mode=dict(name="ipython", version=3))

    # Output routing

    def _emit_stream(self, name:str, text:str):
        if self.host is not None and text: self.host.stream(name, text)

    def flush_streams(self):
        self.stdout.flush()
        self.stderr.flush()

    def display(self, data, metadata=None, transient=None, update=False):
        self.flush_streams()
        if self.host is not None: self.host.display(data, metadata, transient, update)

    def clear_output(self, wait:bool=False):
        self.flush_streams()
        if self.host is not None: self.host.clear_output(wait)

    def _page(self, strg, start:int=0, screen_lines:int=0, pager_cmd=None):
        "Show pager output as display data."
        self.display(strg if isinstance(strg, dict) else {"text/plain": strg})

    def _input(self, prompt:str="")->str:
        if not self.allow_stdin or self.host is None:
            raise StdinNotImplementedError("raw_input was called, but this frontend does not support input requests.")
        self.flush_streams()
        return self.host.request_input(str(prompt), False)

    def _getpass(self, prompt:str="Password: ", stream=None)->str:
        if not self.allow_stdin or self.host is None:
            raise StdinNotImplementedError("getpass was called, but this frontend does not support input requests.")
        self.flush_streams()
        return self.host.request_input(str(prompt), True)

    @contextmanager
    def _capture_io(self, allow_stdin:bool):
        "Route stdout/stderr/input/getpass to this runtime for one evaluation."
        saved = sys.stdout, sys.stderr, builtins.input, getpass.getpass
        sys.stdout, sys.stderr = self.stdout, self.stderr
        builtins.input, getpass.getpass = self._input, self._getpass
        self.allow_stdin = allow_stdin
        try: yield
        finally:
            sys.stdout, sys.stderr, builtins.input, getpass.getpass = saved
            self.allow_stdin = False

    # Runtime

    def evaluate(self, code:str, want_result:bool, *, store_history:bool=True, allow_stdin:bool=False)->EvalResult:
        hook = self.shell.displayhook
        hook.last = hook.last_metadata = None
        self.last_traceback = None
        with self._capture_io(allow_stdin):
            result = self.shell.run_cell(code, store_history=store_history, silent=not want_result)
        streams = [(s.name, text) for s in (self.stdout, self.stderr) if (text := s.take())]
        err = result.error_in_exec or result.error_before_exec
        if err is not None:
            error = ExecutionError(type(err).__name__, str(err), self.last_traceback or [])
            return EvalResult.failed(error, streams=streams)
        data = hook.last if want_result else None
        return EvalResult(data=data or None, metadata=hook.last_metadata or {}, streams=streams)

    def check_complete(self, code:str)->tuple[Completeness, str]:
        status, indent_spaces = self.shell.input_transformer_manager.check_complete(code)
        indent = " " * (indent_spaces or 0) if status == "incomplete" else ""
        return Completeness(status), indent

    def interrupt(self):
        "Send SIGINT to this process; the kernel's handler raises KeyboardInterrupt in the running cell."
        if os.name == "nt":
            log.warning("Interrupt request not supported on Windows")
            return
        try: os.kill(os.getpid(), signal.SIGINT)
        except OSError as err: log.warning("Interrupt signal failed: %s", err)

    def shutdown(self):
        try: self.shell.history_manager.end_session()
        except Exception: log.warning("Failed to close IPython history session", exc_info=True)
