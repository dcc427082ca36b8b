"""Kernel process wiring: connection config, session, channel threads, dispatcher,
execution coordinator and lifecycle."""
import logging, os, signal, threading
from . import debug
from .channels import HeartbeatThread, IOPubThread, RouterThread, StdinRouterThread, critical_threads
from .config import ConnectionConfig, KernelSettings
from .coordinator import ExecutionCoordinator
from .debug import dbg
from .dispatch import Dispatcher
from .errors import ConfigError
from .lifecycle import EXIT_CONFIG, EXIT_FATAL, KernelStateMachine, KernelStatus
from .wire import Message, Session
import zmq

log = logging.getLogger("ipyark.kernel")


def _install_thread_excepthook(kernel:"Kernel"):
    prev = threading.excepthook
    def hook(args):
        prev(args)
        name = getattr(args.thread, "name", "")
        if name not in critical_threads: return
        log.error("Critical thread crashed: %s", name, exc_info=(args.exc_type, args.exc_value, args.exc_traceback))
        kernel.fail(f"{name} crashed")
    threading.excepthook = hook
    return prev


class IOPubCommand:
    def __init__(self, kernel:"Kernel"):
        "Proxy iopub_send by attribute name."
        self.kernel = kernel

    def send(self, msg_type:str, parent:Message|None, content:dict|None=None, metadata:dict|None=None,
        ident=None, buffers=None, **kwargs):
        "Send an IOPub message with an explicit msg_type."
        self.kernel.iopub_send(msg_type, parent, content, metadata, ident, buffers, **kwargs)

    def __getattr__(self, name:str):
        "Return a callable that sends the named IOPub message type."
        if name.startswith("_"): raise AttributeError(name)
        def _send(parent:Message|None, content:dict|None=None, metadata:dict|None=None, ident=None, buffers=None, **kwargs):
            self.kernel.iopub_send(name, parent, content, metadata, ident, buffers, **kwargs)
        _send.__name__ = name
        return _send


class Kernel:
    def __init__(self, config:ConnectionConfig, runtime=None, settings:KernelSettings|None=None):
        "Create sockets' threads and the runtime owner; nothing is bound until `start`."
        self.config = config
        self.settings = settings or KernelSettings.from_env()
        self.session = Session.from_config(config)
        self.context = zmq.Context()
        self.lifecycle = KernelStateMachine()
        s = self.settings
        self.iopub_thread = IOPubThread(self.context, config.addr(config.iopub_port), self.session, qmax=s.iopub_qmax,
            put_timeout=s.iopub_put_timeout, sndhwm=s.iopub_sndhwm)
        self.stdin_router = StdinRouterThread(self.context, config.addr(config.stdin_port), self.session)
        self.hb = HeartbeatThread(self.context, config.addr(config.hb_port))
        if runtime is None:
            from .bridge import IPythonRuntime
            runtime = IPythonRuntime()
        self.coordinator = ExecutionCoordinator(self, runtime, qmax=s.shell_qmax)
        self.dispatcher = Dispatcher(self, self.coordinator, self.lifecycle)
        self.shell_router = RouterThread(self.context, config.addr(config.shell_port), self.session, self.dispatcher.on_shell, "shell")
        self.control_router = RouterThread(self.context, config.addr(config.control_port), self.session, self.dispatcher.on_control, "control")
        self.iopub = IOPubCommand(self)
        self.watchdog = None

    @property
    def threads(self)->list[threading.Thread]:
        return [self.iopub_thread, self.stdin_router, self.hb, self.shell_router, self.control_router]

    def start(self)->int:
        "Bind every channel, serve Shell traffic on this thread until shutdown; returns the exit code."
        debug.setup()
        dbg("kernel starting...")
        prev_hook = _install_thread_excepthook(self)
        prev_sigint = signal.signal(signal.SIGINT, self.handle_sigint)
        try:
            for t in self.threads: t.start()
            if self._await_ready(): self.serve()
        finally:
            threading.excepthook = prev_hook
            self.teardown()
            signal.signal(signal.SIGINT, prev_sigint)
        return self.lifecycle.stopped()

    def _await_ready(self)->bool:
        "Wait for every channel to bind; a thread that dies first has already failed the kernel."
        for t in self.threads:
            while not t.ready.wait(0.1):
                if not t.is_alive() or self.lifecycle.shutting_down: return False
        return not self.lifecycle.shutting_down

    def serve(self):
        self.coordinator.status(KernelStatus.STARTING, None)
        try: self.coordinator.start()
        except Exception as exc:
            log.error("Runtime failed to start", exc_info=exc)
            self.coordinator.status(KernelStatus.DEAD, None)
            return self.fail(f"runtime failed to start: {exc}")
        self.lifecycle.ready()
        dbg("kernel ready")
        self.coordinator.status(KernelStatus.IDLE, None)
        try: self.coordinator.serve()
        finally:
            try: self.coordinator.runtime.shutdown()
            except Exception: log.warning("Runtime shutdown failed", exc_info=True)

    def teardown(self):
        "Stop channel threads, flushing queued replies and IOPub output first."
        for router in (self.shell_router, self.control_router): router.stop()
        for router in (self.shell_router, self.control_router): router.join(timeout=1)
        for t in (self.hb, self.stdin_router): t.stop()
        self.iopub_thread.stop()
        for t in (self.hb, self.stdin_router, self.iopub_thread): t.join(timeout=1)
        if not any(t.is_alive() for t in self.threads): self.context.term()

    # Signals and failure

    def handle_sigint(self, signum, frame):
        "Turn SIGINT into KeyboardInterrupt only while user code is running."
        if not self.coordinator.executing.is_set():
            dbg("SIGINT while idle; ignored")
            return
        self.stdin_router.interrupt_pending()
        raise KeyboardInterrupt

    def fail(self, reason:str):
        "Shut down with a non-zero exit code."
        self.lifecycle.fatal(reason)
        self.coordinator.stop()
        self.begin_shutdown()

    def runtime_failed(self, exc:BaseException): self.fail(f"runtime failure: {exc}")

    def begin_shutdown(self):
        "Arm the watchdog that terminates the process if shutdown stalls."
        if self.watchdog is not None: return
        self.watchdog = threading.Timer(self.settings.shutdown_timeout, self._force_exit)
        self.watchdog.daemon = True
        self.watchdog.start()

    def _force_exit(self):
        code = self.lifecycle.exit_code
        log.error("Shutdown did not complete within %.1fs; exiting", self.settings.shutdown_timeout)
        os._exit(code)

    # Outbound traffic

    def send_reply(self, parent:Message, msg_type:str, content:dict, channel:str="shell"):
        "Queue a reply to `parent` on the channel it arrived on."
        msg = self.session.msg(msg_type, content, parent=parent)
        debug.tlog(log, f"{channel} reply", msg)
        (self.control_router if channel == "control" else self.shell_router).enqueue(msg)

    def iopub_send(self, msg_type:str, parent:Message|None, content:dict|None=None, metadata:dict|None=None,
        ident=None, buffers=None, **kwargs):
        "Queue an IOPub message with optional metadata and buffers."
        if kwargs: content = dict(content or {}) | kwargs
        msg = self.session.msg(msg_type, content, parent=parent, metadata=metadata, buffers=buffers, idents=ident or ())
        self.iopub_thread.send(msg)

    def request_input(self, prompt:str, password:bool, parent:Message)->str: return self.stdin_router.request_input(prompt, password, parent)

    def interrupt_input(self): self.stdin_router.interrupt_pending()


def run_kernel(connection_file:str, runtime=None)->int:
    "Run kernel given a connection file path; returns the process exit code."
    try: config = ConnectionConfig.from_file(connection_file)
    except ConfigError as exc:
        log.error("Invalid connection file: %s", exc)
        return EXIT_CONFIG
    try: kernel = Kernel(config, runtime)
    except ConfigError as exc:
        log.error("Invalid kernel configuration: %s", exc)
        return EXIT_CONFIG
    except Exception as exc:
        log.error("Kernel failed to initialize", exc_info=exc)
        return EXIT_FATAL
    return kernel.start()
