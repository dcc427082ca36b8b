"""Single-owner execution actor.

`ExecutionCoordinator.serve` runs on the runtime-owner thread and is the only code that calls
into the runtime. Other threads talk to it through `submit` (bounded queue) and the advisory
`interrupt`/`stop` signals; it publishes status, output and replies through the kernel."""
import logging, queue, threading
from contextlib import contextmanager, nullcontext
from enum import Enum
from .comms import get_comm_manager
from .debug import dbg, tlog
from .errors import ExecutionError, RuntimeFatal
from .lifecycle import KernelStatus
from .runtime import EvalResult, RuntimeHost
from .wire import Message, MsgType, reply_type

log = logging.getLogger("ipyark.coordinator")


class ExecState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


class ExecutionCoordinator(RuntimeHost):
    def __init__(self, kernel, runtime, comms=None, qmax:int=1000):
        self.kernel, self.runtime = kernel, runtime
        self.comms = comms if comms is not None else get_comm_manager()
        self.dispatcher = None
        self.inbox = queue.Queue(maxsize=qmax)
        self.deferred_acks = queue.SimpleQueue()
        self.stop_event = threading.Event()
        self.executing = threading.Event()
        self.state = ExecState.IDLE
        self.execution_count = 0
        self.parent = None
        self.silent = False
        self.replied = False
        self.bracketed = False
        self.fatal = None
        self.info = None
        runtime.bind(self)

    def start(self):
        "Cache the runtime descriptor; must run on the runtime-owner thread."
        self.info = self.runtime.describe()
        return self.info

    def submit(self, msg:Message):
        "Queue a shell message for in-order processing; blocks while the inbox is full."
        self.inbox.put(msg)

    def serve(self):
        "Process queued shell messages until stopped, then answer whatever is still queued."
        dbg("COORDINATOR started")
        while not self.stop_event.is_set():
            try: msg = self.inbox.get(timeout=0.1)
            except queue.Empty: continue
            self.process(msg)
        self.drain_stopped()
        dbg("COORDINATOR stopped")

    def process(self, msg:Message):
        "Handle one shell message; guarantees a reply for requests even on internal failure."
        self.replied = self.bracketed = False
        tlog(log, "coordinator handle", msg)
        try: self.dispatcher.handle_shell(msg)
        except RuntimeFatal as exc:
            self.internal_error(msg, exc)
            self.die(msg, exc)
        except KeyboardInterrupt as exc:
            log.warning("Interrupt arrived outside of user code for %s", msg.msg_type)
            self.internal_error(msg, exc)
        except Exception as exc: self.internal_error(msg, exc)

    # Replies and status

    def reply(self, msg:Message, msg_type:str, content:dict):
        self.replied = True
        self.kernel.send_reply(msg, msg_type, content)

    def status(self, state:KernelStatus|str, msg:Message|None, **extra):
        self.kernel.iopub.status(msg, execution_state=KernelStatus(state).value, **extra)

    @contextmanager
    def busy_idle(self, msg:Message):
        "Send busy before work and idle after."
        self.status("busy", msg)
        try: yield
        finally: self.status("idle", msg)

    def internal_error(self, msg:Message, exc:BaseException):
        log.warning("Internal error in %s handler", msg.msg_type, exc_info=exc)
        if self.replied or not msg.is_request: return
        error = ExecutionError.from_exception(exc)
        content = dict(status="error", **error.content())
        if msg.kind is not MsgType.EXECUTE_REQUEST: return self.reply(msg, reply_type(msg.msg_type), content)
        content |= dict(execution_count=self.execution_count, user_expressions={}, payload=[])
        with nullcontext() if self.bracketed else self.busy_idle(msg):
            self.kernel.iopub.error(msg, **error.content())
            self.reply(msg, "execute_reply", content)

    def die(self, msg:Message|None, exc:BaseException):
        "Publish `dead` and stop serving after a RuntimeFatal."
        self.fatal = exc
        self.status("dead", msg)
        self.stop_event.set()
        self.kernel.runtime_failed(exc)

    # RuntimeHost, bound to the request being executed

    def stream(self, name:str, text:str):
        if self.parent is None or self.silent or not text: return
        self.kernel.iopub.stream(self.parent, name=name, text=text)

    def display(self, data:dict, metadata:dict|None=None, transient:dict|None=None, update:bool=False):
        if self.parent is None or self.silent: return
        content = dict(data=data, metadata=metadata or {}, transient=transient or {})
        self.kernel.iopub.send("update_display_data" if update else "display_data", self.parent, content)

    def clear_output(self, wait:bool=False):
        if self.parent is not None and not self.silent: self.kernel.iopub.clear_output(self.parent, wait=bool(wait))

    def request_input(self, prompt:str, password:bool=False)->str:
        if self.parent is None: raise RuntimeError("input requested outside of an execution")
        return self.kernel.request_input(prompt, password, self.parent)

    def _comm_sender(self, msg:Message):
        def send(msg_type, content, metadata=None, buffers=None): self.kernel.iopub.send(msg_type, msg, content, metadata, buffers=buffers)
        return send

    # Execution

    def execute(self, msg:Message):
        "Run one execute_request: busy, count, evaluate, outputs, reply, idle."
        content = msg.content
        code = content.get("code", "")
        silent = bool(content.get("silent", False))
        store_history = bool(content.get("store_history", not silent))
        stop_on_error = bool(content.get("stop_on_error", True))
        allow_stdin = bool(content.get("allow_stdin", False))
        iopub = self.kernel.iopub
        count = self.execution_count + 1
        dbg(f"EXEC id={msg.short_id()} count={count} code={code[:30]!r}")
        self.status(KernelStatus.BUSY, msg, execution_count=count)
        self.execution_count = count
        self.bracketed = True
        fatal = None
        try:
            try:
                self.state, self.parent, self.silent = ExecState.BUSY, msg, silent
                self.executing.set()
                if not silent: iopub.execute_input(msg, code=code, execution_count=count)
                result = self._evaluate(msg, code, silent, store_history, allow_stdin)
            except RuntimeFatal as exc:
                fatal = exc
                result = EvalResult.failed(ExecutionError("RuntimeFatal", str(exc)))
            except (KeyboardInterrupt, Exception) as exc: result = EvalResult.failed(ExecutionError.from_exception(exc))
            finally: self.executing.clear()
            self._publish_outputs(msg, result, count)
            reply = dict(status=result.status, execution_count=count, user_expressions={}, payload=[])
            if result.error is not None: reply |= result.error.content()
            self.reply(msg, "execute_reply", reply)
        finally:
            self.executing.clear()
            self.parent, self.silent, self.state = None, False, ExecState.IDLE
            if fatal is None: self.status(KernelStatus.IDLE, msg)
            self.flush_deferred_acks()
        if fatal is not None: return self.die(msg, fatal)
        if result.error is not None and stop_on_error: self.abort_queued()

    def _evaluate(self, msg:Message, code:str, silent:bool, store_history:bool, allow_stdin:bool)->EvalResult:
        try:
            with self.comms.bound(self._comm_sender(msg)):
                result = self.runtime.evaluate(code, not silent, store_history=store_history, allow_stdin=allow_stdin)
        except ExecutionError as exc: return EvalResult.failed(exc)
        except (RuntimeFatal, KeyboardInterrupt): raise
        except Exception as exc:
            log.warning("Runtime raised outside user code", exc_info=exc)
            return EvalResult.failed(ExecutionError.from_exception(exc))
        if result.error is not None and result.status == "ok": result.status = "error"
        return result

    def _publish_outputs(self, msg:Message, result:EvalResult, count:int):
        iopub = self.kernel.iopub
        if not self.silent:
            for name, text in result.streams:
                if text: iopub.stream(msg, name=name, text=text)
        if result.error is not None: iopub.error(msg, **result.error.content())
        elif not self.silent and result.data is not None:
            iopub.execute_result(msg, execution_count=count, data=result.data, metadata=result.metadata)

    def abort_reply(self, msg:Message):
        "Answer a request that will not run."
        if not msg.is_request: return
        if msg.kind is not MsgType.EXECUTE_REQUEST:
            self.kernel.send_reply(msg, reply_type(msg.msg_type), dict(status="aborted"))
            return
        with self.busy_idle(msg):
            content = dict(status="aborted", execution_count=self.execution_count, user_expressions={}, payload=[])
            self.kernel.send_reply(msg, "execute_reply", content)

    def _drain(self)->list:
        out = []
        while True:
            try: out.append(self.inbox.get_nowait())
            except queue.Empty: return out

    def abort_queued(self):
        "After a failed execution, abort execute_requests already queued; handle the rest normally."
        for msg in self._drain():
            if msg.kind is MsgType.EXECUTE_REQUEST: self.abort_reply(msg)
            else: self.process(msg)

    def drain_stopped(self):
        for msg in self._drain(): self.abort_reply(msg)

    # Cross-thread signals

    def interrupt(self, msg:Message|None=None)->bool:
        "Signal cancellation; returns False when the ack for `msg` is deferred until execution ends."
        if not self.executing.is_set(): return True
        self.kernel.interrupt_input()
        if not self.runtime.supports_interrupt:
            if msg is None: return False
            self.deferred_acks.put(msg)
            if not self.executing.is_set(): self.flush_deferred_acks()
            return False
        try: self.runtime.interrupt()
        except Exception: log.warning("Runtime interrupt failed", exc_info=True)
        return True

    def flush_deferred_acks(self):
        while True:
            try: msg = self.deferred_acks.get_nowait()
            except queue.Empty: return
            self.kernel.send_reply(msg, "interrupt_reply", dict(status="ok"), channel="control")

    def stop(self):
        "Stop after the current message; attempt to interrupt it first."
        self.stop_event.set()
        self.interrupt()
        self.flush_deferred_acks()


