"""Message-kind routing for the Shell and Control channels.

Shell traffic is handed to the coordinator queue by `on_shell` (router thread) and resolved by
`handle_shell` on the runtime-owner thread. Control traffic is resolved by `on_control` on the
control thread and never waits behind Shell work."""
import logging
from importlib.metadata import PackageNotFoundError, version
from .debug import dbg
from .errors import ExecutionError
from .wire import PROTOCOL_VERSION, Message, MsgType, reply_type

log = logging.getLogger("ipyark.dispatch")

shell_required = {MsgType.EXECUTE_REQUEST: ("code",), MsgType.IS_COMPLETE_REQUEST: ("code",),
    MsgType.COMPLETE_REQUEST: ("code", "cursor_pos"), MsgType.INSPECT_REQUEST: ("code", "cursor_pos")}
missing_defaults = {MsgType.COMPLETE_REQUEST: dict(matches=[], cursor_start=0, cursor_end=0, metadata={}),
    MsgType.INSPECT_REQUEST: dict(found=False, data={}, metadata={}), MsgType.HISTORY_REQUEST: dict(history=[]),
    MsgType.IS_COMPLETE_REQUEST: dict(indent="")}
read_only = {MsgType.KERNEL_INFO_REQUEST, MsgType.IS_COMPLETE_REQUEST}
field_types = dict(code=str, cursor_pos=int)


def implementation_version()->str:
    try: return version("ipyark")
    except PackageNotFoundError: return "0.0.0+local"


class Dispatcher:
    def __init__(self, kernel, coordinator, lifecycle):
        self.kernel, self.coordinator, self.lifecycle = kernel, coordinator, lifecycle
        coordinator.dispatcher = self
        self.shell_handlers = {MsgType.KERNEL_INFO_REQUEST: self.kernel_info, MsgType.IS_COMPLETE_REQUEST: self.is_complete,
            MsgType.CONNECT_REQUEST: self.connect, MsgType.COMM_INFO_REQUEST: self.comm_info, MsgType.COMM_OPEN: self.comm,
            MsgType.COMM_MSG: self.comm, MsgType.COMM_CLOSE: self.comm, MsgType.COMPLETE_REQUEST: self.default_reply,
            MsgType.INSPECT_REQUEST: self.default_reply, MsgType.HISTORY_REQUEST: self.default_reply}
        self.control_handlers = {MsgType.INTERRUPT_REQUEST: self.interrupt, MsgType.SHUTDOWN_REQUEST: self.shutdown,
            MsgType.KERNEL_INFO_REQUEST: self.control_kernel_info}

    # Shell

    def on_shell(self, msg:Message):
        "Router-thread entry point for Shell messages."
        dbg(f"DISPATCH {msg.msg_type} id={msg.short_id()}")
        kind = msg.kind
        if kind is MsgType.SHUTDOWN_REQUEST: return self.on_control(msg, channel="shell")
        if kind in read_only and self.coordinator.runtime.concurrent_introspection and not self.missing_fields(kind, msg.content):
            return self.answer_read_only(msg)
        self.coordinator.submit(msg)

    def answer_read_only(self, msg:Message):
        "Answer kernel_info/is_complete on the router thread, alongside any in-flight execution."
        with self.coordinator.busy_idle(msg):
            if msg.kind is MsgType.KERNEL_INFO_REQUEST: self.kernel.send_reply(msg, "kernel_info_reply", self.kernel_info_content())
            else: self.kernel.send_reply(msg, "is_complete_reply", self.is_complete_content(msg))

    def handle_shell(self, msg:Message):
        "Resolve and run the handler for one Shell message."
        kind = msg.kind
        missing = self.missing_fields(kind, msg.content)
        if missing: return self.missing_fields_reply(msg, missing)
        if kind is MsgType.EXECUTE_REQUEST: return self.coordinator.execute(msg)
        handler = self.shell_handlers.get(kind)
        with self.coordinator.busy_idle(msg):
            if handler is not None: return handler(msg)
            if msg.is_request: self.coordinator.reply(msg, reply_type(msg.msg_type), {})
            else: log.debug("Ignoring shell message %s", msg.msg_type)

    def missing_fields(self, kind:MsgType, content:dict)->list[str]:
        required = shell_required.get(kind)
        return [key for key in required if not isinstance(content.get(key), field_types[key])] if required else []

    def missing_fields_reply(self, msg:Message, missing:list[str]):
        evalue = f"missing or invalid required fields: {', '.join(missing)}"
        error = ExecutionError("MissingField", evalue)
        content = dict(status="error", **error.content())
        with self.coordinator.busy_idle(msg):
            if msg.kind is MsgType.EXECUTE_REQUEST:
                content |= dict(execution_count=self.coordinator.execution_count, user_expressions={}, payload=[])
                self.kernel.iopub.error(msg, **error.content())
            else: content |= missing_defaults.get(msg.kind, {})
            self.coordinator.reply(msg, reply_type(msg.msg_type), content)

    def kernel_info_content(self)->dict:
        "Build kernel_info_reply content from the cached runtime descriptor."
        info = self.coordinator.info
        return dict(status="ok", protocol_version=PROTOCOL_VERSION, implementation="ipyark",
            implementation_version=implementation_version(), language_info=info.language_info(), banner=info.banner,
            help_links=[], supported_features=[])

    def kernel_info(self, msg:Message): self.coordinator.reply(msg, "kernel_info_reply", self.kernel_info_content())

    def is_complete_content(self, msg:Message)->dict:
        status, indent = self.coordinator.runtime.check_complete(msg.content.get("code", ""))
        return dict(status=getattr(status, "value", status), indent=indent or "")

    def is_complete(self, msg:Message): self.coordinator.reply(msg, "is_complete_reply", self.is_complete_content(msg))

    def connect(self, msg:Message):
        cfg = self.kernel.config
        content = dict(shell_port=cfg.shell_port, iopub_port=cfg.iopub_port, stdin_port=cfg.stdin_port,
            control_port=cfg.control_port, hb_port=cfg.hb_port)
        self.coordinator.reply(msg, "connect_reply", content)

    def comm_info(self, msg:Message):
        comms = self.coordinator.comms.info(msg.content.get("target_name"))
        self.coordinator.reply(msg, "comm_info_reply", dict(status="ok", comms=comms))

    def comm(self, msg:Message):
        "Hand comm_open/comm_msg/comm_close to the runtime-side comm manager."
        manager = self.coordinator.comms
        with manager.bound(self.coordinator._comm_sender(msg)): getattr(manager, msg.msg_type)(msg)

    def default_reply(self, msg:Message):
        self.coordinator.reply(msg, reply_type(msg.msg_type), dict(status="ok") | missing_defaults.get(msg.kind, {}))

    # Control

    def on_control(self, msg:Message, channel:str="control"):
        "Control-thread entry point; handled on arrival, ahead of queued Shell work."
        dbg(f"CONTROL {msg.msg_type} id={msg.short_id()}")
        handler = self.control_handlers.get(msg.kind)
        try:
            if handler is not None: return handler(msg, channel)
            if msg.is_request: self.kernel.send_reply(msg, reply_type(msg.msg_type), {}, channel=channel)
        except Exception as exc:
            log.warning("Internal error in %s handler", msg.msg_type, exc_info=exc)
            if msg.is_request: self.kernel.send_reply(msg, reply_type(msg.msg_type), dict(status="error", **ExecutionError.from_exception(exc).content()), channel=channel)

    def control_kernel_info(self, msg:Message, channel:str):
        self.kernel.send_reply(msg, "kernel_info_reply", self.kernel_info_content(), channel=channel)

    def interrupt(self, msg:Message, channel:str):
        "Cooperative interrupt; the ack is deferred when the runtime cannot be interrupted."
        if self.coordinator.interrupt(msg): self.kernel.send_reply(msg, "interrupt_reply", dict(status="ok"), channel=channel)

    def shutdown(self, msg:Message, channel:str):
        "Honor shutdown in any state: abort in-flight work, reply, then stop the kernel."
        restart = bool(msg.content.get("restart", False))
        first = self.lifecycle.request_shutdown(restart=restart)
        if first: self.coordinator.stop()
        self.kernel.send_reply(msg, "shutdown_reply", dict(status="ok", restart=restart), channel=channel)
        if first: self.kernel.begin_shutdown()
