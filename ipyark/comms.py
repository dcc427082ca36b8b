"Comm routing: opaque comm_open/comm_msg/comm_close pass-through to runtime-side targets."
import logging, uuid
from contextlib import contextmanager

log = logging.getLogger("ipyark.comms")


class Comm:
    def __init__(self, manager:"CommManager", comm_id:str, target_name:str):
        self.manager, self.comm_id, self.target_name = manager, comm_id, target_name
        self.msg_handler = self.close_handler = None
        self.closed = False

    def on_msg(self, handler): self.msg_handler = handler

    def on_close(self, handler): self.close_handler = handler

    def send(self, data:dict|None=None, metadata:dict|None=None, buffers=None):
        "Publish a comm_msg to the front-end."
        self.manager.publish("comm_msg", dict(comm_id=self.comm_id, data=data or {}), metadata, buffers)

    def close(self, data:dict|None=None):
        if self.closed: return
        self.closed = True
        self.manager.comms.pop(self.comm_id, None)
        self.manager.publish("comm_close", dict(comm_id=self.comm_id, data=data or {}))


class CommManager:
    "Registry of comm targets and open comms; driven only from the runtime-owner thread."

    def __init__(self):
        self.targets, self.comms = {}, {}
        self.sender = None

    def register_target(self, target_name:str, handler):
        "Register `handler(comm, msg)` to be called when a front-end opens `target_name`."
        self.targets[target_name] = handler

    def unregister_target(self, target_name:str): self.targets.pop(target_name, None)

    def publish(self, msg_type:str, content:dict, metadata:dict|None=None, buffers=None):
        if self.sender is None:
            log.warning("Dropping %s: no request context", msg_type)
            return
        self.sender(msg_type, content, metadata, buffers)

    @contextmanager
    def bound(self, sender):
        "Route comm output through `sender` for the duration of one request."
        prev, self.sender = self.sender, sender
        try: yield self
        finally: self.sender = prev

    def open(self, target_name:str, data:dict|None=None, comm_id:str|None=None)->Comm:
        "Open a kernel-initiated comm."
        comm = Comm(self, comm_id or uuid.uuid4().hex, target_name)
        self.comms[comm.comm_id] = comm
        self.publish("comm_open", dict(comm_id=comm.comm_id, target_name=target_name, data=data or {}))
        return comm

    def comm_open(self, msg):
        content = msg.content
        comm_id, target_name = content.get("comm_id"), content.get("target_name")
        if not comm_id: return
        comm = Comm(self, comm_id, target_name)
        self.comms[comm_id] = comm
        handler = self.targets.get(target_name)
        if handler is None:
            log.warning("No comm target registered for %r", target_name)
            comm.close()
            return
        try: handler(comm, msg)
        except Exception:
            log.warning("Comm target %r failed on open", target_name, exc_info=True)
            comm.close()

    def comm_msg(self, msg):
        comm = self.comms.get(msg.content.get("comm_id"))
        if comm is None or comm.msg_handler is None: return
        try: comm.msg_handler(msg)
        except Exception: log.warning("Comm %s message handler failed", comm.comm_id, exc_info=True)

    def comm_close(self, msg):
        comm = self.comms.pop(msg.content.get("comm_id"), None)
        if comm is None: return
        comm.closed = True
        if comm.close_handler is None: return
        try: comm.close_handler(msg)
        except Exception: log.warning("Comm %s close handler failed", comm.comm_id, exc_info=True)

    def info(self, target_name:str|None=None)->dict:
        return {comm_id: dict(target_name=comm.target_name) for comm_id, comm in self.comms.items()
            if target_name is None or comm.target_name == target_name}


_manager = None

def get_comm_manager()->CommManager:
    global _manager
    if _manager is None: _manager = CommManager()
    return _manager
