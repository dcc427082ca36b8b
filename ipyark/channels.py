"""One thread per bound socket: heartbeat echo, IOPub publisher, stdin router and the
asyncio-driven Shell/Control routers."""
import asyncio, logging, queue, sys, threading, time
from collections import deque
from fastcore.basics import store_attr
import zmq, zmq.asyncio
from .debug import dbg, tlog
from .errors import WireError
from .wire import Message, Session

log = logging.getLogger("ipyark.channels")

critical_threads = {"iopub-thread", "stdin-router", "heartbeat-thread", "shell-router", "control-router"}
input_interrupted = object()


class ThreadBoundAsyncQueue:
    "Thread-safe put, asyncio get; puts before `bind` are replayed, puts after the loop closes are dropped."

    def __init__(self):
        self.loop, self.q, self.early, self.lock = None, None, [], threading.Lock()

    def bind(self, loop:asyncio.AbstractEventLoop):
        with self.lock:
            self.loop, self.q = loop, asyncio.Queue()
            for item in self.early: self.q.put_nowait(item)
            self.early.clear()

    def put(self, item):
        with self.lock:
            if self.loop is None: return self.early.append(item)
        try: self.loop.call_soon_threadsafe(self.q.put_nowait, item)
        except RuntimeError: log.debug("Dropping put after the event loop closed")

    async def get(self): return await self.q.get()


class HeartbeatThread(threading.Thread):
    "Echo every heartbeat frame back unchanged; no framing, no auth."

    def __init__(self, context:zmq.Context, addr:str):
        super().__init__(daemon=True, name="heartbeat-thread")
        store_attr()
        self.stop_event = threading.Event()
        self.ready = threading.Event()

    def run(self):
        sock = None
        try:
            sock = self.context.socket(zmq.REP)
            sock.linger = 0
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                events = dict(poller.poll(100))
                if events.get(sock, 0) & zmq.POLLIN: sock.send_multipart(sock.recv_multipart())
        finally:
            if sock is not None: sock.close(0)

    def stop(self): self.stop_event.set()


class IOPubThread(threading.Thread):
    "IOPub sender thread using a sync PUB socket fed by a bounded queue."

    def __init__(self, context:zmq.Context, addr:str, session:Session, qmax:int=10000, put_timeout:float=5.0, sndhwm:int|None=None):
        super().__init__(daemon=True, name="iopub-thread")
        store_attr("context,addr,session,put_timeout,sndhwm")
        self.stop_event = threading.Event()
        self.ready = threading.Event()
        self.q = queue.Queue(maxsize=qmax)
        self.enqueued = self.sent = self.dropped = 0

    def send(self, msg:Message):
        "Queue `msg` for publication; waits up to `put_timeout` for room, then drops it."
        if self.stop_event.is_set(): return
        self.enqueued += 1
        try: self.q.put(msg, timeout=self.put_timeout)
        except queue.Full:
            self.dropped += 1
            log.warning("IOPub queue full; dropping %s (enq=%d sent=%d)", msg.msg_type, self.enqueued, self.sent)

    def run(self):
        sock = None
        try:
            sock = self.context.socket(zmq.PUB)
            sock.linger = 0
            if self.sndhwm: sock.sndhwm = self.sndhwm
            sock.bind(self.addr)
            dbg(f"IOPubThread bound to {self.addr}")
            self.ready.set()
            while True:
                msg = self.q.get()
                if msg is None: break
                if msg.msg_type == "status": dbg(f"iopub SEND status state={msg.content.get('execution_state')} parent={msg.parent_header.get('msg_id', '?')[:8]}")
                else: dbg(f"iopub SEND {msg.msg_type}")
                sock.send_multipart(self.session.serialize(msg))
                self.sent += 1
        finally:
            dbg("IOPubThread exiting")
            if sock is not None: sock.close(500)

    def stop(self):
        "Publish what is already queued, then exit."
        self.stop_event.set()
        try: self.q.put(None, timeout=self.put_timeout)
        except queue.Full:
            while True:
                try: self.q.get_nowait()
                except queue.Empty: break
            self.q.put_nowait(None)


class StdinRouterThread(threading.Thread):
    "Send input_request to the front-end and hand the matching input_reply back to the waiter."

    def __init__(self, context:zmq.Context, addr:str, session:Session):
        super().__init__(daemon=True, name="stdin-router")
        store_attr()
        self.stop_event = threading.Event()
        self.ready = threading.Event()
        self.interrupt_event = threading.Event()
        self.pending_lock = threading.Lock()
        self.requests = queue.Queue()
        self.pending = {}
        self.pending_by_ident = {}

    def request_input(self, prompt:str, password:bool, parent:Message, timeout:float|None=None)->str:
        "Send input_request and wait for input_reply; raises KeyboardInterrupt when interrupted."
        self.interrupt_event.clear()
        waiter = queue.Queue()
        self.requests.put((prompt, password, parent, waiter))
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.interrupt_event.is_set():
                self.interrupt_event.clear()
                raise KeyboardInterrupt
            if self.stop_event.is_set(): raise RuntimeError("stdin router stopped")
            wait = 0.1
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0: raise TimeoutError("timed out waiting for input reply")
                wait = min(wait, remaining)
            try: value = waiter.get(timeout=wait)
            except queue.Empty: continue
            if value is input_interrupted:
                self.interrupt_event.clear()
                raise KeyboardInterrupt
            return value

    def run(self):
        sock = None
        try:
            sock = self.context.socket(zmq.ROUTER)
            sock.linger = 0
            if hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                self._drain_requests(sock)
                events = dict(poller.poll(50))
                if not events.get(sock, 0) & zmq.POLLIN: continue
                try: msg = self.session.deserialize(sock.recv_multipart())
                except WireError as err:
                    log.warning("Rejected stdin message: %s", err)
                    continue
                if msg.msg_type != "input_reply": continue
                waiter = self._pop_waiter(msg)
                if waiter is not None: waiter.put(msg.content.get("value", ""))
        finally:
            if sock is not None: sock.close(0)

    def _pop_waiter(self, msg:Message):
        "Match by the input_request msg_id, falling back to the oldest waiter for the sender identity."
        with self.pending_lock:
            pending = self.pending.pop(msg.parent_header.get("msg_id"), None)
            if pending is not None:
                key, waiter = pending
                waiters = self.pending_by_ident.get(key)
                if waiters and waiter in waiters: waiters.remove(waiter)
                if not waiters: self.pending_by_ident.pop(key, None)
                return waiter
            waiters = self.pending_by_ident.get(tuple(msg.idents))
            if not waiters: return None
            waiter = waiters.popleft()
            if not waiters: self.pending_by_ident.pop(tuple(msg.idents), None)
            for msg_id, (_, w) in list(self.pending.items()):
                if w is waiter: del self.pending[msg_id]
            return waiter

    def _drain_requests(self, sock:zmq.Socket):
        while True:
            try: prompt, password, parent, waiter = self.requests.get_nowait()
            except queue.Empty: return
            if self.interrupt_event.is_set():
                waiter.put(input_interrupted)
                continue
            msg = self.session.msg("input_request", dict(prompt=prompt, password=password), parent=parent)
            key = tuple(msg.idents)
            with self.pending_lock:
                self.pending[msg.msg_id] = (key, waiter)
                self.pending_by_ident.setdefault(key, deque()).append(waiter)
            sock.send_multipart(self.session.serialize(msg))

    def stop(self): self.stop_event.set()

    def interrupt_pending(self):
        "Cancel pending input requests and wake any waiters."
        self.interrupt_event.set()
        with self.pending_lock:
            waiters = [waiter for _, waiter in self.pending.values()]
            self.pending.clear()
            self.pending_by_ident.clear()
        while True:
            try: *_, waiter = self.requests.get_nowait()
            except queue.Empty: break
            waiters.append(waiter)
        for waiter in waiters: waiter.put(input_interrupted)


class RouterThread(threading.Thread):
    "Async ROUTER loop for the Shell and Control sockets."

    def __init__(self, context:zmq.Context, addr:str, session:Session, handler, label:str):
        super().__init__(daemon=True, name=f"{label}-router")
        store_attr()
        self.loop = None
        self.ready = threading.Event()
        self.stop_event = threading.Event()
        self.outbox = ThreadBoundAsyncQueue()
        self.enqueued = self.sent = self.send_errors = 0

    def enqueue(self, msg:Message):
        "Queue a reply; it is routed back using the idents it carries."
        self.enqueued += 1
        backlog = self.enqueued - self.sent
        if backlog in (1000, 2000, 5000): log.warning("%s backlog growing: enq=%d sent=%d", self.label, self.enqueued, self.sent)
        self.outbox.put(msg)

    def stop(self):
        "Send whatever replies are already queued, then exit."
        self.stop_event.set()
        self.outbox.put(None)

    def run(self):
        try: asyncio.run(self._run())
        finally: self.loop = None

    async def _run(self):
        self.loop = asyncio.get_running_loop()
        if sys.platform.startswith("win") and not isinstance(self.loop, asyncio.SelectorEventLoop):
            log.warning("Windows event loop may not support zmq.asyncio; consider SelectorEventLoop policy.")
        self.outbox.bind(self.loop)
        sock = zmq.asyncio.Context.shadow(self.context).socket(zmq.ROUTER)
        if hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
        sock.linger = 0
        try:
            sock.bind(self.addr)
            self.ready.set()
            tasks = [asyncio.ensure_future(self._send_loop(sock)), asyncio.ensure_future(self._recv_loop(sock))]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending: task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done: task.result()
        finally: sock.close(500)

    async def _send_loop(self, sock:zmq.asyncio.Socket):
        while True:
            msg = await self.outbox.get()
            if msg is None: return
            dbg(f"{self.label} SEND {msg.msg_type} parent={msg.parent_header.get('msg_id', '?')[:8]}")
            try:
                await sock.send_multipart(self.session.serialize(msg))
                self.sent += 1
            except zmq.ZMQError as exc:
                self.send_errors += 1
                log.error("%s send error: %s", self.label, exc, exc_info=exc)

    async def _recv_loop(self, sock:zmq.asyncio.Socket):
        while not self.stop_event.is_set():
            frames = await sock.recv_multipart()
            try: msg = self.session.deserialize(frames)
            except WireError as err:
                log.warning("Rejected %s message: %s", self.label, err)
                continue
            dbg(f"{self.label} RECV {msg.msg_type} id={msg.short_id()}")
            tlog(log, f"{self.label} recv", msg)
            try: self.handler(msg)
            except Exception as exc: log.warning("Unhandled error dispatching %s", msg.msg_type, exc_info=exc)
