import asyncio, socket, threading, time, pytest, zmq
from ipyark.channels import HeartbeatThread, IOPubThread, RouterThread, StdinRouterThread, ThreadBoundAsyncQueue
from ipyark.wire import Session, decode, encode

KEY = b"secret"


def free_addr()->str:
    "Pick a free localhost TCP port."
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"tcp://127.0.0.1:{port}"


@pytest.fixture
def ctx():
    context = zmq.Context()
    yield context
    context.destroy(linger=0)


def _dealer(ctx, addr, identity=b"client"):
    sock = ctx.socket(zmq.DEALER)
    sock.linger = 0
    sock.identity = identity
    sock.connect(addr)
    return sock


def _recv(sock, timeout=5.0):
    assert sock.poll(int(timeout * 1000)), "timed out waiting for frames"
    return sock.recv_multipart()


def _started(thread):
    thread.start()
    assert thread.ready.wait(5)
    return thread


def test_heartbeat_echo(ctx):
    addr = free_addr()
    hb = _started(HeartbeatThread(ctx, addr))
    sock = ctx.socket(zmq.REQ)
    sock.linger = 0
    sock.connect(addr)
    try:
        for payload in (b"ping", b"", b"\x00" * 64):
            sock.send(payload)
            assert _recv(sock) == [payload]
    finally:
        sock.close(0)
        hb.stop()
        hb.join(2)
    assert not hb.is_alive()


def test_router_routes_by_identity(ctx):
    addr, session, seen = free_addr(), Session(KEY), []
    router = _started(RouterThread(ctx, addr, session, seen.append, "shell"))
    client = _dealer(ctx, addr)
    try:
        request = Session(KEY).msg("kernel_info_request", {})
        client.send_multipart(encode(request, KEY))
        for _ in range(50):
            if seen: break
            time.sleep(0.05)
        [received] = seen
        assert received.msg_id == request.msg_id
        assert received.idents == (b"client",)
        router.enqueue(session.msg("kernel_info_reply", dict(status="ok"), parent=received))
        reply = decode(_recv(client), KEY)
        assert reply.msg_type == "kernel_info_reply"
        assert reply.parent_header["msg_id"] == request.msg_id
    finally:
        client.close(0)
        router.stop()
        router.join(2)
    assert not router.is_alive()


def test_router_drops_unsigned_messages(ctx):
    addr, seen = free_addr(), []
    router = _started(RouterThread(ctx, addr, Session(KEY), seen.append, "control"))
    client = _dealer(ctx, addr)
    try:
        client.send_multipart(encode(Session(b"wrong").msg("shutdown_request", {}), b"wrong"))
        client.send_multipart([b"garbage"])
        good = Session(KEY).msg("interrupt_request", {})
        client.send_multipart(encode(good, KEY))
        for _ in range(50):
            if seen: break
            time.sleep(0.05)
        assert [m.msg_id for m in seen] == [good.msg_id]
        assert router.is_alive()
    finally:
        client.close(0)
        router.stop()
        router.join(2)


def test_router_survives_handler_errors(ctx):
    addr, calls = free_addr(), []
    def handler(msg):
        calls.append(msg)
        raise RuntimeError("handler bug")
    router = _started(RouterThread(ctx, addr, Session(KEY), handler, "shell"))
    client = _dealer(ctx, addr)
    try:
        for _ in range(2): client.send_multipart(encode(Session(KEY).msg("kernel_info_request", {}), KEY))
        for _ in range(50):
            if len(calls) == 2: break
            time.sleep(0.05)
        assert len(calls) == 2 and router.is_alive()
    finally:
        client.close(0)
        router.stop()
        router.join(2)


def test_iopub_publishes_in_order(ctx):
    addr, session = free_addr(), Session(KEY)
    iopub = _started(IOPubThread(ctx, addr, session, qmax=10))
    sub = ctx.socket(zmq.SUB)
    sub.linger = 0
    sub.setsockopt(zmq.SUBSCRIBE, b"")
    sub.connect(addr)
    parent = Session(KEY).msg("execute_request", dict(code="1"))
    try:
        first = None
        for _ in range(50):
            iopub.send(session.msg("status", dict(execution_state="starting"), idents=()))
            if sub.poll(100):
                first = decode(sub.recv_multipart(), KEY)
                break
        assert first is not None and first.msg_type == "status"
        while sub.poll(200): sub.recv_multipart()
        for state in ("busy", "idle"): iopub.send(session.msg("status", dict(execution_state=state), parent=parent, idents=()))
        got = [decode(_recv(sub), KEY) for _ in range(2)]
        assert [m.content["execution_state"] for m in got] == ["busy", "idle"]
        assert all(m.parent_header["msg_id"] == parent.msg_id for m in got)
    finally:
        sub.close(0)
        iopub.stop()
        iopub.join(2)
    assert not iopub.is_alive()


def test_iopub_drops_when_full(ctx):
    iopub = IOPubThread(ctx, free_addr(), Session(), qmax=1, put_timeout=0.05)
    msg = Session().msg("status", dict(execution_state="busy"), idents=())
    iopub.send(msg)
    iopub.send(msg)
    assert iopub.dropped == 1 and iopub.q.qsize() == 1


def _input_in_background(stdin, parent, box):
    def run():
        try: box["value"] = stdin.request_input("name? ", False, parent)
        except BaseException as exc: box["error"] = exc
    worker = threading.Thread(target=run)
    worker.start()
    return worker


def test_stdin_round_trip(ctx):
    addr = free_addr()
    stdin = _started(StdinRouterThread(ctx, addr, Session(KEY)))
    client, client_session = _dealer(ctx, addr), Session(KEY)
    parent = client_session.msg("execute_request", dict(code="x"), idents=(b"client",))
    box = {}
    try:
        time.sleep(0.1)
        worker = _input_in_background(stdin, parent, box)
        request = decode(_recv(client), KEY)
        assert request.msg_type == "input_request"
        assert request.content == dict(prompt="name? ", password=False)
        assert request.parent_header["msg_id"] == parent.msg_id
        client.send_multipart(encode(client_session.msg("input_reply", dict(value="alice"), parent=request, idents=()), KEY))
        worker.join(5)
        assert box == dict(value="alice")
    finally:
        client.close(0)
        stdin.stop()
        stdin.join(2)


def test_stdin_wait_is_interruptible(ctx):
    addr = free_addr()
    stdin = _started(StdinRouterThread(ctx, addr, Session(KEY)))
    client = _dealer(ctx, addr)
    parent = Session(KEY).msg("execute_request", dict(code="x"), idents=(b"client",))
    box = {}
    try:
        time.sleep(0.1)
        worker = _input_in_background(stdin, parent, box)
        _recv(client)
        stdin.interrupt_pending()
        worker.join(5)
        assert isinstance(box.get("error"), KeyboardInterrupt)
        assert not stdin.pending
    finally:
        client.close(0)
        stdin.stop()
        stdin.join(2)


def test_outbox_replays_early_puts_and_drops_late_ones():
    outbox = ThreadBoundAsyncQueue()
    outbox.put("early")
    async def run():
        outbox.bind(asyncio.get_running_loop())
        threading.Thread(target=outbox.put, args=("threaded",)).start()
        return [await outbox.get(), await outbox.get()]
    assert asyncio.run(run()) == ["early", "threaded"]
    outbox.put("late")
