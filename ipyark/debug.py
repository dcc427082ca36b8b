"Debug infrastructure for ipyark with tiered logging and faulthandler support."
import faulthandler, logging, os, signal, sys, threading

def envbool(name: str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

enabled = envbool("IPYARK_DEBUG")
trace_msgs = envbool("IPYARK_DEBUG_MSGS")
_lock = threading.Lock()

def setup():
    "Initialize debug infrastructure: logging, faulthandler, SIGUSR1 handler."
    if not enabled: return
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.DEBUG, stream=sys.__stderr__,
            format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s")
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def dbg(*args, **kw):
    "Terse trace line on the real stderr, only when IPYARK_DEBUG is set."
    if not enabled: return
    with _lock: print("[ipyark]", *args, **kw, file=sys.__stderr__, flush=True)

def tlog(log, prefix: str, msg):
    "Log message flow at high level: msg_type, msg_id, parent msg_id."
    if not trace_msgs or msg is None: return
    parent = msg.parent_header.get("msg_id")
    log.warning("%s type=%s id=%s parent=%s", prefix, msg.msg_type, msg.msg_id, parent)
