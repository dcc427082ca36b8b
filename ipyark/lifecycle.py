"Process lifecycle: starting -> running -> shutting_down -> stopped, and the exit code."
import logging, threading
from enum import Enum

log = logging.getLogger("ipyark.lifecycle")


class KernelStatus(str, Enum):
    "Wire-level `execution_state` values published on IOPub."
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


class Phase(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"

transitions = {Phase.STARTING: {Phase.RUNNING, Phase.SHUTTING_DOWN, Phase.STOPPED},
    Phase.RUNNING: {Phase.SHUTTING_DOWN, Phase.STOPPED}, Phase.SHUTTING_DOWN: {Phase.STOPPED}, Phase.STOPPED: set()}

EXIT_OK, EXIT_FATAL, EXIT_CONFIG = 0, 1, 2


class KernelStateMachine:
    def __init__(self):
        self.phase = Phase.STARTING
        self.lock = threading.Lock()
        self.shutdown_event = threading.Event()
        self.exit_code = EXIT_OK
        self.restart = False
        self.reason = None

    def _advance(self, phase:Phase)->bool:
        with self.lock:
            if phase not in transitions[self.phase]: return False
            log.debug("lifecycle %s -> %s", self.phase.value, phase.value)
            self.phase = phase
        return True

    def ready(self)->bool: return self._advance(Phase.RUNNING)

    def request_shutdown(self, restart:bool=False, reason:str="shutdown_request")->bool:
        "Enter shutting_down; returns False if a shutdown was already under way."
        if not self._advance(Phase.SHUTTING_DOWN): return False
        self.restart, self.reason = bool(restart), reason
        self.shutdown_event.set()
        return True

    def fatal(self, reason:str)->bool:
        "Record an unrecoverable failure and shut down with a non-zero exit code."
        log.error("Kernel failing: %s", reason)
        with self.lock: self.exit_code = EXIT_FATAL
        if self.request_shutdown(reason=reason): return True
        self.shutdown_event.set()
        return False

    def stopped(self)->int:
        self._advance(Phase.STOPPED)
        self.shutdown_event.set()
        return self.exit_code

    @property
    def shutting_down(self)->bool: return self.shutdown_event.is_set()
