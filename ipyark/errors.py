"Exception taxonomy for the kernel: wire rejections, execution failures, fatal runtime and config errors."


class KernelError(Exception): pass

class WireError(KernelError, ValueError):
    "A single inbound message was rejected; the channel keeps running."

class FormatError(WireError): pass

class AuthError(WireError): pass

class ConfigError(KernelError):
    "Bad connection descriptor or settings; fatal before any socket is opened."

class RuntimeFatal(KernelError):
    "The embedded runtime can no longer be used."


class ExecutionError(KernelError):
    "Error raised by user code, reported as the pending execute_reply."

    def __init__(self, ename:str, evalue:str, traceback:list[str]|None=None):
        super().__init__(f"{ename}: {evalue}")
        self.ename, self.evalue, self.traceback = ename, evalue, list(traceback or [])

    @classmethod
    def from_exception(cls, exc:BaseException)->"ExecutionError":
        import traceback as tb
        return cls(type(exc).__name__, str(exc), tb.format_exception(type(exc), exc, exc.__traceback__))

    def content(self)->dict: return dict(ename=self.ename, evalue=self.evalue, traceback=self.traceback)
