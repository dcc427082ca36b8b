"""Jupyter wire format: the `Message` model over `jupyter_client.session.Session`.

A frame is `[*idents, b"<IDS|MSG>", digest, header, parent_header, metadata, content, *buffers]`.
Signing, packing and identity splitting are done by jupyter_client; this module maps its
failures onto `FormatError`/`AuthError` and its dict messages onto `Message`."""
import json
from dataclasses import dataclass, field
from enum import Enum
from jupyter_client.session import DELIM, Session as ClientSession
from .config import digest_name
from .errors import AuthError, FormatError

PROTOCOL_VERSION = "5.3"
auth_failures = ("Invalid Signature", "Duplicate Signature", "Unsigned Message")


class MsgType(str, Enum):
    EXECUTE_REQUEST = "execute_request"
    KERNEL_INFO_REQUEST = "kernel_info_request"
    IS_COMPLETE_REQUEST = "is_complete_request"
    COMPLETE_REQUEST = "complete_request"
    INSPECT_REQUEST = "inspect_request"
    HISTORY_REQUEST = "history_request"
    CONNECT_REQUEST = "connect_request"
    COMM_INFO_REQUEST = "comm_info_request"
    COMM_OPEN = "comm_open"
    COMM_MSG = "comm_msg"
    COMM_CLOSE = "comm_close"
    INTERRUPT_REQUEST = "interrupt_request"
    SHUTDOWN_REQUEST = "shutdown_request"
    INPUT_REPLY = "input_reply"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name)->"MsgType":
        "Resolve a header msg_type, falling back to UNKNOWN."
        try: return cls(name)
        except ValueError: return cls.UNKNOWN


def reply_type(msg_type:str)->str: return msg_type[:-len("_request")] + "_reply"


@dataclass(frozen=True)
class Message:
    header: dict
    parent_header: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    content: dict = field(default_factory=dict)
    buffers: tuple = ()
    idents: tuple = ()

    @property
    def msg_type(self)->str: return self.header.get("msg_type", "")

    @property
    def msg_id(self)->str: return self.header.get("msg_id", "")

    @property
    def kind(self)->MsgType: return MsgType.parse(self.msg_type)

    @property
    def is_request(self)->bool: return self.msg_type.endswith("_request")

    def short_id(self)->str: return (self.msg_id or "?")[:8]


def _as_dict(obj, part:str)->dict:
    if obj is None: return {}
    if not isinstance(obj, dict): raise FormatError(f"{part} must be a JSON object")
    return obj


class Session:
    "Signing state plus message construction, with a fixed session id."

    def __init__(self, key:bytes=b"", signature_scheme:str="hmac-sha256", session_id:str|None=None, username:str="kernel"):
        digest_name(signature_scheme)
        kw = dict(session=session_id) if session_id else {}
        self.client = ClientSession(key=key, signature_scheme=signature_scheme, username=username, **kw)
        self.key, self.signature_scheme, self.username = key, signature_scheme, username
        self.session_id = self.client.session

    @classmethod
    def from_config(cls, config)->"Session": return cls(config.key, config.signature_scheme, config.session_id)

    def sign(self, parts)->bytes:
        "Hex HMAC over `parts`, or b'' when no key is configured."
        return self.client.sign(list(parts))

    def msg(self, msg_type:str, content:dict|None=None, parent:Message|None=None, metadata:dict|None=None,
        buffers=None, idents=None)->Message:
        "Build a new message whose parent header is copied from `parent`."
        header = self.client.msg_header(msg_type) | dict(version=PROTOCOL_VERSION)
        parent_header = dict(parent.header) if parent is not None else {}
        if idents is None: idents = parent.idents if parent is not None else ()
        return Message(header=header, parent_header=parent_header, metadata=dict(metadata or {}),
            content=dict(content or {}), buffers=tuple(buffers or ()), idents=tuple(idents))

    def serialize(self, msg:Message)->list[bytes]:
        "Signed multipart frames for `msg`, buffers appended after the content."
        wire = dict(header=msg.header, parent_header=msg.parent_header or {}, metadata=msg.metadata or {}, content=msg.content or {})
        return [*self.client.serialize(wire, ident=list(msg.idents)), *(bytes(b) for b in msg.buffers)]

    def deserialize(self, frames)->Message:
        "Verify and parse multipart frames; raises FormatError or AuthError."
        try: idents, body = self.client.feed_identities([bytes(f) for f in frames])
        except ValueError: raise FormatError("message did not include the <IDS|MSG> delimiter") from None
        if len(body) < 5: raise FormatError(f"expected at least 5 frames after delimiter, got {len(body)}")
        try: raw = self.client.deserialize(body, content=True)
        except json.JSONDecodeError as exc: raise FormatError(f"message part is not valid JSON: {exc}") from exc
        except ValueError as exc:
            if str(exc).startswith(auth_failures): raise AuthError(str(exc)) from exc
            raise FormatError(str(exc)) from exc
        except (KeyError, TypeError) as exc: raise FormatError(f"malformed header: {exc!r}") from exc
        return Message(header=_as_dict(raw["header"], "header"), parent_header=_as_dict(raw["parent_header"], "parent_header"),
            metadata=_as_dict(raw["metadata"], "metadata"), content=_as_dict(raw["content"], "content"),
            buffers=tuple(bytes(b) for b in raw.get("buffers", ())), idents=tuple(idents))


def encode(msg:Message, key:bytes=b"", scheme:str="hmac-sha256")->list[bytes]:
    "Serialize `msg` to multipart frames, signed with `key`."
    return Session(key, scheme).serialize(msg)


def decode(frames, key:bytes=b"", scheme:str="hmac-sha256")->Message:
    "Verify and parse multipart frames; raises FormatError or AuthError."
    return Session(key, scheme).deserialize(frames)
