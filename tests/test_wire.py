import json, pytest
from jupyter_client.session import Session as ClientSession
from ipyark.errors import AuthError, ConfigError, FormatError, WireError
from ipyark.wire import DELIM, PROTOCOL_VERSION, Message, MsgType, Session, decode, encode, reply_type


def _msg(**content):
    return Session(b"secret", session_id="s1").msg("execute_request", content or dict(code="1+1"), idents=(b"id1", b"id2"))


def _same(a:Message, b:Message):
    "Compare two messages, treating header dates as instants."
    strip = lambda h: {k: v for k, v in h.items() if k != "date"}
    assert strip(a.header) == strip(b.header)
    assert a.parent_header.get("msg_id") == b.parent_header.get("msg_id")
    assert (a.metadata, a.content, a.buffers, a.idents) == (b.metadata, b.content, b.buffers, b.idents)


round_trip_cases = [
    pytest.param(dict(), (), (b"a",), b"k", "hmac-sha256", id="empty-content"),
    pytest.param(dict(text="héllo wörld ✓", data={"x": [1, 2]}), (), (b"a",), b"k", "hmac-sha256", id="non-ascii"),
    pytest.param(dict(comm_id="c"), (b"\x00\x01", b"", b"\xff" * 32), (b"a",), b"k", "hmac-sha256", id="buffers"),
    pytest.param(dict(code="x"), (), (), b"k", "hmac-sha256", id="no-idents"),
    pytest.param(dict(code="x"), (b"b",), (b"a", b"b"), b"", "hmac-sha256", id="empty-key"),
    pytest.param(dict(code="x"), (), (b"a",), b"k", "hmac-sha512", id="sha512"),
]

@pytest.mark.parametrize("content,buffers,idents,key,scheme", round_trip_cases)
def test_round_trip(content, buffers, idents, key, scheme):
    parent = Session(key, scheme).msg("execute_request", dict(code="1"))
    msg = Session(key, scheme).msg("comm_msg", content, parent=parent, metadata=dict(m=1), buffers=buffers, idents=idents)
    out = decode(encode(msg, key, scheme), key, scheme)
    _same(out, msg)
    assert out.header["version"] == PROTOCOL_VERSION


def test_frame_layout():
    session = Session(b"secret")
    frames = session.serialize(_msg())
    assert frames[:3] == [b"id1", b"id2", DELIM]
    assert frames[3] == session.sign(frames[4:8])
    assert json.loads(frames[4])["msg_type"] == "execute_request"
    assert len(frames) == 8


def test_wrong_key_rejected():
    frames = encode(_msg(), b"secret")
    with pytest.raises(AuthError): decode(frames, b"other")


def test_tampered_digest_rejected():
    frames = encode(_msg(), b"secret")
    frames[3] = b"0" * len(frames[3])
    with pytest.raises(AuthError): decode(frames, b"secret")
    frames[3] = b""
    with pytest.raises(AuthError): decode(frames, b"secret")


def test_tampered_content_rejected():
    frames = encode(_msg(), b"secret")
    frames[7] = json.dumps(dict(code="import os")).encode()
    with pytest.raises(AuthError): decode(frames, b"secret")


def test_replayed_message_rejected():
    session = Session(b"secret")
    frames = encode(_msg(), b"secret")
    session.deserialize(frames)
    with pytest.raises(AuthError): session.deserialize(frames)


def test_auth_errors_are_wire_errors():
    assert issubclass(AuthError, WireError) and issubclass(FormatError, WireError)
    assert issubclass(WireError, ValueError)


def test_missing_delimiter():
    frames = encode(_msg(), b"")
    frames.remove(DELIM)
    with pytest.raises(FormatError): decode(frames)


def test_too_few_frames():
    frames = encode(_msg(), b"secret")
    with pytest.raises(FormatError): decode(frames[:-1], b"secret")


def test_invalid_json_is_format_error():
    frames = encode(_msg(), b"")
    frames[-1] = b"{not json"
    with pytest.raises(FormatError): decode(frames)
    frames[-1] = b"[1, 2]"
    with pytest.raises(FormatError): decode(frames)


def test_header_without_msg_id_is_format_error():
    frames = encode(_msg(), b"")
    frames[4] = json.dumps(dict(msg_type="execute_request", version="5.3")).encode()
    with pytest.raises(FormatError): decode(frames)


def test_unsigned_when_key_empty():
    frames = encode(_msg(), b"")
    assert frames[3] == b""
    assert decode(frames).content == dict(code="1+1")


@pytest.mark.parametrize("index,part", [(5, "parent_header"), (6, "metadata"), (7, "content")])
def test_null_parts_decode_as_empty(index, part):
    frames = encode(_msg(), b"")
    frames[index] = b"null"
    assert getattr(decode(frames), part) == {}


def test_unknown_scheme_is_config_error():
    with pytest.raises(ConfigError): Session(b"k", signature_scheme="md5")
    with pytest.raises(ConfigError): Session(b"k", signature_scheme="hmac-nosuchhash")


def test_scheme_mismatch_rejected():
    with pytest.raises(AuthError): decode(encode(_msg(), b"k", "hmac-sha512"), b"k", "hmac-sha256")


def test_decodes_jupyter_client_frames():
    client = ClientSession(key=b"secret", signature_scheme="hmac-sha256")
    msg = client.msg("kernel_info_request", {})
    frames = client.serialize(msg, ident=[b"client"])
    out = decode(frames, b"secret")
    assert out.kind is MsgType.KERNEL_INFO_REQUEST
    assert out.msg_id == msg["header"]["msg_id"]
    assert out.idents == (b"client",)


def test_jupyter_client_accepts_our_frames():
    client = ClientSession(key=b"secret", signature_scheme="hmac-sha256")
    request = Session(b"secret").msg("execute_request", dict(code="x"), idents=(b"client",))
    reply = Session(b"secret").msg("execute_reply", dict(status="ok", execution_count=1), parent=request)
    idents, parts = client.feed_identities(encode(reply, b"secret"))
    out = client.deserialize(parts)
    assert idents == [b"client"]
    assert out["msg_type"] == "execute_reply"
    assert out["parent_header"]["msg_id"] == request.msg_id
    assert out["content"]["execution_count"] == 1


def test_session_msg_links_parent():
    session = Session(b"", session_id="abc", username="kernel")
    parent = _msg()
    reply = session.msg("execute_reply", dict(status="ok"), parent=parent)
    assert reply.parent_header == parent.header
    assert reply.idents == parent.idents
    assert reply.header["session"] == "abc"
    assert reply.header["username"] == "kernel"
    assert reply.header["version"] == PROTOCOL_VERSION
    assert reply.msg_id != parent.msg_id
    assert session.msg("status", {}, parent=parent, idents=()).idents == ()


def test_msg_type_helpers():
    assert MsgType.parse("execute_request") is MsgType.EXECUTE_REQUEST
    assert MsgType.parse("frobnicate_request") is MsgType.UNKNOWN
    assert reply_type("frobnicate_request") == "frobnicate_reply"
    msg = Message(header=dict(msg_type="frobnicate_request", msg_id="0123456789"))
    assert msg.is_request and msg.kind is MsgType.UNKNOWN
    assert msg.short_id() == "01234567"
