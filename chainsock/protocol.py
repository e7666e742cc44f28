"""
chainsock - framing and envelope helpers.

Every message is a JSON envelope encoded as UTF-8 and terminated by a single
NUL byte (0x00). JSON text never carries a raw NUL (it is escaped as \\u0000),
so the sentinel cannot occur inside a frame.

  frame    = envelope_json || 0x00
  envelope = {"type": "<OP>", "payload": "<per-op JSON text>"}

One request and one response per connection.
"""
from __future__ import annotations

import json
import re
import socket
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .errors import ChainSockError, ErrorKind

SENTINEL = b"\x00"
MAX_FRAME = 10 * 1024 * 1024  # 10MB safety cap
RECV_CHUNK = 64 * 1024


def write_frame(sock: socket.socket, data: bytes, deadline=None, max_size: Optional[int] = None) -> None:
    if SENTINEL in data:
        raise ValueError("frame payload contains the sentinel byte")
    if max_size is not None and len(data) > max_size:
        raise ChainSockError(ErrorKind.FRAME_OVERSIZE, f"frame of {len(data)} bytes exceeds {max_size}")
    if deadline is not None:
        sock.settimeout(deadline.remaining())
    try:
        sock.sendall(data + SENTINEL)
    except socket.timeout as e:
        raise ChainSockError(ErrorKind.TIMEOUT, "frame write timed out") from e


def read_frame(sock: socket.socket, max_size: int = MAX_FRAME, deadline=None) -> bytes:
    """Read bytes until the sentinel; return them without it."""
    buf = bytearray()
    while True:
        if deadline is not None:
            deadline.check("frame read")
            sock.settimeout(deadline.remaining())
        try:
            chunk = sock.recv(RECV_CHUNK)
        except socket.timeout as e:
            raise ChainSockError(ErrorKind.TIMEOUT, "frame read timed out") from e
        if not chunk:
            raise ChainSockError(ErrorKind.FRAME_TRUNCATED, f"connection closed after {len(buf)} bytes without sentinel")

        idx = chunk.find(SENTINEL)
        if idx >= 0:
            buf.extend(chunk[:idx])
        else:
            buf.extend(chunk)
        if len(buf) > max_size:
            raise ChainSockError(ErrorKind.FRAME_OVERSIZE, f"frame exceeds {max_size} bytes")
        if idx >= 0:
            return bytes(buf)


def dumps(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads_object(raw: Any, what: str = "payload") -> Dict[str, Any]:
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"{what} is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"{what} must be a JSON object")
    return obj


@dataclass(frozen=True)
class Envelope:
    type: str
    payload: str

    def encode(self) -> bytes:
        return dumps({"type": self.type, "payload": self.payload}).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> "Envelope":
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"envelope is not UTF-8: {e}") from e
        obj = loads_object(text, what="envelope")
        mtype = obj.get("type")
        payload = obj.get("payload")
        if not isinstance(mtype, str) or not isinstance(payload, str):
            raise ChainSockError(ErrorKind.BAD_PAYLOAD, "envelope requires string fields 'type' and 'payload'")
        return cls(type=mtype, payload=payload)

    # -----------------------------
    # Response helpers
    # -----------------------------
    @classmethod
    def error(cls, mtype: str, err: ChainSockError) -> "Envelope":
        return cls(type=mtype, payload=dumps({"error": str(err)}))

    def error_text(self) -> Optional[str]:
        """The error string if this envelope carries an error record."""
        try:
            obj = json.loads(self.payload)
        except ValueError:
            return None
        if isinstance(obj, dict) and set(obj) == {"error"}:
            return str(obj["error"])
        return None


def send_envelope(sock: socket.socket, env: Envelope, deadline=None, max_size: Optional[int] = None) -> None:
    write_frame(sock, env.encode(), deadline=deadline, max_size=max_size)


def recv_envelope(sock: socket.socket, max_size: int = MAX_FRAME, deadline=None) -> Envelope:
    return Envelope.decode(read_frame(sock, max_size=max_size, deadline=deadline))


# -----------------------------
# Log hygiene
# -----------------------------
SECRET_FIELDS = ("privKey",)
# matches the value in both a payload ("privKey":"..") and an envelope (\"privKey\":\"..\")
_SECRET_RE = re.compile(r'(\\?"(?:%s)\\?"\s*:\s*\\?")[^"\\]*' % "|".join(SECRET_FIELDS))


def redact(raw: Union[str, bytes]) -> str:
    """Text of a request fit for the log, with signer keys masked."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return _SECRET_RE.sub(r"\1<redacted>", raw)
