"""
chainsock error kinds.

Every failure that reaches a caller is a ChainSockError carrying one of the
ErrorKind tags below. On the wire it travels as the error record

  {"error": "<KIND>: <message>"}

and the client turns it back into the same exception.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    # transport
    FRAME_OVERSIZE = "FRAME_OVERSIZE"
    FRAME_TRUNCATED = "FRAME_TRUNCATED"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"

    # request decoding / validation
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    BAD_PAYLOAD = "BAD_PAYLOAD"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_ROLE = "INVALID_ROLE"

    # abi
    ABI_ENCODE_FAILED = "ABI_ENCODE_FAILED"
    ABI_DECODE_FAILED = "ABI_DECODE_FAILED"
    MISSING_BYTECODE = "MISSING_BYTECODE"
    LOG_DECODE_FAILED = "LOG_DECODE_FAILED"

    # chain
    BROADCAST_FAILED = "BROADCAST_FAILED"
    TX_REVERTED = "TX_REVERTED"
    RECEIPT_MISSING = "RECEIPT_MISSING"
    RPC_FAILED = "RPC_FAILED"

    INTERNAL = "INTERNAL"


class ChainSockError(Exception):
    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = ErrorKind(kind)
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.message:
            return self.kind.value
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"ChainSockError({self.kind.value!r}, {self.message!r})"

    def wrap(self, context: str) -> "ChainSockError":
        """Same kind, message prefixed with context. Use with `raise ... from`."""
        return ChainSockError(self.kind, f"{context}: {self.message}" if self.message else context)

    @classmethod
    def parse(cls, text: str) -> "ChainSockError":
        kind, sep, message = str(text).partition(": ")
        try:
            return cls(ErrorKind(kind.strip()), message if sep else "")
        except ValueError:
            return cls(ErrorKind.INTERNAL, str(text))
