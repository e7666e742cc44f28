"""
chainsock ABI catalog.

The three contracts this service talks to are fixed:

- SecurityToken      ERC-20 style token gated by a compliance service
- ComplianceService  registered-wallet set + role based access control
- FactoryV0          deploys a token + compliance pair in one transaction

Their artifacts (ABI JSON + deploy bytecode) ship in chainsock/contracts/ and
are parsed once. The catalog is never mutated afterwards, so every request
thread reads it without locking.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError

from . import crypto
from .errors import ChainSockError, ErrorKind

SECURITY_TOKEN = "SecurityToken"
COMPLIANCE_SERVICE = "ComplianceService"
FACTORY_V0 = "FactoryV0"
CONTRACTS = (SECURITY_TOKEN, COMPLIANCE_SERVICE, FACTORY_V0)

ARTIFACT_DIR = Path(__file__).resolve().parent / "contracts"

CONSTRUCTOR = ""


def canonical_type(param: Mapping[str, Any]) -> str:
    """ABI param -> canonical type string; tuples expand to (t1,t2,...)."""
    typ = param["type"]
    if not typ.startswith("tuple"):
        return typ
    suffix = typ[len("tuple"):]
    inner = ",".join(canonical_type(c) for c in param.get("components", []))
    return f"({inner}){suffix}"


@dataclass(frozen=True)
class AbiEntry:
    kind: str  # function | constructor | event
    name: str
    inputs: Tuple[str, ...]
    input_names: Tuple[str, ...]
    indexed: Tuple[bool, ...]
    outputs: Tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @classmethod
    def from_json(cls, item: Mapping[str, Any]) -> "AbiEntry":
        inputs = item.get("inputs", [])
        return cls(
            kind=item["type"],
            name=item.get("name", CONSTRUCTOR) if item["type"] != "constructor" else CONSTRUCTOR,
            inputs=tuple(canonical_type(p) for p in inputs),
            input_names=tuple(p.get("name", "") for p in inputs),
            indexed=tuple(bool(p.get("indexed", False)) for p in inputs),
            outputs=tuple(canonical_type(p) for p in item.get("outputs", [])),
        )


class ContractAbi:
    def __init__(self, name: str, abi: Sequence[Mapping[str, Any]], bytecode: str):
        self.name = name
        self.bytecode = bytes.fromhex(crypto.strip_0x(bytecode or ""))
        self.methods: Dict[str, AbiEntry] = {}
        self.events: Dict[str, AbiEntry] = {}
        self.constructor = AbiEntry("constructor", CONSTRUCTOR, (), (), (), ())
        for item in abi:
            kind = item.get("type", "function")
            if kind == "constructor":
                self.constructor = AbiEntry.from_json(item)
            elif kind == "function":
                # none of the shipped contracts overload a method name
                self.methods[item["name"]] = AbiEntry.from_json(item)
            elif kind == "event":
                self.events[item["name"]] = AbiEntry.from_json(item)
        self.selectors: Dict[bytes, AbiEntry] = {
            crypto.function_selector(m.signature): m for m in self.methods.values()
        }

    def method(self, name: str) -> AbiEntry:
        if name == CONSTRUCTOR:
            return self.constructor
        try:
            return self.methods[name]
        except KeyError:
            raise ChainSockError(ErrorKind.ABI_ENCODE_FAILED, f"{self.name} has no method '{name}'") from None

    def event(self, name: str) -> AbiEntry:
        try:
            return self.events[name]
        except KeyError:
            raise ChainSockError(ErrorKind.ABI_DECODE_FAILED, f"{self.name} has no event '{name}'") from None

    def pack(self, method: str, *args: Any) -> bytes:
        entry = self.method(method)
        if len(args) != len(entry.inputs):
            raise ChainSockError(
                ErrorKind.ABI_ENCODE_FAILED,
                f"{self.name}.{method or 'constructor'} takes {len(entry.inputs)} args, got {len(args)}",
            )
        try:
            encoded = abi_encode(list(entry.inputs), list(args))
        except (EncodingError, TypeError, ValueError, OverflowError) as e:
            raise ChainSockError(ErrorKind.ABI_ENCODE_FAILED, f"{self.name}.{method or 'constructor'}: {e}") from e
        if method == CONSTRUCTOR:
            return encoded
        return crypto.function_selector(entry.signature) + encoded

    def unpack(self, method: str, data: bytes) -> Tuple[Any, ...]:
        entry = self.method(method)
        try:
            return tuple(abi_decode(list(entry.outputs), bytes(data)))
        except (DecodingError, TypeError, ValueError, OverflowError) as e:
            raise ChainSockError(
                ErrorKind.ABI_DECODE_FAILED, f"{self.name}.{method}: cannot decode output(={crypto.to_0x(data)}): {e}"
            ) from e

    def decode_input(self, data: bytes) -> Tuple[str, Tuple[Any, ...]]:
        """Calldata -> (method name, args)."""
        entry = self.selectors.get(bytes(data[:4]))
        if entry is None:
            raise ChainSockError(ErrorKind.ABI_DECODE_FAILED, f"{self.name}: unknown selector {crypto.to_0x(data[:4])}")
        try:
            return entry.name, tuple(abi_decode(list(entry.inputs), bytes(data[4:])))
        except (DecodingError, TypeError, ValueError, OverflowError) as e:
            raise ChainSockError(ErrorKind.ABI_DECODE_FAILED, f"{self.name}.{entry.name}: {e}") from e

    def event_topic(self, name: str) -> bytes:
        return crypto.event_topic(self.event(name).signature)

    def decode_event(self, name: str, data: bytes, topics: Sequence[bytes] = ()) -> Dict[str, Any]:
        """
        Decode one log into {param name: value}.

        Non-indexed params come from `data`. Indexed params are read from
        `topics[1:]` when given (static types only).
        """
        entry = self.event(name)
        plain = [t for t, ix in zip(entry.inputs, entry.indexed) if not ix]
        try:
            values = list(abi_decode(plain, bytes(data)))
        except (DecodingError, TypeError, ValueError, OverflowError) as e:
            raise ChainSockError(
                ErrorKind.ABI_DECODE_FAILED, f"{self.name}.{name}: cannot decode log data(={crypto.to_0x(data)}): {e}"
            ) from e

        out: Dict[str, Any] = {}
        topic_iter = iter(topics[1:])
        for pos, (typ, pname, ix) in enumerate(zip(entry.inputs, entry.input_names, entry.indexed)):
            key = pname or f"arg{pos}"
            if ix:
                topic = next(topic_iter, None)
                out[key] = abi_decode([typ], bytes(topic))[0] if topic is not None else None
            else:
                out[key] = values.pop(0)
        return out


class AbiCatalog:
    """Process-lifetime set of parsed contract ABIs."""

    def __init__(self, artifact_dir: Path = ARTIFACT_DIR, bytecode_overrides: Optional[Mapping[str, str]] = None):
        overrides = dict(bytecode_overrides or {})
        unknown = set(overrides) - set(CONTRACTS)
        if unknown:
            raise ValueError(f"unknown contracts in bytecode overrides: {sorted(unknown)}")
        self._contracts: Dict[str, ContractAbi] = {}
        for name in CONTRACTS:
            artifact = json.loads((Path(artifact_dir) / f"{name}.json").read_text(encoding="utf-8"))
            bytecode = overrides.get(name, artifact.get("bytecode", ""))
            self._contracts[name] = ContractAbi(name, artifact["abi"], bytecode)

    def __getitem__(self, name: str) -> ContractAbi:
        return self._contracts[name]

    def names(self) -> List[str]:
        return list(self._contracts)

    def pack(self, contract: str, method: str, *args: Any) -> bytes:
        return self[contract].pack(method, *args)

    def unpack(self, contract: str, method: str, data: bytes) -> Tuple[Any, ...]:
        return self[contract].unpack(method, data)

    def deploy_data(self, contract: str, *ctor_args: Any) -> bytes:
        """bytecode || abi-encoded constructor args"""
        c = self[contract]
        if not c.bytecode:
            raise ChainSockError(ErrorKind.MISSING_BYTECODE, f"no deploy bytecode configured for {contract}")
        return c.bytecode + c.pack(CONSTRUCTOR, *ctor_args)

    def decode_event(self, contract: str, event: str, data: bytes, topics: Sequence[bytes] = ()) -> Dict[str, Any]:
        return self[contract].decode_event(event, data, topics)
