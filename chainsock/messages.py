"""
chainsock request/response schemas.

Each operation tag has one request and one response dataclass. Fields carry
their JSON wire name in the dataclass metadata, so the Python side stays
snake_case while the wire keeps the historical camelCase names:

  SendEthRequest(priv_key=..., recipient=..., amount="1")
    -> {"privKey": "...", "recipient": "0x...", "amount": "1"}

Amounts travel as human-readable decimal strings and are converted to base
units (18 decimals) with to_base_units().
"""
from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from decimal import MAX_EMAX, MIN_EMIN, ROUND_DOWN, Decimal, DecimalException, localcontext
from typing import Any, Dict, List, Type, TypeVar

from . import crypto
from .errors import ChainSockError, ErrorKind
from .protocol import dumps, loads_object

DECIMALS = 18
MAX_UINT256 = 2 ** 256 - 1

ST_CONTROL_ROLE = "b6ce5d7b1abd7b8db19bd268a06356fe343d6a81aca7f86455289d12aecbdcda"
ST_EDIT_ROLE = "025c10ffb4b4f977a8899da54e53278bc52863e80645c6b1f1ee5085ab0069bc"

# -----------------------------
# Operation tags
# -----------------------------
SEND_ETH = "SEND_ETH"
BALANCE_OF_ETH = "BALANCE_OF_ETH"
DEPLOY_ST = "DEPLOY_ST"
DEPLOY_CS = "DEPLOY_CS"
ISSUE = "ISSUE"
TRANSFER = "TRANSFER"
REDEEM = "REDEEM"
REGISTER_WALLET = "REGISTER_WALLET"
GRANT_ROLE = "GRANT_ROLE"
TOTAL_SUPPLY = "TOTAL_SUPPLY"
BALANCE_OF = "BALANCE_OF"
NAME = "NAME"
SYMBOL = "SYMBOL"
HAS_ROLE = "HAS_ROLE"
DEPLOY_FC = "DEPLOY_FC"
CREATE_CONTRACTS = "CREATE_CONTRACTS"


# -----------------------------
# Amounts
# -----------------------------
_AMOUNT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def to_base_units(amount: str, decimals: int = DECIMALS) -> int:
    """
    "1.25" -> 1250000000000000000 (for 18 decimals).

    Digits beyond `decimals` fractional places are truncated toward zero.
    """
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    if not isinstance(amount, str) or not _AMOUNT_RE.match(amount.strip()):
        raise ChainSockError(ErrorKind.INVALID_AMOUNT, f"invalid amount(={amount!r})")
    with localcontext() as ctx:
        ctx.Emax = MAX_EMAX
        ctx.Emin = MIN_EMIN
        try:
            value = Decimal(amount.strip())
            ctx.prec = max(len(value.as_tuple().digits), 1) + 1
            scaled = value.scaleb(decimals)
        except DecimalException as e:
            raise ChainSockError(ErrorKind.INVALID_AMOUNT, f"invalid amount(={amount!r})") from e
        if scaled < 0:
            raise ChainSockError(ErrorKind.INVALID_AMOUNT, f"negative amount(={amount!r})")
        if scaled > MAX_UINT256:
            raise ChainSockError(ErrorKind.INVALID_AMOUNT, f"amount(={amount!r}) overflows uint256")
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(value: int, decimals: int = DECIMALS) -> str:
    with localcontext() as ctx:
        ctx.prec = len(str(abs(int(value)))) + decimals + 1
        text = format(Decimal(int(value)).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


# -----------------------------
# Schema plumbing
# -----------------------------
def _wire(name: str, default: Any = dataclasses.MISSING, *, secret: bool = False):
    md = {"wire": name}
    if default is dataclasses.MISSING:
        return field(metadata=md, repr=not secret)
    if isinstance(default, list):
        return field(default_factory=list, metadata=md, repr=not secret)
    return field(default=default, metadata=md, repr=not secret)


def _check_type(value: Any, ftype: Any) -> bool:
    if ftype in (str, "str"):
        return isinstance(value, str)
    if ftype in (bool, "bool"):
        return isinstance(value, bool)
    if ftype in (int, "int"):
        return isinstance(value, int) and not isinstance(value, bool)
    if ftype in ("List[str]", List[str]):
        return isinstance(value, list) and all(isinstance(v, str) for v in value)
    return True


M = TypeVar("M", bound="Message")


class Message:
    """Mixin for the wire dataclasses below."""

    def to_dict(self) -> Dict[str, Any]:
        return {f.metadata["wire"]: getattr(self, f.name) for f in dataclasses.fields(self)}

    def to_payload(self) -> str:
        return dumps(self.to_dict())

    @classmethod
    def from_dict(cls: Type[M], obj: Dict[str, Any]) -> M:
        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            wire = f.metadata["wire"]
            if wire not in obj:
                if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                    raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"{cls.__name__}: missing field '{wire}'")
                continue
            value = obj[wire]
            if not _check_type(value, f.type):
                raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"{cls.__name__}: field '{wire}' has wrong type")
            kwargs[f.name] = value
        return cls(**kwargs)

    @classmethod
    def from_payload(cls: Type[M], payload: str) -> M:
        return cls.from_dict(loads_object(payload))

    def validate(self) -> None:
        """Check addresses, amounts and roles without touching the chain."""


def _gas_limit_ok(value: int) -> None:
    if value < 0:
        raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"gasLimit must be non-negative(={value})")


# -----------------------------
# Native coin
# -----------------------------
@dataclass(frozen=True)
class SendEthRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    recipient: str = _wire("recipient")
    amount: str = _wire("amount")

    def validate(self) -> None:
        crypto.decode_address(self.recipient, "recipient")
        to_base_units(self.amount)


@dataclass(frozen=True)
class SendEthResponse(Message):
    hash: str = _wire("hash")


@dataclass(frozen=True)
class BalanceOfEthRequest(Message):
    account: str = _wire("account")

    def validate(self) -> None:
        crypto.decode_address(self.account, "account")


@dataclass(frozen=True)
class BalanceOfEthResponse(Message):
    amount: str = _wire("amount")


# -----------------------------
# Deployments
# -----------------------------
@dataclass(frozen=True)
class DeployStRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    name: str = _wire("name")
    symbol: str = _wire("symbol")
    initial_supply: str = _wire("initialSupply")
    compliance_address: str = _wire("complianceAddress")

    def validate(self) -> None:
        crypto.decode_address(self.compliance_address, "compliance address")
        to_base_units(self.initial_supply)


@dataclass(frozen=True)
class DeployStResponse(Message):
    hash: str = _wire("hash")
    contract_address: str = _wire("contractAddress")


@dataclass(frozen=True)
class DeployCsRequest(Message):
    priv_key: str = _wire("privKey", secret=True)


@dataclass(frozen=True)
class DeployCsResponse(Message):
    hash: str = _wire("hash")
    contract_address: str = _wire("contractAddress")


@dataclass(frozen=True)
class DeployFcRequest(Message):
    priv_key: str = _wire("privKey", secret=True)


@dataclass(frozen=True)
class DeployFcResponse(Message):
    hash: str = _wire("hash")
    contract_address: str = _wire("contractAddress")


@dataclass(frozen=True)
class CreateContractsRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    name: str = _wire("name")
    symbol: str = _wire("symbol")
    initial_supply: str = _wire("initialSupply")
    grantees: List[str] = _wire("grantees", [])

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        to_base_units(self.initial_supply)
        for i, grantee in enumerate(self.grantees):
            crypto.decode_address(grantee, f"grantee address at index {i}")


@dataclass(frozen=True)
class CreateContractsResponse(Message):
    hash: str = _wire("hash")
    compliance_address: str = _wire("complianceAddress")
    token_address: str = _wire("tokenAddress")


# -----------------------------
# Token writes
# -----------------------------
@dataclass(frozen=True)
class IssueRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    recipient: str = _wire("recipient")
    amount: str = _wire("amount")
    gas_limit: int = _wire("gasLimit", 0)
    is_async: bool = _wire("isAsync", False)

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.recipient, "recipient address")
        to_base_units(self.amount)
        _gas_limit_ok(self.gas_limit)


@dataclass(frozen=True)
class IssueResponse(Message):
    hash: str = _wire("hash")


@dataclass(frozen=True)
class TransferRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    recipient: str = _wire("recipient")
    amount: str = _wire("amount")
    gas_limit: int = _wire("gasLimit", 0)
    is_async: bool = _wire("isAsync", False)

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.recipient, "recipient address")
        to_base_units(self.amount)
        _gas_limit_ok(self.gas_limit)


@dataclass(frozen=True)
class TransferResponse(Message):
    hash: str = _wire("hash")


@dataclass(frozen=True)
class RedeemRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    account: str = _wire("account")
    amount: str = _wire("amount")
    reason: str = _wire("reason", "")
    gas_limit: int = _wire("gasLimit", 0)
    is_async: bool = _wire("isAsync", False)

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.account, "account address")
        to_base_units(self.amount)
        _gas_limit_ok(self.gas_limit)


@dataclass(frozen=True)
class RedeemResponse(Message):
    hash: str = _wire("hash")


# -----------------------------
# Compliance service writes
# -----------------------------
@dataclass(frozen=True)
class RegisterWalletRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    account: str = _wire("account")
    gas_limit: int = _wire("gasLimit", 0)
    is_async: bool = _wire("isAsync", False)

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.account, "account address")
        _gas_limit_ok(self.gas_limit)


@dataclass(frozen=True)
class RegisterWalletResponse(Message):
    hash: str = _wire("hash")


@dataclass(frozen=True)
class GrantRoleRequest(Message):
    priv_key: str = _wire("privKey", secret=True)
    contract_address: str = _wire("contractAddress")
    role: str = _wire("role")
    grantee: str = _wire("grantee")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.grantee, "grantee address")
        crypto.decode_role(self.role)


@dataclass(frozen=True)
class GrantRoleResponse(Message):
    hash: str = _wire("hash")


# -----------------------------
# Reads
# -----------------------------
@dataclass(frozen=True)
class TotalSupplyRequest(Message):
    contract_address: str = _wire("contractAddress")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")


@dataclass(frozen=True)
class TotalSupplyResponse(Message):
    amount: str = _wire("amount")


@dataclass(frozen=True)
class BalanceOfRequest(Message):
    contract_address: str = _wire("contractAddress")
    account: str = _wire("account")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.account, "account address")


@dataclass(frozen=True)
class BalanceOfResponse(Message):
    amount: str = _wire("amount")


@dataclass(frozen=True)
class NameRequest(Message):
    contract_address: str = _wire("contractAddress")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")


@dataclass(frozen=True)
class NameResponse(Message):
    name: str = _wire("name")


@dataclass(frozen=True)
class SymbolRequest(Message):
    contract_address: str = _wire("contractAddress")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")


@dataclass(frozen=True)
class SymbolResponse(Message):
    symbol: str = _wire("symbol")


@dataclass(frozen=True)
class HasRoleRequest(Message):
    contract_address: str = _wire("contractAddress")
    role: str = _wire("role")
    account: str = _wire("account")

    def validate(self) -> None:
        crypto.decode_address(self.contract_address, "contract address")
        crypto.decode_address(self.account, "account address")
        crypto.decode_role(self.role)


@dataclass(frozen=True)
class HasRoleResponse(Message):
    has: bool = _wire("has")


# op tag -> (request type, response type)
SCHEMAS: Dict[str, tuple] = {
    SEND_ETH: (SendEthRequest, SendEthResponse),
    BALANCE_OF_ETH: (BalanceOfEthRequest, BalanceOfEthResponse),
    DEPLOY_ST: (DeployStRequest, DeployStResponse),
    DEPLOY_CS: (DeployCsRequest, DeployCsResponse),
    ISSUE: (IssueRequest, IssueResponse),
    TRANSFER: (TransferRequest, TransferResponse),
    REDEEM: (RedeemRequest, RedeemResponse),
    REGISTER_WALLET: (RegisterWalletRequest, RegisterWalletResponse),
    GRANT_ROLE: (GrantRoleRequest, GrantRoleResponse),
    TOTAL_SUPPLY: (TotalSupplyRequest, TotalSupplyResponse),
    BALANCE_OF: (BalanceOfRequest, BalanceOfResponse),
    NAME: (NameRequest, NameResponse),
    SYMBOL: (SymbolRequest, SymbolResponse),
    HAS_ROLE: (HasRoleRequest, HasRoleResponse),
    DEPLOY_FC: (DeployFcRequest, DeployFcResponse),
    CREATE_CONTRACTS: (CreateContractsRequest, CreateContractsResponse),
}
