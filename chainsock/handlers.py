"""
chainsock operation handlers.

BlockchainService owns one method per message type. Every method walks the
same path:

  decode request -> validate / convert (amounts, addresses, roles)
    -> pack call data through the ABI catalog
    -> sync_send (+ receipt for deployments)  or  query_contract + unpack
    -> typed response

dispatch() maps an envelope onto that path. Errors are raised as
ChainSockError with the lower layer's kind kept and context prepended; the
socket server turns them into error records.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from eth_utils import to_checksum_address

from . import crypto
from . import messages as m
from .abi import COMPLIANCE_SERVICE, FACTORY_V0, SECURITY_TOKEN, AbiCatalog
from .deadline import Deadline
from .errors import ChainSockError, ErrorKind
from .evm import EvmAdapter, Receipt
from .protocol import Envelope, redact

Handler = Callable[[Any, Deadline], m.Message]


def _amount(value: str, what: str = "amount") -> int:
    try:
        return m.to_base_units(value, m.DECIMALS)
    except ChainSockError as e:
        raise e.wrap(f"invalid {what}(={value})") from e


def _address(value: str, what: str) -> bytes:
    return crypto.decode_address(value, what)


class BlockchainService:
    def __init__(self, catalog: AbiCatalog, evm: EvmAdapter, logger: Optional[logging.Logger] = None):
        self.catalog = catalog
        self.evm = evm
        self.logger = logger or logging.getLogger("chainsock")
        self._handlers: Dict[str, Handler] = {
            m.SEND_ETH: self.send_eth,
            m.BALANCE_OF_ETH: self.balance_of_eth,
            m.DEPLOY_ST: self.deploy_security_token,
            m.DEPLOY_CS: self.deploy_compliance_service,
            m.ISSUE: self.issue,
            m.TRANSFER: self.transfer,
            m.REDEEM: self.redeem,
            m.REGISTER_WALLET: self.register_wallet,
            m.GRANT_ROLE: self.grant_role,
            m.TOTAL_SUPPLY: self.total_supply,
            m.BALANCE_OF: self.balance_of,
            m.NAME: self.name,
            m.SYMBOL: self.symbol,
            m.HAS_ROLE: self.has_role,
            m.DEPLOY_FC: self.deploy_factory,
            m.CREATE_CONTRACTS: self.create_contracts,
        }

    def supported_types(self) -> Tuple[str, ...]:
        return tuple(self._handlers)

    def dispatch(self, env: Envelope, deadline: Deadline) -> Envelope:
        handler = self._handlers.get(env.type)
        if handler is None:
            raise ChainSockError(ErrorKind.UNSUPPORTED_TYPE, f"unsupported message type(={env.type})")
        req_cls, _ = m.SCHEMAS[env.type]
        try:
            req = req_cls.from_payload(env.payload)
        except ChainSockError as e:
            self.logger.warning("bad %s payload: %s", env.type, redact(env.payload))
            raise e.wrap(f"failed to unmarshal {req_cls.__name__}") from e
        req.validate()
        resp = handler(req, deadline)
        return Envelope(type=env.type, payload=resp.to_payload())

    # -----------------------------
    # Shared paths
    # -----------------------------
    def _send(self, deadline: Deadline, priv_key: str, to: Optional[bytes], data: bytes = b"", value: int = 0,
              gas_limit: int = 0, is_async: bool = False) -> str:
        if is_async:
            return self.evm.async_send(deadline, priv_key, to, value, data, gas_limit)
        return self.evm.sync_send(deadline, priv_key, to, value, data, gas_limit)

    def _deploy(self, deadline: Deadline, priv_key: str, data: bytes) -> Tuple[str, str]:
        try:
            tx_hash = self.evm.sync_send(deadline, priv_key, None, 0, data)
        except ChainSockError as e:
            raise e.wrap("failed sync send deploy transaction") from e
        receipt = self._receipt(deadline, tx_hash)
        if not receipt.contract_address:
            raise ChainSockError(ErrorKind.RECEIPT_MISSING, f"receipt of transaction(={tx_hash}) has no contract address")
        return tx_hash, receipt.contract_address

    def _receipt(self, deadline: Deadline, tx_hash: str) -> Receipt:
        try:
            return self.evm.receipt(deadline, tx_hash)
        except ChainSockError as e:
            raise e.wrap(f"failed to get the receipt of transaction(={tx_hash})") from e

    def _query(self, deadline: Deadline, contract: str, to: bytes, method: str, *args: Any) -> Tuple[Any, ...]:
        data = self.catalog.pack(contract, method, *args)
        try:
            output = self.evm.query_contract(deadline, to, data)
        except ChainSockError as e:
            raise e.wrap(f"failed to query contract(={crypto.checksum(to)}), input(={crypto.to_0x(data)})") from e
        return self.catalog.unpack(contract, method, output)

    # -----------------------------
    # Native coin
    # -----------------------------
    def send_eth(self, req: m.SendEthRequest, deadline: Deadline) -> m.SendEthResponse:
        amount = _amount(req.amount)
        recipient = _address(req.recipient, "recipient")
        try:
            tx_hash = self.evm.sync_send(deadline, req.priv_key, recipient, amount, b"")
        except ChainSockError as e:
            raise e.wrap("failed sync send transaction") from e
        self.logger.info("eth sent, amount=%s, recipient=%s", req.amount, req.recipient)
        return m.SendEthResponse(hash=tx_hash)

    def balance_of_eth(self, req: m.BalanceOfEthRequest, deadline: Deadline) -> m.BalanceOfEthResponse:
        account = _address(req.account, "account")
        try:
            amount = self.evm.balance_of(deadline, account)
        except ChainSockError as e:
            raise e.wrap(f"failed to get the balance of {req.account}") from e
        return m.BalanceOfEthResponse(amount=str(amount))

    # -----------------------------
    # Deployments
    # -----------------------------
    def deploy_security_token(self, req: m.DeployStRequest, deadline: Deadline) -> m.DeployStResponse:
        supply = _amount(req.initial_supply, "initial supply")
        compliance = _address(req.compliance_address, "compliance address")
        data = self.catalog.deploy_data(SECURITY_TOKEN, req.name, req.symbol, supply, crypto.checksum(compliance))
        tx_hash, contract = self._deploy(deadline, req.priv_key, data)
        self.logger.info(
            "contract deployed, name=%s, symbol=%s, supply=%s, compliance=%s, contract=%s",
            req.name, req.symbol, req.initial_supply, req.compliance_address, contract,
        )
        return m.DeployStResponse(hash=tx_hash, contract_address=contract)

    def deploy_compliance_service(self, req: m.DeployCsRequest, deadline: Deadline) -> m.DeployCsResponse:
        tx_hash, contract = self._deploy(deadline, req.priv_key, self.catalog.deploy_data(COMPLIANCE_SERVICE))
        self.logger.info("contract deployed, contract=%s", contract)
        return m.DeployCsResponse(hash=tx_hash, contract_address=contract)

    def deploy_factory(self, req: m.DeployFcRequest, deadline: Deadline) -> m.DeployFcResponse:
        tx_hash, contract = self._deploy(deadline, req.priv_key, self.catalog.deploy_data(FACTORY_V0))
        self.logger.info("factory deployed, contract=%s", contract)
        return m.DeployFcResponse(hash=tx_hash, contract_address=contract)

    def create_contracts(self, req: m.CreateContractsRequest, deadline: Deadline) -> m.CreateContractsResponse:
        supply = _amount(req.initial_supply, "initial supply")
        factory = _address(req.contract_address, "contract address")
        grantees = [
            crypto.checksum(_address(g, f"grantee address at index {i}")) for i, g in enumerate(req.grantees)
        ]
        data = self.catalog.pack(FACTORY_V0, "create", req.name, req.symbol, supply, grantees)
        try:
            tx_hash = self.evm.sync_send(deadline, req.priv_key, factory, 0, data)
        except ChainSockError as e:
            raise e.wrap(f"failed sync send create transaction. contract={req.contract_address}") from e
        receipt = self._receipt(deadline, tx_hash)

        # the factory emits Created(compliance, token) as the final log of the transaction
        if not receipt.logs:
            raise ChainSockError(ErrorKind.LOG_DECODE_FAILED, f"transaction(={tx_hash}) emitted no logs")
        last = receipt.logs[-1]
        try:
            created = self.catalog.decode_event(FACTORY_V0, "Created", last.data, last.topics)
        except ChainSockError as e:
            raise ChainSockError(
                ErrorKind.LOG_DECODE_FAILED, f"failed unpack log of transaction(={tx_hash}): {e.message}"
            ) from e

        compliance, token = to_checksum_address(created["compliance"]), to_checksum_address(created["token"])
        self.logger.info(
            "contracts created, name=%s, symbol=%s, supply=%s, grantees=%s, compliance=%s, token=%s",
            req.name, req.symbol, req.initial_supply, req.grantees, compliance, token,
        )
        return m.CreateContractsResponse(hash=tx_hash, compliance_address=compliance, token_address=token)

    # -----------------------------
    # Token writes
    # -----------------------------
    def issue(self, req: m.IssueRequest, deadline: Deadline) -> m.IssueResponse:
        amount = _amount(req.amount)
        contract = _address(req.contract_address, "contract address")
        recipient = _address(req.recipient, "recipient address")
        data = self.catalog.pack(SECURITY_TOKEN, "issue", crypto.checksum(recipient), amount)
        try:
            tx_hash = self._send(deadline, req.priv_key, contract, data, gas_limit=req.gas_limit, is_async=req.is_async)
        except ChainSockError as e:
            raise e.wrap(f"failed to send token issue transaction. contract={req.contract_address}") from e
        self.logger.info("token issued, amount=%s, recipient=%s, contract=%s", req.amount, req.recipient, req.contract_address)
        return m.IssueResponse(hash=tx_hash)

    def transfer(self, req: m.TransferRequest, deadline: Deadline) -> m.TransferResponse:
        amount = _amount(req.amount)
        contract = _address(req.contract_address, "contract address")
        recipient = _address(req.recipient, "recipient address")
        data = self.catalog.pack(SECURITY_TOKEN, "transfer", crypto.checksum(recipient), amount)
        try:
            tx_hash = self._send(deadline, req.priv_key, contract, data, gas_limit=req.gas_limit, is_async=req.is_async)
        except ChainSockError as e:
            raise e.wrap(f"failed to send token transfer transaction. contract={req.contract_address}") from e
        self.logger.info(
            "token transferred, amount=%s, recipient=%s, contract=%s", req.amount, req.recipient, req.contract_address
        )
        return m.TransferResponse(hash=tx_hash)

    def redeem(self, req: m.RedeemRequest, deadline: Deadline) -> m.RedeemResponse:
        amount = _amount(req.amount)
        contract = _address(req.contract_address, "contract address")
        account = _address(req.account, "account address")
        data = self.catalog.pack(SECURITY_TOKEN, "redeem", crypto.checksum(account), amount, req.reason)
        try:
            tx_hash = self._send(deadline, req.priv_key, contract, data, gas_limit=req.gas_limit, is_async=req.is_async)
        except ChainSockError as e:
            raise e.wrap(f"failed to send token redeem transaction. contract={req.contract_address}") from e
        self.logger.info("token redeemed, amount=%s, account=%s, contract=%s", req.amount, req.account, req.contract_address)
        return m.RedeemResponse(hash=tx_hash)

    # -----------------------------
    # Compliance service writes
    # -----------------------------
    def register_wallet(self, req: m.RegisterWalletRequest, deadline: Deadline) -> m.RegisterWalletResponse:
        contract = _address(req.contract_address, "contract address")
        account = _address(req.account, "account address")
        data = self.catalog.pack(COMPLIANCE_SERVICE, "registerWallet", crypto.checksum(account))
        try:
            tx_hash = self._send(deadline, req.priv_key, contract, data, gas_limit=req.gas_limit, is_async=req.is_async)
        except ChainSockError as e:
            raise e.wrap(f"failed to send register wallet transaction. contract={req.contract_address}") from e
        self.logger.info("wallet registered, account=%s, contract=%s", req.account, req.contract_address)
        return m.RegisterWalletResponse(hash=tx_hash)

    def grant_role(self, req: m.GrantRoleRequest, deadline: Deadline) -> m.GrantRoleResponse:
        role = crypto.decode_role(req.role)
        contract = _address(req.contract_address, "contract address")
        grantee = _address(req.grantee, "grantee address")
        # ComplianceService exposes setupRole for admin grants, not the generic grantRole
        data = self.catalog.pack(COMPLIANCE_SERVICE, "setupRole", role, crypto.checksum(grantee))
        try:
            tx_hash = self.evm.sync_send(deadline, req.priv_key, contract, 0, data)
        except ChainSockError as e:
            raise e.wrap(f"failed sync send grant role transaction. contract={req.contract_address}") from e
        self.logger.info("role granted, role=%s, grantee=%s, contract=%s", req.role, req.grantee, req.contract_address)
        return m.GrantRoleResponse(hash=tx_hash)

    # -----------------------------
    # Reads
    # -----------------------------
    def total_supply(self, req: m.TotalSupplyRequest, deadline: Deadline) -> m.TotalSupplyResponse:
        contract = _address(req.contract_address, "contract address")
        (amount,) = self._query(deadline, SECURITY_TOKEN, contract, "totalSupply")
        return m.TotalSupplyResponse(amount=str(amount))

    def balance_of(self, req: m.BalanceOfRequest, deadline: Deadline) -> m.BalanceOfResponse:
        contract = _address(req.contract_address, "contract address")
        account = _address(req.account, "account address")
        (amount,) = self._query(deadline, SECURITY_TOKEN, contract, "balanceOf", crypto.checksum(account))
        return m.BalanceOfResponse(amount=str(amount))

    def name(self, req: m.NameRequest, deadline: Deadline) -> m.NameResponse:
        contract = _address(req.contract_address, "contract address")
        (name,) = self._query(deadline, SECURITY_TOKEN, contract, "name")
        return m.NameResponse(name=name)

    def symbol(self, req: m.SymbolRequest, deadline: Deadline) -> m.SymbolResponse:
        contract = _address(req.contract_address, "contract address")
        (symbol,) = self._query(deadline, SECURITY_TOKEN, contract, "symbol")
        return m.SymbolResponse(symbol=symbol)

    def has_role(self, req: m.HasRoleRequest, deadline: Deadline) -> m.HasRoleResponse:
        role = crypto.decode_role(req.role)
        contract = _address(req.contract_address, "contract address")
        account = _address(req.account, "account address")
        (has,) = self._query(deadline, COMPLIANCE_SERVICE, contract, "hasRole", role, crypto.checksum(account))
        return m.HasRoleResponse(has=bool(has))
