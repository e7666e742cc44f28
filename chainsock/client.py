"""
chainsock client.

Thin stub over the Unix socket: every call opens a fresh connection, sends
one framed envelope, reads one framed response and closes. Error records
come back as ChainSockError with the server's kind.

  cli = ChainSockClient("./domain.sock", timeout=30)
  resp = cli.deploy_cs(priv_key)
  cli.grant_role(priv_key, resp.contract_address, ST_CONTROL_ROLE, grantee)
"""
from __future__ import annotations

import socket
from typing import List, Optional

from . import messages as m
from .config import DEFAULT_SOCKET_PATH, DEFAULT_TIMEOUT
from .deadline import Deadline
from .errors import ChainSockError, ErrorKind
from .protocol import MAX_FRAME, Envelope, recv_envelope, send_envelope


class ChainSockClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, timeout: float = DEFAULT_TIMEOUT,
                 max_frame: int = MAX_FRAME):
        self.socket_path = str(socket_path)
        self.timeout = timeout
        self.max_frame = max_frame

    # -----------------------------
    # Transport
    # -----------------------------
    def _connect(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except socket.timeout as e:
            sock.close()
            raise ChainSockError(ErrorKind.TIMEOUT, f"connect to {self.socket_path} timed out") from e
        except OSError as e:
            sock.close()
            raise ChainSockError(ErrorKind.CONNECTION_FAILED, f"cannot connect to {self.socket_path}: {e}") from e
        return sock

    def roundtrip(self, env: Envelope) -> Envelope:
        """Send one envelope, return the raw response envelope (error records included)."""
        deadline = Deadline(self.timeout)
        sock = self._connect()
        try:
            try:
                send_envelope(sock, env, deadline=deadline, max_size=self.max_frame)
            except (BrokenPipeError, ConnectionResetError) as e:
                # the server may refuse the request mid-write and answer before closing
                try:
                    return recv_envelope(sock, max_size=self.max_frame, deadline=deadline)
                except (ChainSockError, OSError):
                    raise ChainSockError(
                        ErrorKind.CONNECTION_FAILED, f"connection to {self.socket_path} broke: {e}"
                    ) from e
            return recv_envelope(sock, max_size=self.max_frame, deadline=deadline)
        except OSError as e:
            raise ChainSockError(ErrorKind.CONNECTION_FAILED, f"connection to {self.socket_path} broke: {e}") from e
        finally:
            sock.close()

    def call(self, op: str, request: m.Message) -> m.Message:
        try:
            _, resp_cls = m.SCHEMAS[op]
        except KeyError:
            raise ChainSockError(ErrorKind.UNSUPPORTED_TYPE, f"unsupported message type(={op})") from None
        request.validate()
        resp = self.roundtrip(Envelope(type=op, payload=request.to_payload()))
        err = resp.error_text()
        if err is not None:
            raise ChainSockError.parse(err)
        return resp_cls.from_payload(resp.payload)

    # -----------------------------
    # Native coin
    # -----------------------------
    def send_eth(self, priv_key: str, recipient: str, amount: str) -> m.SendEthResponse:
        return self.call(m.SEND_ETH, m.SendEthRequest(priv_key=priv_key, recipient=recipient, amount=amount))

    def balance_of_eth(self, account: str) -> m.BalanceOfEthResponse:
        return self.call(m.BALANCE_OF_ETH, m.BalanceOfEthRequest(account=account))

    # -----------------------------
    # Deployments
    # -----------------------------
    def deploy_st(self, priv_key: str, name: str, symbol: str, initial_supply: str,
                  compliance_address: str) -> m.DeployStResponse:
        return self.call(m.DEPLOY_ST, m.DeployStRequest(
            priv_key=priv_key, name=name, symbol=symbol,
            initial_supply=initial_supply, compliance_address=compliance_address,
        ))

    def deploy_cs(self, priv_key: str) -> m.DeployCsResponse:
        return self.call(m.DEPLOY_CS, m.DeployCsRequest(priv_key=priv_key))

    def deploy_fc(self, priv_key: str) -> m.DeployFcResponse:
        return self.call(m.DEPLOY_FC, m.DeployFcRequest(priv_key=priv_key))

    def create_contracts(self, priv_key: str, contract_address: str, name: str, symbol: str, initial_supply: str,
                         grantees: Optional[List[str]] = None) -> m.CreateContractsResponse:
        return self.call(m.CREATE_CONTRACTS, m.CreateContractsRequest(
            priv_key=priv_key, contract_address=contract_address, name=name, symbol=symbol,
            initial_supply=initial_supply, grantees=list(grantees or []),
        ))

    # -----------------------------
    # Token writes
    # -----------------------------
    def issue(self, priv_key: str, contract_address: str, recipient: str, amount: str,
              gas_limit: int = 0, is_async: bool = False) -> m.IssueResponse:
        return self.call(m.ISSUE, m.IssueRequest(
            priv_key=priv_key, contract_address=contract_address, recipient=recipient, amount=amount,
            gas_limit=gas_limit, is_async=is_async,
        ))

    def transfer(self, priv_key: str, contract_address: str, recipient: str, amount: str,
                 gas_limit: int = 0, is_async: bool = False) -> m.TransferResponse:
        return self.call(m.TRANSFER, m.TransferRequest(
            priv_key=priv_key, contract_address=contract_address, recipient=recipient, amount=amount,
            gas_limit=gas_limit, is_async=is_async,
        ))

    def redeem(self, priv_key: str, contract_address: str, account: str, amount: str, reason: str = "",
               gas_limit: int = 0, is_async: bool = False) -> m.RedeemResponse:
        return self.call(m.REDEEM, m.RedeemRequest(
            priv_key=priv_key, contract_address=contract_address, account=account, amount=amount,
            reason=reason, gas_limit=gas_limit, is_async=is_async,
        ))

    # -----------------------------
    # Compliance service writes
    # -----------------------------
    def register_wallet(self, priv_key: str, contract_address: str, account: str,
                        gas_limit: int = 0, is_async: bool = False) -> m.RegisterWalletResponse:
        return self.call(m.REGISTER_WALLET, m.RegisterWalletRequest(
            priv_key=priv_key, contract_address=contract_address, account=account,
            gas_limit=gas_limit, is_async=is_async,
        ))

    def grant_role(self, priv_key: str, contract_address: str, role: str, grantee: str) -> m.GrantRoleResponse:
        return self.call(m.GRANT_ROLE, m.GrantRoleRequest(
            priv_key=priv_key, contract_address=contract_address, role=role, grantee=grantee,
        ))

    # -----------------------------
    # Reads
    # -----------------------------
    def total_supply(self, contract_address: str) -> m.TotalSupplyResponse:
        return self.call(m.TOTAL_SUPPLY, m.TotalSupplyRequest(contract_address=contract_address))

    def balance_of(self, contract_address: str, account: str) -> m.BalanceOfResponse:
        return self.call(m.BALANCE_OF, m.BalanceOfRequest(contract_address=contract_address, account=account))

    def name(self, contract_address: str) -> m.NameResponse:
        return self.call(m.NAME, m.NameRequest(contract_address=contract_address))

    def symbol(self, contract_address: str) -> m.SymbolResponse:
        return self.call(m.SYMBOL, m.SymbolRequest(contract_address=contract_address))

    def has_role(self, contract_address: str, role: str, account: str) -> m.HasRoleResponse:
        return self.call(m.HAS_ROLE, m.HasRoleRequest(contract_address=contract_address, role=role, account=account))
