"""
chainsock EVM adapter.

Facade over a web3 HTTP client exposing exactly what the handlers need:

- sync_send       sign + broadcast, then block until mined (or deadline)
- async_send      sign + broadcast, track in the background, return the hash
- receipt         mined receipt (contract address, ordered logs)
- query_contract  eth_call, raw ABI-encoded return data
- balance_of      native coin balance

Every RPC is bounded by the request deadline. Confirmation is observed by a
single background worker (the confirmer) polling every 128ms with a
zero-confirmation threshold. Request threads park on a per-transaction
threading.Event.

Transaction states:

  CREATED -> SIGNED -> BROADCAST -> PENDING -> MINED | TIMEOUT | BROADCAST_FAILED

A transaction that was broadcast is never aborted: the nonce is spent even
when the waiting caller sees TIMEOUT.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from . import crypto
from .deadline import Deadline
from .errors import ChainSockError, ErrorKind

CONFIRM_INTERVAL = 0.128  # seconds
RPC_WORKERS = 16

# anything the web3/requests stack raises for a failed round trip
RPC_ERRORS = (Web3Exception, ValueError, requests.exceptions.RequestException, OSError)


class TxState(str, Enum):
    CREATED = "CREATED"
    SIGNED = "SIGNED"
    BROADCAST = "BROADCAST"
    PENDING = "PENDING"
    MINED = "MINED"
    TIMEOUT = "TIMEOUT"
    BROADCAST_FAILED = "BROADCAST_FAILED"


@dataclass(frozen=True)
class Log:
    address: str
    topics: List[bytes]
    data: bytes


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    contract_address: Optional[str]
    logs: List[Log] = field(default_factory=list)


def _as_bytes(v: Any) -> bytes:
    if isinstance(v, str):
        return bytes.fromhex(crypto.strip_0x(v))
    return bytes(v)


def receipt_from_rpc(raw: Any) -> Receipt:
    logs = [
        Log(
            address=str(entry["address"]),
            topics=[_as_bytes(t) for t in entry.get("topics", [])],
            data=_as_bytes(entry.get("data", b"")),
        )
        for entry in raw.get("logs", [])
    ]
    contract = raw.get("contractAddress")
    return Receipt(
        tx_hash=crypto.to_0x(_as_bytes(raw["transactionHash"])),
        status=int(raw.get("status", 1)),
        block_number=int(raw.get("blockNumber") or 0),
        contract_address=Web3.to_checksum_address(contract) if contract else None,
        logs=logs,
    )


def _rpc_error(e: BaseException, kind: ErrorKind, what: str) -> ChainSockError:
    if isinstance(e, requests.exceptions.Timeout):
        return ChainSockError(ErrorKind.TIMEOUT, f"{what}: rpc timed out: {e}")
    return ChainSockError(kind, f"{what}: {e}")


# -----------------------------
# Per-transaction record
# -----------------------------
class Transaction:
    def __init__(self, sender: str, to: Optional[str], logger: logging.Logger, wait: bool = True):
        self.sender = sender
        self.to = to
        self.wait = wait
        self.hash: Optional[str] = None
        self.state = TxState.CREATED
        self.receipt: Optional[Receipt] = None
        self.expires_at: Optional[float] = None
        self.done = threading.Event()
        self._logger = logger

    def advance(self, state: TxState) -> None:
        self._logger.debug("tx %s: %s -> %s", self.hash or "<unsigned>", self.state.value, state.value)
        self.state = state

    def mined(self, receipt: Receipt) -> None:
        self.receipt = receipt
        self.advance(TxState.MINED)
        self.done.set()


# -----------------------------
# Nonces
# -----------------------------
class NonceTracker:
    """
    Per-signer nonce sequencing.

    The lock for a signer is held from nonce assignment until broadcast, so
    concurrent submissions with the same key get FIFO nonces.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._next: Dict[str, int] = {}

    def lock_for(self, address: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(address, threading.Lock())

    def reserve(self, address: str, fetch: Callable[[], int]) -> int:
        # caller holds lock_for(address)
        if address not in self._next:
            self._next[address] = int(fetch())
        return self._next[address]

    def advance(self, address: str, used: int) -> None:
        self._next[address] = used + 1

    def reset(self, address: str) -> None:
        self._next.pop(address, None)


# -----------------------------
# Confirmer
# -----------------------------
class Confirmer:
    def __init__(self, fetch_receipt: Callable[[str], Optional[Receipt]], logger: logging.Logger,
                 interval: float = CONFIRM_INTERVAL):
        self.fetch_receipt = fetch_receipt
        self.interval = interval
        self.logger = logger
        self._pending: Dict[str, Transaction] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="chainsock-confirmer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self.interval * 4))
            self._thread = None
        with self._lock:
            dropped = list(self._pending.values())
            self._pending.clear()
        for tx in dropped:
            if not tx.wait:
                self.logger.warning("confirmer stopped before async tx %s was mined", tx.hash)
            tx.done.set()

    def track(self, tx: Transaction) -> None:
        tx.advance(TxState.PENDING)
        with self._lock:
            self._pending[tx.hash] = tx

    def untrack(self, tx: Transaction) -> None:
        with self._lock:
            self._pending.pop(tx.hash, None)

    def wait(self, tx: Transaction, deadline: Deadline) -> Receipt:
        if not tx.done.wait(timeout=deadline.remaining()) or tx.receipt is None:
            self.untrack(tx)
            if tx.state != TxState.MINED:
                tx.advance(TxState.TIMEOUT)
            raise ChainSockError(
                ErrorKind.TIMEOUT,
                f"transaction(={tx.hash}) not mined within {deadline.seconds:g}s, the nonce is spent",
            )
        return tx.receipt

    def poll_once(self) -> None:
        with self._lock:
            pending = list(self._pending.values())
        now = time.monotonic()
        for tx in pending:
            try:
                receipt = self.fetch_receipt(tx.hash)
            except ChainSockError as e:
                # an unreachable node still lets async txs expire
                self.logger.debug("receipt poll failed for %s: %s", tx.hash, e)
                receipt = None
            if receipt is None:
                if not tx.wait and tx.expires_at is not None and now > tx.expires_at:
                    self.untrack(tx)
                    tx.advance(TxState.TIMEOUT)
                    self.logger.error("async tx %s not mined before its deadline, giving up tracking", tx.hash)
                continue
            self.untrack(tx)
            tx.mined(receipt)
            if not tx.wait:
                if receipt.status == 0:
                    self.logger.error("async tx %s reverted in block %d", tx.hash, receipt.block_number)
                else:
                    self.logger.info("async tx %s mined in block %d", tx.hash, receipt.block_number)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                self.logger.exception("confirmer poll crashed")


# -----------------------------
# Adapter
# -----------------------------
class EvmAdapter:
    """Thread-safe facade over a remote EVM JSON-RPC node."""

    def __init__(self, endpoint: str, timeout: float, logger: logging.Logger, w3: Optional[Web3] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.logger = logger
        self.w3 = w3 or Web3(Web3.HTTPProvider(endpoint, request_kwargs={"timeout": timeout}))
        self.nonces = NonceTracker()
        self.confirmer = Confirmer(self._poll_receipt, logger)
        self._chain_id: Optional[int] = None
        self._chain_id_lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def start(self) -> None:
        self.confirmer.start()

    def stop(self) -> None:
        self.confirmer.stop()
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            # calls still on the wire finish within the HTTP timeout
            pool.shutdown(wait=False)

    # -----------------------------
    # Writes
    # -----------------------------
    def sync_send(self, deadline: Deadline, priv_key: str, to: Optional[bytes] = None, value: int = 0,
                  data: bytes = b"", gas_limit: int = 0) -> str:
        if not self.confirmer.running:
            raise ChainSockError(ErrorKind.INTERNAL, "evm adapter is not started")
        tx = self._submit(deadline, priv_key, to, value, data, gas_limit, wait=True)
        receipt = self.confirmer.wait(tx, deadline)
        if receipt.status == 0:
            raise ChainSockError(ErrorKind.TX_REVERTED, f"transaction(={tx.hash}) reverted in block {receipt.block_number}")
        return tx.hash

    def async_send(self, deadline: Deadline, priv_key: str, to: Optional[bytes] = None, value: int = 0,
                   data: bytes = b"", gas_limit: int = 0) -> str:
        if not self.confirmer.running:
            raise ChainSockError(ErrorKind.INTERNAL, "evm adapter is not started")
        tx = self._submit(deadline, priv_key, to, value, data, gas_limit, wait=False)
        return tx.hash

    def _submit(self, deadline: Deadline, priv_key: str, to: Optional[bytes], value: int, data: bytes,
                gas_limit: int, wait: bool) -> Transaction:
        try:
            account = Account.from_key(crypto.normalize_private_key(priv_key))
        except ValueError as e:
            raise ChainSockError(ErrorKind.BAD_PAYLOAD, f"invalid private key: {e}") from e

        to_addr = crypto.checksum(to) if to is not None else None
        tx = Transaction(account.address, to_addr, self.logger, wait=wait)

        failed = ErrorKind.BROADCAST_FAILED
        with self.nonces.lock_for(account.address):
            try:
                nonce = self.nonces.reserve(
                    account.address,
                    lambda: self._call(deadline, "get nonce", self.w3.eth.get_transaction_count,
                                       account.address, "pending", kind=failed),
                )
                params: Dict[str, Any] = {
                    "from": account.address,
                    "nonce": nonce,
                    "chainId": self.chain_id(deadline, kind=failed),
                    "gasPrice": self._call(deadline, "get gas price", lambda: self.w3.eth.gas_price, kind=failed),
                    "value": int(value or 0),
                    "data": crypto.to_0x(data or b""),
                }
                if to_addr is not None:
                    params["to"] = to_addr
                if gas_limit:
                    params["gas"] = int(gas_limit)
                else:
                    params["gas"] = self._call(deadline, "estimate gas", self.w3.eth.estimate_gas, params, kind=failed)
                signed = account.sign_transaction(params)
                tx.hash = Web3.to_hex(signed.hash)
                tx.advance(TxState.SIGNED)
                self._call(deadline, "broadcast", self.w3.eth.send_raw_transaction, signed.raw_transaction, kind=failed)
            except ChainSockError:
                self.nonces.reset(account.address)
                tx.advance(TxState.BROADCAST_FAILED)
                raise
            except RPC_ERRORS as e:
                self.nonces.reset(account.address)
                tx.advance(TxState.BROADCAST_FAILED)
                raise _rpc_error(e, ErrorKind.BROADCAST_FAILED, f"failed to send transaction from {account.address}") from e
            self.nonces.advance(account.address, nonce)
            tx.advance(TxState.BROADCAST)

        if not wait:
            tx.expires_at = time.monotonic() + self.timeout
        self.confirmer.track(tx)
        return tx

    # -----------------------------
    # Reads
    # -----------------------------
    def receipt(self, deadline: Deadline, tx_hash: str) -> Receipt:
        try:
            raw = self._call(deadline, f"get receipt of {tx_hash}", self.w3.eth.get_transaction_receipt, tx_hash)
        except ChainSockError as e:
            if isinstance(e.__cause__, TransactionNotFound):
                raise ChainSockError(ErrorKind.RECEIPT_MISSING, f"no receipt for transaction(={tx_hash})") from e
            raise
        if raw is None:
            raise ChainSockError(ErrorKind.RECEIPT_MISSING, f"no receipt for transaction(={tx_hash})")
        return receipt_from_rpc(raw)

    def query_contract(self, deadline: Deadline, to: bytes, data: bytes) -> bytes:
        out = self._call(
            deadline, "eth_call", self.w3.eth.call, {"to": crypto.checksum(to), "data": crypto.to_0x(data)}
        )
        return _as_bytes(out)

    def balance_of(self, deadline: Deadline, account: bytes) -> int:
        return int(self._call(deadline, "get balance", self.w3.eth.get_balance, crypto.checksum(account)))

    def chain_id(self, deadline: Deadline, kind: ErrorKind = ErrorKind.RPC_FAILED) -> int:
        with self._chain_id_lock:
            if self._chain_id is None:
                self._chain_id = int(self._call(deadline, "get chain id", lambda: self.w3.eth.chain_id, kind=kind))
            return self._chain_id

    # -----------------------------
    # Plumbing
    # -----------------------------
    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=RPC_WORKERS, thread_name_prefix="chainsock-rpc")
            return self._pool

    def _call(self, deadline: Deadline, what: str, fn: Callable[..., Any], *args: Any,
              kind: ErrorKind = ErrorKind.RPC_FAILED) -> Any:
        """Run one RPC, giving up once the request deadline passes.

        A call abandoned at the deadline keeps running on its worker until the
        HTTP timeout; its result is discarded.
        """
        deadline.check(what)
        future = self._executor().submit(fn, *args)
        try:
            return future.result(timeout=deadline.remaining())
        except FutureTimeout as e:
            future.cancel()
            raise ChainSockError(ErrorKind.TIMEOUT, f"{what}: deadline of {deadline.seconds:g}s exceeded") from e
        except RPC_ERRORS as e:
            raise _rpc_error(e, kind, what) from e

    def _poll_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_ERRORS as e:
            raise _rpc_error(e, ErrorKind.RPC_FAILED, f"poll receipt of {tx_hash}") from e
        return receipt_from_rpc(raw) if raw is not None else None
