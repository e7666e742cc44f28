from __future__ import annotations

import logging
import threading
import time
from unittest import mock

import pytest
import requests
from web3.exceptions import TransactionNotFound

from chainsock import crypto
from chainsock.deadline import Deadline
from chainsock.errors import ChainSockError, ErrorKind
from chainsock.evm import Confirmer, EvmAdapter, NonceTracker, Transaction, TxState, receipt_from_rpc

from ._fakechain import ACCOUNT2, TEST_ACCOUNT, TEST_PRIV_KEY


def _rpc_receipt(tx_hash, status=1, contract=None, logs=()):
    return {
        "transactionHash": bytes.fromhex(crypto.strip_0x(tx_hash)),
        "status": status,
        "blockNumber": 7,
        "contractAddress": contract,
        "logs": list(logs),
    }


class Node:
    """Scripted answers for the web3 eth namespace."""

    def __init__(self, status=1, mine=True):
        self.status = status
        self.mine = mine
        self.sent = []
        self.w3 = mock.MagicMock()
        eth = self.w3.eth
        eth.chain_id = 1337
        eth.gas_price = 10 ** 9
        eth.get_transaction_count.return_value = 4
        eth.estimate_gas.return_value = 21000
        eth.send_raw_transaction.side_effect = self._send_raw
        eth.get_transaction_receipt.side_effect = self._receipt

    def _send_raw(self, raw):
        self.sent.append(raw)
        return b"\x00" * 32

    def _receipt(self, tx_hash):
        if not self.mine:
            raise TransactionNotFound(f"transaction {tx_hash} not found")
        return _rpc_receipt(tx_hash, self.status)


@pytest.fixture
def log():
    return logging.getLogger("chainsock.tests.evm")


@pytest.fixture
def node():
    return Node()


@pytest.fixture
def adapter(node, log):
    a = EvmAdapter("http://127.0.0.1:8545", 5, log, w3=node.w3)
    a.start()
    yield a
    a.stop()


def test_sync_send_waits_for_receipt(adapter, node):
    tx_hash = adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2), 10)
    assert tx_hash.startswith("0x") and len(tx_hash) == 66
    assert len(node.sent) == 1

    params = node.w3.eth.estimate_gas.call_args[0][0]
    assert params["nonce"] == 4
    assert params["chainId"] == 1337
    assert params["to"] == ACCOUNT2
    assert params["from"] == TEST_ACCOUNT
    assert params["value"] == 10


def test_nonces_advance_locally(adapter, node):
    to = crypto.decode_address(ACCOUNT2)
    adapter.sync_send(Deadline(5), TEST_PRIV_KEY, to)
    adapter.sync_send(Deadline(5), TEST_PRIV_KEY, to)
    assert node.w3.eth.get_transaction_count.call_count == 1
    assert node.w3.eth.estimate_gas.call_args[0][0]["nonce"] == 5


def test_explicit_gas_limit_skips_estimate(adapter, node):
    adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2), gas_limit=50000)
    node.w3.eth.estimate_gas.assert_not_called()


def test_deploy_has_no_to(adapter, node):
    adapter.sync_send(Deadline(5), TEST_PRIV_KEY, None, 0, b"\x60\x80")
    params = node.w3.eth.estimate_gas.call_args[0][0]
    assert "to" not in params
    assert params["data"] == "0x6080"


def test_reverted(node, log):
    node.status = 0
    a = EvmAdapter("http://x", 5, log, w3=node.w3)
    a.start()
    try:
        with pytest.raises(ChainSockError) as ei:
            a.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    finally:
        a.stop()
    assert ei.value.kind is ErrorKind.TX_REVERTED


def test_not_mined_in_time(node, log):
    node.mine = False
    a = EvmAdapter("http://x", 5, log, w3=node.w3)
    a.start()
    try:
        with pytest.raises(ChainSockError) as ei:
            a.sync_send(Deadline(0.4), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    finally:
        a.stop()
    assert ei.value.kind is ErrorKind.TIMEOUT
    assert "nonce is spent" in ei.value.message
    assert len(node.sent) == 1


def test_broadcast_failure_resets_nonce(adapter, node):
    node.w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")
    with pytest.raises(ChainSockError) as ei:
        adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.BROADCAST_FAILED

    node.w3.eth.send_raw_transaction.side_effect = node._send_raw
    adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert node.w3.eth.get_transaction_count.call_count == 2


def test_node_unreachable_before_broadcast(adapter, node):
    node.w3.eth.get_transaction_count.side_effect = requests.exceptions.ConnectionError("connection refused")
    with pytest.raises(ChainSockError) as ei:
        adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.BROADCAST_FAILED
    assert node.sent == []

    node.w3.eth.get_transaction_count.side_effect = None
    node.w3.eth.estimate_gas.side_effect = requests.exceptions.ConnectionError("connection refused")
    with pytest.raises(ChainSockError) as ei:
        adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.BROADCAST_FAILED

    node.w3.eth.estimate_gas.side_effect = requests.exceptions.ReadTimeout("read timed out")
    with pytest.raises(ChainSockError) as ei:
        adapter.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.TIMEOUT


def test_slow_rpc_bounded_by_deadline(adapter, node):
    def slow_call(params):
        time.sleep(2)
        return b""

    node.w3.eth.call.side_effect = slow_call
    started = time.monotonic()
    with pytest.raises(ChainSockError) as ei:
        adapter.query_contract(Deadline(0.3), crypto.decode_address(ACCOUNT2), b"\x18\x16\x0d\xdd")
    assert ei.value.kind is ErrorKind.TIMEOUT
    assert time.monotonic() - started < 1.5


def test_http_timeout_maps_to_timeout(adapter, node):
    node.w3.eth.get_balance.side_effect = requests.exceptions.ReadTimeout("read timed out")
    with pytest.raises(ChainSockError) as ei:
        adapter.balance_of(Deadline(5), crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.TIMEOUT


def test_invalid_private_key(adapter):
    with pytest.raises(ChainSockError) as ei:
        adapter.sync_send(Deadline(5), "1234", crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.BAD_PAYLOAD


def test_send_requires_start(node, log):
    a = EvmAdapter("http://x", 5, log, w3=node.w3)
    with pytest.raises(ChainSockError) as ei:
        a.sync_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert ei.value.kind is ErrorKind.INTERNAL


def test_async_send_returns_immediately(adapter, node):
    node.mine = False
    tx_hash = adapter.async_send(Deadline(5), TEST_PRIV_KEY, crypto.decode_address(ACCOUNT2))
    assert tx_hash.startswith("0x")
    assert len(node.sent) == 1


def test_reads(adapter, node):
    node.w3.eth.call.return_value = b"\x00" * 31 + b"\x2a"
    node.w3.eth.get_balance.return_value = 123
    deadline = Deadline(5)
    assert adapter.query_contract(deadline, crypto.decode_address(ACCOUNT2), b"\x18\x16\x0d\xdd")[-1] == 42
    assert node.w3.eth.call.call_args[0][0] == {"to": ACCOUNT2, "data": "0x18160ddd"}
    assert adapter.balance_of(deadline, crypto.decode_address(ACCOUNT2)) == 123

    node.w3.eth.call.side_effect = ValueError("execution reverted")
    with pytest.raises(ChainSockError) as ei:
        adapter.query_contract(deadline, crypto.decode_address(ACCOUNT2), b"")
    assert ei.value.kind is ErrorKind.RPC_FAILED


def test_receipt(adapter, node):
    contract = "0x" + "ab" * 20
    tx_hash = "0x" + "11" * 32
    node.w3.eth.get_transaction_receipt.side_effect = None
    node.w3.eth.get_transaction_receipt.return_value = _rpc_receipt(tx_hash, contract=contract, logs=[
        {"address": contract, "topics": ["0x" + "22" * 32], "data": "0x" + "33" * 64},
    ])
    r = adapter.receipt(Deadline(5), tx_hash)
    assert r.tx_hash == tx_hash
    assert r.contract_address == crypto.checksum(bytes.fromhex("ab" * 20))
    assert r.logs[0].topics == [b"\x22" * 32]
    assert r.logs[0].data == b"\x33" * 64

    node.w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("gone")
    with pytest.raises(ChainSockError) as ei:
        adapter.receipt(Deadline(5), tx_hash)
    assert ei.value.kind is ErrorKind.RECEIPT_MISSING


def test_receipt_from_rpc_defaults():
    r = receipt_from_rpc({"transactionHash": "0x" + "01" * 32})
    assert r.status == 1
    assert r.contract_address is None
    assert r.logs == []


# -----------------------------
# Confirmer / nonces
# -----------------------------
def test_confirmer_drops_expired_async(log, caplog):
    confirmer = Confirmer(lambda h: None, log)
    tx = Transaction(TEST_ACCOUNT, ACCOUNT2, log, wait=False)
    tx.hash = "0x01"
    tx.expires_at = 0.0
    confirmer.track(tx)
    with caplog.at_level(logging.ERROR, logger="chainsock.tests.evm"):
        confirmer.poll_once()
    assert tx.state is TxState.TIMEOUT
    assert "not mined before its deadline" in caplog.text


def test_confirmer_logs_reverted_async(log, caplog):
    confirmer = Confirmer(lambda h: receipt_from_rpc(_rpc_receipt("0x" + "01" * 32, status=0)), log)
    tx = Transaction(TEST_ACCOUNT, ACCOUNT2, log, wait=False)
    tx.hash = "0x" + "01" * 32
    confirmer.track(tx)
    with caplog.at_level(logging.ERROR, logger="chainsock.tests.evm"):
        confirmer.poll_once()
    assert tx.state is TxState.MINED
    assert "reverted" in caplog.text


def test_nonce_tracker_fifo():
    tracker = NonceTracker()
    out = []

    def take():
        with tracker.lock_for(TEST_ACCOUNT):
            n = tracker.reserve(TEST_ACCOUNT, lambda: 10)
            tracker.advance(TEST_ACCOUNT, n)
            out.append(n)

    threads = [threading.Thread(target=take) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(out) == list(range(10, 18))


def test_confirmer_expires_async_while_node_down(log, caplog):
    def unreachable(tx_hash):
        raise ChainSockError(ErrorKind.RPC_FAILED, f"poll receipt of {tx_hash}: connection refused")

    confirmer = Confirmer(unreachable, log)
    tx = Transaction(TEST_ACCOUNT, ACCOUNT2, log, wait=False)
    tx.hash = "0x02"
    tx.expires_at = 0.0
    confirmer.track(tx)
    with caplog.at_level(logging.ERROR, logger="chainsock.tests.evm"):
        confirmer.poll_once()
    assert tx.state is TxState.TIMEOUT
    assert "not mined before its deadline" in caplog.text

    # dropped, so the next poll does not touch it
    tx.advance(TxState.PENDING)
    confirmer.poll_once()
    assert tx.state is TxState.PENDING
