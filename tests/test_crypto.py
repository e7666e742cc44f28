from __future__ import annotations

import pytest

from chainsock import crypto
from chainsock.errors import ChainSockError, ErrorKind
from chainsock.messages import ST_CONTROL_ROLE

from ._fakechain import TEST_ACCOUNT


def test_keccak_empty():
    assert crypto.keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def test_function_selector():
    assert crypto.function_selector("transfer(address,uint256)").hex() == "a9059cbb"


@pytest.mark.parametrize("value", [TEST_ACCOUNT, TEST_ACCOUNT[2:], TEST_ACCOUNT.lower()])
def test_decode_address(value):
    raw = crypto.decode_address(value)
    assert len(raw) == crypto.ADDRESS_LEN
    assert crypto.checksum(raw) == TEST_ACCOUNT


@pytest.mark.parametrize("value", ["", "0x1234", "0x" + "zz" * 20, "0x" + "00" * 20, None])
def test_decode_address_rejects(value):
    with pytest.raises(ChainSockError) as ei:
        crypto.decode_address(value, "recipient")
    assert ei.value.kind is ErrorKind.INVALID_ADDRESS


def test_zero_address_message():
    with pytest.raises(ChainSockError) as ei:
        crypto.decode_address("0x" + "00" * 20, "compliance address")
    assert ei.value.message == "empty compliance address"


def test_decode_role_pads_and_truncates():
    assert crypto.decode_role(ST_CONTROL_ROLE) == bytes.fromhex(ST_CONTROL_ROLE)
    assert crypto.decode_role("ab") == b"\xab" + b"\x00" * 31
    assert crypto.decode_role(ST_CONTROL_ROLE + "ffff") == bytes.fromhex(ST_CONTROL_ROLE)


@pytest.mark.parametrize("value", ["xyz", "abc", "0xab"])
def test_decode_role_rejects(value):
    with pytest.raises(ChainSockError) as ei:
        crypto.decode_role(value)
    assert ei.value.kind is ErrorKind.INVALID_ROLE


def test_normalize_private_key():
    key = "0x" + "11" * 32
    assert crypto.normalize_private_key(key) == b"\x11" * 32
    with pytest.raises(ValueError):
        crypto.normalize_private_key("")
    with pytest.raises(ValueError):
        crypto.normalize_private_key("11" * 31)


def test_random_address_is_checksummed():
    addr = crypto.random_address()
    assert crypto.checksum(crypto.decode_address(addr)) == addr
