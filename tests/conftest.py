from __future__ import annotations

import logging
import os
import tempfile

import pytest

from chainsock.abi import FACTORY_V0, AbiCatalog
from chainsock.client import ChainSockClient
from chainsock.config import with_logger, with_timeout
from chainsock.handlers import BlockchainService
from chainsock.server import ChainSockServer

from ._fakechain import FACTORY_BYTECODE, FakeChain


# -----------------------------
# Fixtures
# -----------------------------
@pytest.fixture
def catalog() -> AbiCatalog:
    return AbiCatalog(bytecode_overrides={FACTORY_V0: FACTORY_BYTECODE})


@pytest.fixture
def chain(catalog) -> FakeChain:
    fake = FakeChain(catalog)
    fake.start()
    return fake


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("chainsock.tests")


@pytest.fixture
def service(catalog, chain, logger) -> BlockchainService:
    return BlockchainService(catalog, chain, logger)


@pytest.fixture
def socket_path():
    # AF_UNIX paths are capped near 108 bytes, pytest's tmp_path can exceed that
    d = tempfile.mkdtemp(prefix="cs-")
    path = os.path.join(d, "domain.sock")
    yield path
    if os.path.exists(path):
        os.unlink(path)
    os.rmdir(d)


@pytest.fixture
def server(service, socket_path, logger):
    srv = ChainSockServer(None, with_timeout(3), with_logger(logger), socket_path=socket_path, service=service)
    srv.start()
    yield srv
    srv.stop(1.0)


@pytest.fixture
def client(server) -> ChainSockClient:
    return ChainSockClient(server.socket_path, timeout=5)
