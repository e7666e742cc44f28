from __future__ import annotations

import logging

import pytest

from chainsock.abi import FACTORY_V0
from chainsock.config import (
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_TIMEOUT,
    build_config,
    default_logger,
    with_bytecode,
    with_logger,
    with_max_frame,
    with_shutdown_timeout,
    with_timeout,
)
from chainsock.protocol import MAX_FRAME


def test_defaults():
    cfg = build_config()
    assert cfg.timeout == DEFAULT_TIMEOUT == 30
    assert cfg.shutdown_timeout == DEFAULT_SHUTDOWN_TIMEOUT
    assert cfg.max_frame == MAX_FRAME
    assert cfg.logger is default_logger()
    assert cfg.logger.level == logging.INFO


def test_options_apply_in_order():
    log = logging.getLogger("chainsock.custom")
    cfg = build_config(with_timeout(5), with_timeout(7), with_logger(log), with_shutdown_timeout(0.5),
                       with_max_frame(1024))
    assert cfg.timeout == 7
    assert cfg.logger is log
    assert cfg.shutdown_timeout == 0.5
    assert cfg.max_frame == 1024


def test_bytecode_overrides_merge():
    cfg = build_config(with_bytecode(FACTORY_V0, "0x01"), with_bytecode("SecurityToken", "0x02"))
    assert cfg.bytecode_overrides == {FACTORY_V0: "0x01", "SecurityToken": "0x02"}


@pytest.mark.parametrize(
    "make",
    [
        lambda: with_timeout(0),
        lambda: with_timeout(-1),
        lambda: with_timeout(True),
        lambda: with_timeout("30"),
        lambda: with_shutdown_timeout(0),
        lambda: with_max_frame(0),
        lambda: with_max_frame(1.5),
        lambda: with_logger(print),
        lambda: with_bytecode(FACTORY_V0, ""),
    ],
)
def test_bad_options_fail_eagerly(make):
    with pytest.raises(ValueError):
        make()
