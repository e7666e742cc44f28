"""
chainsock configuration.

Options are small setter callables applied in order to a Config record:

  cfg = build_config(with_timeout(3), with_logger(my_logger))

Each setter validates its argument when it is created, so a bad value fails
construction instead of being clamped later.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, Optional

from .protocol import MAX_FRAME

DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_SOCKET_PATH = "./domain.sock"
LOGGER_NAME = "chainsock"


def default_logger() -> logging.Logger:
    """stderr, INFO, timestamped."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


@dataclass
class Config:
    timeout: float = DEFAULT_TIMEOUT
    logger: logging.Logger = field(default_factory=default_logger)
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    max_frame: int = MAX_FRAME
    bytecode_overrides: Optional[dict] = None


Option = Callable[[Config], None]


def _positive(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} should be positive, got {value!r}")
    return value


def with_timeout(seconds: float) -> Option:
    _positive("timeout", seconds)

    def apply(cfg: Config) -> None:
        cfg.timeout = seconds

    return apply


def with_logger(logger: logging.Logger) -> Option:
    if not isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        raise ValueError(f"logger must be a logging.Logger, got {type(logger).__name__}")

    def apply(cfg: Config) -> None:
        cfg.logger = logger

    return apply


def with_shutdown_timeout(seconds: float) -> Option:
    _positive("shutdown timeout", seconds)

    def apply(cfg: Config) -> None:
        cfg.shutdown_timeout = seconds

    return apply


def with_max_frame(size: int) -> Option:
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise ValueError(f"max frame should be a positive int, got {size!r}")

    def apply(cfg: Config) -> None:
        cfg.max_frame = size

    return apply


def with_bytecode(contract: str, bytecode: str) -> Option:
    """Supply deploy bytecode for a contract whose artifact ships without it."""
    if not isinstance(bytecode, str) or not bytecode.strip():
        raise ValueError("bytecode must be a non-empty hex string")

    def apply(cfg: Config) -> None:
        cfg.bytecode_overrides = dict(cfg.bytecode_overrides or {}, **{contract: bytecode})

    return apply


def build_config(*options: Option) -> Config:
    cfg = Config()
    for opt in options:
        opt(cfg)
    return cfg
