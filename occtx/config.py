from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _read_env(prefix: str, fields: dict[str, tuple[str, Callable[[str], Any]]]) -> dict[str, Any]:
    """
    Collect dataclass kwargs from environment variables.

    `fields` maps a field name to (variable suffix, parser). Unset or empty
    variables are skipped so the dataclass defaults apply.
    """
    kwargs: dict[str, Any] = {}
    for field_name, (suffix, parse) in fields.items():
        raw = os.environ.get(f"{prefix}{suffix}")
        if raw is None or raw == "":
            continue
        kwargs[field_name] = parse(raw)
    return kwargs


@dataclass
class PoolConfig:
    url: str
    pool_size: int = 5
    max_overflow: int = 0
    pool_timeout_s: float = 30.0
    pool_pre_ping: bool = True
    pool_recycle_s: int = -1

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not self.url:
            raise ValueError("url must be a non-empty SQLAlchemy database URL")
        if self.pool_size <= 0:
            raise ValueError("pool_size must be > 0")
        if self.max_overflow < 0:
            raise ValueError(
                "max_overflow must be >= 0; SQLAlchemy treats -1 as an unbounded pool"
            )
        if self.pool_timeout_s <= 0:
            raise ValueError("pool_timeout_s must be > 0")

    @classmethod
    def from_env(cls, prefix: str = "OCCTX_") -> "PoolConfig":
        """
        Build a PoolConfig from environment variables.

        Reads {prefix}DB_URL (required), {prefix}POOL_SIZE, {prefix}POOL_MAX_OVERFLOW,
        {prefix}POOL_TIMEOUT_S, {prefix}POOL_PRE_PING and {prefix}POOL_RECYCLE_S.
        """
        kwargs = _read_env(
            prefix,
            {
                "url": ("DB_URL", str),
                "pool_size": ("POOL_SIZE", int),
                "max_overflow": ("POOL_MAX_OVERFLOW", int),
                "pool_timeout_s": ("POOL_TIMEOUT_S", float),
                "pool_pre_ping": ("POOL_PRE_PING", _env_bool),
                "pool_recycle_s": ("POOL_RECYCLE_S", int),
            },
        )
        if "url" not in kwargs:
            raise ValueError(f"{prefix}DB_URL is not set")
        return cls(**kwargs)


@dataclass
class ExecutorConfig:
    lock_timeout_s: float = 5.0
    nowait: bool = False

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.lock_timeout_s <= 0:
            raise ValueError(
                "lock_timeout_s must be > 0; PostgreSQL interprets 0 as waiting forever"
            )

    @classmethod
    def from_env(cls, prefix: str = "OCCTX_") -> "ExecutorConfig":
        kwargs = _read_env(
            prefix,
            {
                "lock_timeout_s": ("LOCK_TIMEOUT_S", float),
                "nowait": ("LOCK_NOWAIT", _env_bool),
            },
        )
        return cls(**kwargs)
