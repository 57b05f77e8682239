"""
Transaction options. An option is a function from one configuration to
another; `build_config` folds them in order over an empty configuration,
so a later option wins over an earlier one touching the same field.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Optional

from .interfaces import AccessMode, DeferrableMode, IsolationLevel


@dataclass(frozen=True)
class TransactionConfig:
    """Settings of one physical transaction. `None` keeps the server
    default."""

    isolation_level: Optional[IsolationLevel] = None
    access_mode: Optional[AccessMode] = None
    deferrable_mode: Optional[DeferrableMode] = None

    @property
    def read_only(self) -> bool:
        return self.access_mode is AccessMode.READ_ONLY

    def begin_statement(self) -> str:
        parts = ["BEGIN"]
        if self.isolation_level is not None:
            parts.append(f"ISOLATION LEVEL {self.isolation_level.value}")
        if self.access_mode is not None:
            parts.append(self.access_mode.value)
        if self.deferrable_mode is not None:
            parts.append(self.deferrable_mode.value)
        return " ".join(parts)


TransactionOption = Callable[[TransactionConfig], TransactionConfig]


def with_isolation_level(level: IsolationLevel) -> TransactionOption:
    def option(config: TransactionConfig) -> TransactionConfig:
        return replace(config, isolation_level=level)

    return option


def with_access_mode(mode: AccessMode) -> TransactionOption:
    def option(config: TransactionConfig) -> TransactionConfig:
        return replace(config, access_mode=mode)

    return option


def with_deferrable_mode(mode: DeferrableMode) -> TransactionOption:
    def option(config: TransactionConfig) -> TransactionConfig:
        return replace(config, deferrable_mode=mode)

    return option


def build_config(*options: TransactionOption) -> TransactionConfig:
    config = TransactionConfig()
    for option in options:
        config = option(config)
    return config
