# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, ValidationError

from expiry_permissions.errors import ConfigurationError

DEFAULT_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]+$"


class SyncConfig(BaseModel, frozen=True):
    """
    Configuration for the SyncEngine.

    Attributes:
        poll_interval: Seconds between background refresh ticks.
        fetch_timeout: Per-attempt timeout (seconds) for ledger reads.
        submit_timeout: Timeout (seconds) after which an unacknowledged
            submission is reported as uncertain. The submission itself keeps
            running and is reconciled when it resolves.
        backoff_base: First retry delay (seconds) for failed reads.
        backoff_cap: Upper bound (seconds) on a single retry delay.
        max_fetch_attempts: Attempts per read before the error is surfaced.
    """

    poll_interval: Annotated[float, Field(gt=0)] = 30.0
    fetch_timeout: Annotated[float, Field(gt=0)] = 10.0
    submit_timeout: Annotated[float, Field(gt=0)] = 30.0
    backoff_base: Annotated[float, Field(ge=0)] = 1.0
    backoff_cap: Annotated[float, Field(ge=0)] = 30.0
    max_fetch_attempts: Annotated[int, Field(ge=1)] = 5


class PermissionPolicyConfig(BaseModel, frozen=True):
    """
    Grant validation policy.

    Attributes:
        max_grant_duration: Longest allowed distance between now and a new
            expiry. None disables the ceiling.
        address_pattern: Regular expression every principal address must match.
    """

    max_grant_duration: timedelta | None = timedelta(days=365)
    address_pattern: str = DEFAULT_ADDRESS_PATTERN


class CacheConfig(BaseModel, frozen=True):
    """
    Configuration for the local durable cache.

    Attributes:
        path: JSON file backing the cache. None selects the in-memory cache.
    """

    path: Path | None = None


class SimulatedLedgerConfig(BaseModel, frozen=True):
    """
    Configuration for the local simulated ledger used in development.

    Attributes:
        state_path: JSON file the simulated ledger persists to. None keeps
            state in memory only.
        network: Display name reported through the adapter capabilities.
        transaction_delay: Artificial confirmation delay (seconds) for grants,
            spends and extensions.
        connection_delay: Artificial delay (seconds) for reads.
        revoke_delay: Artificial confirmation delay (seconds) for revocations.
    """

    state_path: Path | None = None
    network: str = "simulated"
    transaction_delay: Annotated[float, Field(ge=0)] = 0.0
    connection_delay: Annotated[float, Field(ge=0)] = 0.0
    revoke_delay: Annotated[float, Field(ge=0)] = 0.0


class RealLedgerConfig(BaseModel, frozen=True):
    """
    Configuration for the Aptos-backed ledger adapter.

    Attributes:
        node_url: Base URL of the fullnode REST API (including ``/v1``).
        module_address: Account address the permission module is published under.
        module_name: Name of the published module.
        network: Display name reported through the adapter capabilities.
        request_timeout: HTTP timeout (seconds) for each request.
        confirmation_poll_interval: Seconds between transaction status polls.
        confirmation_timeout: Seconds to wait for a submitted transaction to
            be committed before reporting a ledger timeout.
    """

    node_url: str = "https://fullnode.devnet.aptoslabs.com/v1"
    module_address: str = Field(..., min_length=3)
    module_name: str = "expiry_x"
    network: str = "aptos-devnet"
    request_timeout: Annotated[float, Field(gt=0)] = 10.0
    confirmation_poll_interval: Annotated[float, Field(gt=0)] = 1.0
    confirmation_timeout: Annotated[float, Field(gt=0)] = 30.0


class LedgerConfig(BaseModel, frozen=True):
    """
    Selects and configures the ledger backend.

    Attributes:
        mode: ``'simulated'`` for local development or ``'real'`` for the
            distributed ledger. Decided once, at startup.
        simulated: Settings used when ``mode`` is ``'simulated'``.
        real: Settings used when ``mode`` is ``'real'``. Required in that mode.
    """

    mode: Literal["real", "simulated"] = "simulated"
    simulated: SimulatedLedgerConfig = Field(default_factory=SimulatedLedgerConfig)
    real: RealLedgerConfig | None = None


class ExpiryConfig(BaseModel, frozen=True):
    """
    Top-level configuration for a PermissionService.

    All fields are optional; defaults run against an in-memory simulated
    ledger with an in-memory cache.

    Example::

        config = ExpiryConfig(
            ledger=LedgerConfig(mode="simulated"),
            sync=SyncConfig(poll_interval=15.0),
            cache=CacheConfig(path=Path("~/.expiry/cache.json").expanduser()),
        )
        service = PermissionService("0xowner", config=config)
    """

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    policy: PermissionPolicyConfig = Field(default_factory=PermissionPolicyConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> ExpiryConfig:
        """
        Load configuration from a JSON file.

        Raises:
            ConfigurationError: If the file cannot be read or does not
                describe a valid configuration.
        """
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read config file '{config_path}': {exc}") from exc
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc
