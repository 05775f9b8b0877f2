# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

import logging

from expiry_permissions.config import LedgerConfig
from expiry_permissions.errors import ConfigurationError
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.ledger.real import RealLedgerAdapter
from expiry_permissions.ledger.simulated import SimulatedLedgerAdapter
from expiry_permissions.types import Clock, Signer, utcnow

logger = logging.getLogger("expiry_permissions.ledger")


def build_ledger_adapter(
    config: LedgerConfig,
    account: str,
    signer: Signer | None = None,
    clock: Clock = utcnow,
) -> LedgerAdapter:
    """
    Construct the ledger adapter selected by ``config.mode``.

    This is the only place the real/simulated choice is made; everything
    downstream talks to the returned :class:`LedgerAdapter`.

    Args:
        config: The ledger section of the configuration.
        account: Address of the connected principal.
        signer: Transaction signer. Required in ``'real'`` mode.
        clock: Time source for the simulated ledger.

    Raises:
        ConfigurationError: If ``'real'`` mode is selected without a ``real``
            section or without a signer.
    """
    if config.mode == "real":
        if config.real is None:
            raise ConfigurationError("Ledger mode 'real' requires a 'real' configuration section.")
        if signer is None:
            raise ConfigurationError("Ledger mode 'real' requires a transaction signer.")
        logger.info(
            "ledger_adapter_selected",
            extra={"mode": "real", "network": config.real.network, "module": config.real.module_address},
        )
        return RealLedgerAdapter(config.real, signer=signer, account=account)

    logger.info(
        "ledger_adapter_selected",
        extra={"mode": "simulated", "network": config.simulated.network},
    )
    return SimulatedLedgerAdapter(config.simulated, clock=clock, account=account)
