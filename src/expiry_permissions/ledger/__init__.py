# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

from expiry_permissions.ledger.factory import build_ledger_adapter
from expiry_permissions.ledger.interface import LedgerAdapter
from expiry_permissions.ledger.real import RealLedgerAdapter
from expiry_permissions.ledger.simulated import SimulatedLedgerAdapter

__all__ = [
    "LedgerAdapter",
    "RealLedgerAdapter",
    "SimulatedLedgerAdapter",
    "build_ledger_adapter",
]
