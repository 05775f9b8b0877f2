# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""Human-readable messages for every error code, for display at the UI boundary."""

from __future__ import annotations

from expiry_permissions.errors import ExpiryPermissionsError

USER_MESSAGES: dict[str, str] = {
    "INVALID_AMOUNT": "Enter an amount greater than zero.",
    "INVALID_EXPIRY": "Choose an expiry time in the future, within the allowed range.",
    "INVALID_SPENDER": "The recipient address is not valid.",
    "PERMISSION_REVOKED": "This permission has been revoked.",
    "PERMISSION_EXPIRED": "This permission has expired.",
    "INSUFFICIENT_ALLOWANCE": "Insufficient permission allowance.",
    "NOT_AUTHORIZED": "You are not authorized to perform this action.",
    "ALREADY_REVOKED": "This permission was already revoked.",
    "PERMISSION_NOT_FOUND": "Permission does not exist.",
    "NOT_ACTIVE": "Only active permissions can be changed.",
    "LEDGER_UNREACHABLE": "Cannot reach the network. Check your connection and try again.",
    "LEDGER_TIMEOUT": "The network is taking too long to respond.",
    "LEDGER_REJECTED": "The network rejected the transaction.",
    "MALFORMED_RESPONSE": "The network returned an unexpected response.",
    "LEDGER_STORAGE_FAILED": "Could not save the local network state on this device.",
    "UNSUPPORTED_OPERATION": "This action is not available on the current network.",
    "STALE_RETRY_EXHAUSTED": "The permission changed while you were using it. Refresh and try again.",
    "SUBMISSION_UNCERTAIN": (
        "The transaction may or may not have gone through. "
        "Refresh before trying again."
    ),
    "SUBMISSION_FAILED": "Transaction failed.",
    "CACHE_WRITE_FAILED": "Could not save data on this device.",
    "CONFIGURATION_ERROR": "The application is misconfigured.",
}

DEFAULT_MESSAGE = "Unknown error occurred."


def user_message(error: ExpiryPermissionsError) -> str:
    """Return the display message for ``error``."""
    return USER_MESSAGES.get(error.code, DEFAULT_MESSAGE)
