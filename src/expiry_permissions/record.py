# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Pure functions over :class:`PermissionRecord`: status derivation and the
precondition checks for every transition. No I/O happens here.

Every check raises :class:`PermissionValidationError` on failure and returns
None on success.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from expiry_permissions.config import PermissionPolicyConfig
from expiry_permissions.errors import PermissionValidationError, ValidationErrorKind
from expiry_permissions.types import (
    EXPIRING_SOON_WINDOW,
    CacheEntry,
    PermissionRecord,
    PermissionStatus,
    PermissionView,
)


def derive_status(record: PermissionRecord, now: datetime) -> PermissionStatus:
    """
    Derive the status of ``record`` at instant ``now``.

    Revocation outranks expiry, and both outrank spend exhaustion: a record
    that is revoked and expired reports ``REVOKED``.
    """
    if record.revoked:
        return PermissionStatus.REVOKED
    if now >= record.expiry:
        return PermissionStatus.EXPIRED
    if record.spent >= record.amount:
        return PermissionStatus.FULLY_SPENT
    return PermissionStatus.ACTIVE


def remaining_allowance(record: PermissionRecord) -> int:
    """Return how much of the allowance is left, ignoring status."""
    return max(0, record.amount - record.spent)


def is_valid_address(address: str, pattern: str | None = None) -> bool:
    """Return True if ``address`` is a well-formed principal address."""
    policy_pattern = pattern or PermissionPolicyConfig().address_pattern
    return bool(address) and re.fullmatch(policy_pattern, address) is not None


def validate_grant(
    owner: str,
    spender: str,
    amount: int,
    expiry: datetime,
    now: datetime,
    policy: PermissionPolicyConfig | None = None,
) -> None:
    """
    Check the inputs of a ``grant`` transition.

    Raises:
        PermissionValidationError: ``INVALID_AMOUNT`` if ``amount <= 0``;
            ``INVALID_EXPIRY`` if ``expiry <= now`` or beyond the policy's
            maximum grant duration; ``INVALID_SPENDER`` if the spender is the
            owner or is not a well-formed address.
    """
    effective = policy or PermissionPolicyConfig()
    if amount <= 0:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_AMOUNT,
            f"Grant amount must be positive, got {amount}.",
        )
    if expiry <= now:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_EXPIRY,
            f"Expiry {expiry.isoformat()} is not in the future.",
        )
    if effective.max_grant_duration is not None and expiry - now > effective.max_grant_duration:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_EXPIRY,
            f"Expiry {expiry.isoformat()} is further out than the allowed "
            f"{effective.max_grant_duration.days} days.",
        )
    if spender == owner:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_SPENDER,
            "An owner cannot grant a permission to itself.",
        )
    if not is_valid_address(spender, effective.address_pattern):
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_SPENDER,
            f"'{spender}' is not a valid address.",
        )


def validate_spend(record: PermissionRecord, amount: int, now: datetime) -> None:
    """
    Check a ``spend`` of ``amount`` against ``record`` at instant ``now``.

    Raises:
        PermissionValidationError: ``PERMISSION_REVOKED``, ``PERMISSION_EXPIRED``,
            ``INVALID_AMOUNT`` (non-positive amount) or ``INSUFFICIENT_ALLOWANCE``,
            checked in that order.
    """
    if record.revoked:
        raise PermissionValidationError(
            ValidationErrorKind.PERMISSION_REVOKED,
            f"Permission '{record.id}' has been revoked.",
            permission_id=record.id,
        )
    if now >= record.expiry:
        raise PermissionValidationError(
            ValidationErrorKind.PERMISSION_EXPIRED,
            f"Permission '{record.id}' expired at {record.expiry.isoformat()}.",
            permission_id=record.id,
        )
    if amount <= 0:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_AMOUNT,
            f"Spend amount must be positive, got {amount}.",
            permission_id=record.id,
        )
    if record.spent + amount > record.amount:
        raise PermissionValidationError(
            ValidationErrorKind.INSUFFICIENT_ALLOWANCE,
            f"Permission '{record.id}': requested {amount} but only "
            f"{remaining_allowance(record)} remains.",
            permission_id=record.id,
        )


def validate_revoke(record: PermissionRecord, requester: str) -> None:
    """
    Check a ``revoke`` of ``record`` requested by ``requester``.

    ``ALREADY_REVOKED`` is reported as an error so callers can tell a new
    revocation from a repeated one.

    Raises:
        PermissionValidationError: ``NOT_AUTHORIZED`` or ``ALREADY_REVOKED``.
    """
    if requester != record.owner:
        raise PermissionValidationError(
            ValidationErrorKind.NOT_AUTHORIZED,
            f"Only the owner of permission '{record.id}' can revoke it.",
            permission_id=record.id,
        )
    if record.revoked:
        raise PermissionValidationError(
            ValidationErrorKind.ALREADY_REVOKED,
            f"Permission '{record.id}' is already revoked.",
            permission_id=record.id,
        )


def validate_extend(
    record: PermissionRecord,
    requester: str,
    new_expiry: datetime,
    now: datetime,
    policy: PermissionPolicyConfig | None = None,
) -> None:
    """
    Check an ``extend`` of ``record`` to ``new_expiry``.

    Raises:
        PermissionValidationError: ``NOT_AUTHORIZED`` for non-owners,
            ``NOT_ACTIVE`` unless the record is active at ``now``, and
            ``INVALID_EXPIRY`` if ``new_expiry`` does not move the expiry
            forward or exceeds the policy ceiling.
    """
    effective = policy or PermissionPolicyConfig()
    if requester != record.owner:
        raise PermissionValidationError(
            ValidationErrorKind.NOT_AUTHORIZED,
            f"Only the owner of permission '{record.id}' can extend it.",
            permission_id=record.id,
        )
    status = derive_status(record, now)
    if status is not PermissionStatus.ACTIVE:
        raise PermissionValidationError(
            ValidationErrorKind.NOT_ACTIVE,
            f"Permission '{record.id}' is {status.value} and cannot be extended.",
            permission_id=record.id,
        )
    if new_expiry <= record.expiry:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_EXPIRY,
            f"New expiry {new_expiry.isoformat()} must be later than the current "
            f"expiry {record.expiry.isoformat()}.",
            permission_id=record.id,
        )
    if effective.max_grant_duration is not None and new_expiry - now > effective.max_grant_duration:
        raise PermissionValidationError(
            ValidationErrorKind.INVALID_EXPIRY,
            f"New expiry {new_expiry.isoformat()} is further out than the allowed "
            f"{effective.max_grant_duration.days} days.",
            permission_id=record.id,
        )


def build_view(entry: CacheEntry, now: datetime) -> PermissionView:
    """Render a cache entry with its status derived at ``now``."""
    record = entry.record
    status = derive_status(record, now)
    time_remaining = max(record.expiry - now, timedelta(0))
    return PermissionView(
        record=record,
        status=status,
        remaining=remaining_allowance(record),
        time_remaining=time_remaining,
        expiring_soon=status is PermissionStatus.ACTIVE and time_remaining <= EXPIRING_SOON_WINDOW,
        pending=entry.pending,
        last_confirmed_from_ledger=entry.sync.last_confirmed_from_ledger,
        as_of=now,
    )
