"""
NEXUS Error Taxonomy

Every rejection raised by the boarding engine carries a machine-readable
``kind`` plus the human-readable ``reason`` the sale has always shown to
crew members (e.g. "No more spots!"). Callers branch on ``kind`` or on the
exception class; the reason is for people.

Failures are synchronous and total: when any of these is raised, no part of
the request has been applied.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ERROR KINDS
# =============================================================================

class ErrorKind(Enum):
    """Distinguishable failure kinds for programmatic handling."""
    NOT_OWNER = "not_owner"
    PHASE_CLOSED = "phase_closed"
    NOT_ALLOW_LISTED = "not_allow_listed"
    INSUFFICIENT_PAYMENT = "insufficient_payment"
    TOTAL_SUPPLY_EXCEEDED = "total_supply_exceeded"
    WALLET_LIMIT_EXCEEDED = "wallet_limit_exceeded"
    UNKNOWN_CATEGORY = "unknown_category"
    INVALID_RECIPIENT = "invalid_recipient"
    INVALID_QUANTITY = "invalid_quantity"
    NONEXISTENT_TOKEN = "nonexistent_token"


# =============================================================================
# ISSUANCE ERRORS
# =============================================================================

class IssuanceError(Exception):
    """Base class for every rejection raised by the engine."""

    kind: ErrorKind = ErrorKind.INVALID_QUANTITY
    default_reason: str = "Request rejected"

    def __init__(self, reason: Optional[str] = None, **details: Any):
        self.reason = reason or self.default_reason
        self.details: Dict[str, Any] = details
        super().__init__(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "error": type(self).__name__,
            "reason": self.reason,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class NotOwner(IssuanceError):
    """Administrative operation attempted without the owner capability."""
    kind = ErrorKind.NOT_OWNER
    default_reason = "Ownable: caller is not the owner"


class PhaseClosed(IssuanceError):
    """Issuance attempted while the relevant boarding phase is closed."""
    kind = ErrorKind.PHASE_CLOSED
    default_reason = "Not boarding yet, space sailor!"


class NotAllowListed(IssuanceError):
    """Merkle proof did not verify against the allow-list root."""
    kind = ErrorKind.NOT_ALLOW_LISTED
    default_reason = "Not on the preboarding list!"


class InsufficientPayment(IssuanceError):
    kind = ErrorKind.INSUFFICIENT_PAYMENT
    default_reason = "Not enough ether sent"


class TotalSupplyExceeded(IssuanceError):
    kind = ErrorKind.TOTAL_SUPPLY_EXCEEDED
    default_reason = "No more spots!"


class FoundingCrewFull(TotalSupplyExceeded):
    """The preboarding (founding crew) allocation is exhausted."""
    default_reason = "Founding crew is full!"


class WalletLimitExceeded(IssuanceError):
    kind = ErrorKind.WALLET_LIMIT_EXCEEDED
    default_reason = "Above the per-wallet token limit"


class UnknownCategory(IssuanceError):
    kind = ErrorKind.UNKNOWN_CATEGORY
    default_reason = "Unknown character!"


class InvalidRecipient(IssuanceError):
    kind = ErrorKind.INVALID_RECIPIENT
    default_reason = "Invalid address"


class InvalidQuantity(IssuanceError):
    kind = ErrorKind.INVALID_QUANTITY
    default_reason = "Quantity must be positive"


class NonexistentToken(IssuanceError):
    kind = ErrorKind.NONEXISTENT_TOKEN
    default_reason = "URI query for nonexistent token"


# =============================================================================
# VALIDATION / INFRASTRUCTURE ERRORS
# =============================================================================

class ValidationError(Exception):
    """Input failed a shape or range check."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class StateError(Exception):
    """Persisted engine state is missing, unreadable or malformed."""
    pass


class SignatureInvalid(Exception):
    """A signed command failed authentication."""
    pass
