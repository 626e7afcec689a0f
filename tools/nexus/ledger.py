"""
NEXUS Issuance Ledger

Tracks how many crew tokens have been issued in total, during preboarding,
and to each wallet, against fixed capacities.

Invariants:
    - total_issued <= max_total_issued at all times
    - preboarding_issued <= max_preboarding_issued at all times
    - counts only grow; there is no burn or reset
    - token ids are assigned sequentially from 1

check + record run as one critical section via `admit()`; two concurrent
requests can never both pass the capacity check and jointly overshoot.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tools.nexus.errors import (
    FoundingCrewFull,
    TotalSupplyExceeded,
    WalletLimitExceeded,
)
from tools.nexus.hardening import Validators, normalize_address, require_quantity


@dataclass(frozen=True)
class TokenRecord:
    """Ownership and descriptive metadata for one issued token."""
    token_id: int
    owner: str
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.token_id, "owner": self.owner, "category": self.category}


class IssuanceLedger:
    """Per-wallet and total issuance counts against fixed capacity."""

    def __init__(
        self,
        max_total_issued: int,
        max_per_wallet: int,
        max_preboarding_issued: Optional[int] = None,
    ):
        Validators.validate_count(max_total_issued, "max_total_issued").raise_if_invalid()
        Validators.validate_count(max_per_wallet, "max_per_wallet").raise_if_invalid()
        if max_preboarding_issued is None:
            max_preboarding_issued = max_total_issued
        Validators.validate_count(max_preboarding_issued, "max_preboarding_issued").raise_if_invalid()

        self._max_total = max_total_issued
        self._max_per_wallet = max_per_wallet
        self._max_preboarding = max_preboarding_issued

        self._total = 0
        self._preboarding = 0
        self._counts: Dict[str, int] = {}
        self._tokens: Dict[int, TokenRecord] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def max_total_issued(self) -> int:
        return self._max_total

    @property
    def max_per_wallet(self) -> int:
        with self._lock:
            return self._max_per_wallet

    @property
    def max_preboarding_issued(self) -> int:
        return self._max_preboarding

    @property
    def total_issued(self) -> int:
        with self._lock:
            return self._total

    @property
    def preboarding_issued(self) -> int:
        with self._lock:
            return self._preboarding

    def issued_count(self, recipient: str) -> int:
        key = normalize_address(recipient, "recipient")
        with self._lock:
            return self._counts.get(key, 0)

    def exists(self, token_id: int) -> bool:
        with self._lock:
            return token_id in self._tokens

    def owner_of(self, token_id: int) -> Optional[str]:
        with self._lock:
            rec = self._tokens.get(token_id)
            return rec.owner if rec else None

    def category_of(self, token_id: int) -> Optional[str]:
        with self._lock:
            rec = self._tokens.get(token_id)
            return rec.category if rec else None

    def tokens_of(self, recipient: str) -> List[int]:
        key = normalize_address(recipient, "recipient")
        with self._lock:
            return sorted(t for t, rec in self._tokens.items() if rec.owner == key)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def check(self, recipient: str, quantity: int, preboarding: bool = False) -> None:
        """Raise the matching capacity error if `quantity` cannot be issued."""
        require_quantity(quantity)
        key = normalize_address(recipient, "recipient")
        with self._lock:
            if self._total + quantity > self._max_total:
                raise TotalSupplyExceeded(
                    requested=quantity, total_issued=self._total, max_total_issued=self._max_total,
                )
            if preboarding and self._preboarding + quantity > self._max_preboarding:
                raise FoundingCrewFull(
                    requested=quantity,
                    preboarding_issued=self._preboarding,
                    max_preboarding_issued=self._max_preboarding,
                )
            held = self._counts.get(key, 0)
            if held + quantity > self._max_per_wallet:
                raise WalletLimitExceeded(
                    recipient=key, requested=quantity, held=held, max_per_wallet=self._max_per_wallet,
                )

    def can_issue(self, recipient: str, quantity: int, preboarding: bool = False) -> bool:
        """True iff `check` would pass. Never mutates state."""
        try:
            self.check(recipient, quantity, preboarding=preboarding)
        except (TotalSupplyExceeded, WalletLimitExceeded):
            return False
        return True

    def record(
        self,
        recipient: str,
        quantity: int,
        preboarding: bool = False,
        category: Optional[str] = None,
    ) -> List[int]:
        """
        Advance the counters and assign token ids.

        Callers must have passed `check` inside the same critical section;
        `admit` does both.
        """
        require_quantity(quantity)
        key = normalize_address(recipient, "recipient")
        with self._lock:
            first = self._total + 1
            token_ids = list(range(first, first + quantity))
            for token_id in token_ids:
                self._tokens[token_id] = TokenRecord(token_id, key, category)
            self._total += quantity
            if preboarding:
                self._preboarding += quantity
            self._counts[key] = self._counts.get(key, 0) + quantity
            return token_ids

    def admit(
        self,
        recipient: str,
        quantity: int,
        preboarding: bool = False,
        category: Optional[str] = None,
    ) -> List[int]:
        """Check and record atomically."""
        with self._lock:
            self.check(recipient, quantity, preboarding=preboarding)
            return self.record(recipient, quantity, preboarding=preboarding, category=category)

    def set_per_wallet_limit(self, limit: int) -> Tuple[int, int]:
        """Replace the per-wallet limit. Already-issued tokens are untouched."""
        Validators.validate_count(limit, "max_per_wallet").raise_if_invalid()
        with self._lock:
            old = self._max_per_wallet
            self._max_per_wallet = limit
            return old, limit

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "max_total_issued": self._max_total,
                "max_per_wallet": self._max_per_wallet,
                "max_preboarding_issued": self._max_preboarding,
                "total_issued": self._total,
                "preboarding_issued": self._preboarding,
                "issued_counts": dict(sorted(self._counts.items())),
                "tokens": [self._tokens[t].to_dict() for t in sorted(self._tokens)],
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssuanceLedger":
        ledger = cls(
            max_total_issued=int(data["max_total_issued"]),
            max_per_wallet=int(data["max_per_wallet"]),
            max_preboarding_issued=int(data["max_preboarding_issued"]),
        )
        ledger._total = int(data["total_issued"])
        ledger._preboarding = int(data.get("preboarding_issued", 0))
        ledger._counts = {
            normalize_address(k, "recipient"): int(v)
            for k, v in (data.get("issued_counts") or {}).items()
        }
        for t in data.get("tokens") or []:
            rec = TokenRecord(int(t["id"]), normalize_address(t["owner"], "owner"), t.get("category"))
            ledger._tokens[rec.token_id] = rec
        return ledger
