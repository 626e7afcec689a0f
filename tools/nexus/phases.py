"""
NEXUS Sale Phase Controller

Two independent boarding flags, both closed at construction:

    preboarding_open   allow-listed crew may board (presale price)
    general_open       anyone may board (general price)

The flags are not mutually exclusive. Opening general boarding while
preboarding is still open is a valid state (BoardingStatus.BOTH); both
windows then accept requests on their own path.

There is no automatic advancement. Every change comes from the owner through
the engine and is appended to the phase history.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class BoardingStatus(Enum):
    """Combined view of the two phase flags."""
    CLOSED = "closed"
    PREBOARDING_ONLY = "preboarding_only"
    GENERAL_ONLY = "general_only"
    BOTH = "both"

    @classmethod
    def from_flags(cls, preboarding_open: bool, general_open: bool) -> "BoardingStatus":
        if preboarding_open and general_open:
            return cls.BOTH
        if preboarding_open:
            return cls.PREBOARDING_ONLY
        if general_open:
            return cls.GENERAL_ONLY
        return cls.CLOSED


@dataclass(frozen=True)
class PhaseChange:
    """One recorded flag write, including same-value writes."""
    flag: str
    old: bool
    new: bool
    actor: str
    changed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag": self.flag,
            "old": self.old,
            "new": self.new,
            "actor": self.actor,
            "changed_at": self.changed_at,
        }


class SalePhaseController:
    """Holds the preboarding and general boarding flags."""

    PREBOARDING = "preboarding"
    GENERAL = "general"

    def __init__(self, preboarding_open: bool = False, general_open: bool = False):
        self._flags = {self.PREBOARDING: bool(preboarding_open), self.GENERAL: bool(general_open)}
        self._history: List[PhaseChange] = []
        self._lock = threading.Lock()

    @property
    def preboarding_open(self) -> bool:
        with self._lock:
            return self._flags[self.PREBOARDING]

    @property
    def general_open(self) -> bool:
        with self._lock:
            return self._flags[self.GENERAL]

    @property
    def status(self) -> BoardingStatus:
        with self._lock:
            return BoardingStatus.from_flags(self._flags[self.PREBOARDING], self._flags[self.GENERAL])

    def set_preboarding(self, enabled: bool, actor: str = "") -> PhaseChange:
        return self._set(self.PREBOARDING, enabled, actor)

    def set_general_boarding(self, enabled: bool, actor: str = "") -> PhaseChange:
        return self._set(self.GENERAL, enabled, actor)

    def _set(self, flag: str, enabled: bool, actor: str) -> PhaseChange:
        if not isinstance(enabled, bool):
            raise TypeError(f"{flag} flag must be bool, got {type(enabled).__name__}")
        with self._lock:
            change = PhaseChange(
                flag=flag,
                old=self._flags[flag],
                new=enabled,
                actor=actor,
                changed_at=datetime.now(timezone.utc).isoformat(),
            )
            self._flags[flag] = enabled
            self._history.append(change)
            return change

    def history(self, flag: Optional[str] = None) -> List[PhaseChange]:
        with self._lock:
            events = list(self._history)
        if flag:
            events = [e for e in events if e.flag == flag]
        return events

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "preboarding_open": self._flags[self.PREBOARDING],
                "general_open": self._flags[self.GENERAL],
                "history": [c.to_dict() for c in self._history],
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SalePhaseController":
        ctl = cls(bool(data.get("preboarding_open")), bool(data.get("general_open")))
        for c in data.get("history") or []:
            ctl._history.append(PhaseChange(
                flag=str(c["flag"]),
                old=bool(c["old"]),
                new=bool(c["new"]),
                actor=str(c.get("actor") or ""),
                changed_at=str(c.get("changed_at") or ""),
            ))
        return ctl
