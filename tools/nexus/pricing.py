"""
NEXUS Pricing Policy

Per-phase unit prices in wei. A price change applies to every later request
immediately; no price history is kept here (the audit log has it).

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Tuple, Union

from tools.nexus.errors import ValidationError
from tools.nexus.hardening import Validators, require_quantity


# 0.07 ether / 0.09 ether
DEFAULT_PRESALE_PRICE_WEI = 70_000_000_000_000_000
DEFAULT_GENERAL_PRICE_WEI = 90_000_000_000_000_000


class SalePhase(Enum):
    """Which boarding window a request is priced and gated under."""
    PRESALE = "presale"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Union[str, "SalePhase"]) -> "SalePhase":
        if isinstance(value, SalePhase):
            return value
        word = str(value).strip().lower()
        aliases = {"preboarding": "presale", "premint": "presale", "boarding": "general", "public": "general"}
        word = aliases.get(word, word)
        try:
            return cls(word)
        except ValueError:
            raise ValidationError("phase", "Expected presale or general", value) from None


class PricingPolicy:
    """Mutable per-phase unit prices."""

    def __init__(
        self,
        presale_price: int = DEFAULT_PRESALE_PRICE_WEI,
        general_price: int = DEFAULT_GENERAL_PRICE_WEI,
    ):
        Validators.validate_wei(presale_price, "presale_price").raise_if_invalid()
        Validators.validate_wei(general_price, "general_price").raise_if_invalid()
        self._prices: Dict[SalePhase, int] = {
            SalePhase.PRESALE: presale_price,
            SalePhase.GENERAL: general_price,
        }
        self._lock = threading.Lock()

    def unit_price(self, phase: Union[str, SalePhase]) -> int:
        with self._lock:
            return self._prices[SalePhase.parse(phase)]

    def required_payment(self, phase: Union[str, SalePhase], quantity: int) -> int:
        require_quantity(quantity)
        return self.unit_price(phase) * quantity

    def set_price(self, phase: Union[str, SalePhase], price: int) -> Tuple[int, int]:
        """Replace a phase price; returns (old, new)."""
        p = SalePhase.parse(phase)
        Validators.validate_wei(price, f"{p.value}_price").raise_if_invalid()
        with self._lock:
            old = self._prices[p]
            self._prices[p] = price
            return old, price

    def to_dict(self) -> Dict[str, int]:
        with self._lock:
            return {p.value: v for p, v in self._prices.items()}
