"""
NEXUS Royalty Calculator

EIP-2981 style royalty info: one fixed basis-point rate for every token,
paid to the treasury address. 700 bps (7%) unless configured otherwise.
"""

from __future__ import annotations

from typing import Tuple

from tools.nexus.errors import ValidationError
from tools.nexus.hardening import Validators, normalize_address


BPS_DENOMINATOR = 10_000
DEFAULT_ROYALTY_BPS = 700


class RoyaltyCalculator:
    """Computes secondary-sale royalties from a fixed rate."""

    def __init__(self, recipient: str, rate_bps: int = DEFAULT_ROYALTY_BPS):
        Validators.validate_count(rate_bps, "royalty_bps").raise_if_invalid()
        if rate_bps > BPS_DENOMINATOR:
            raise ValidationError("royalty_bps", f"Exceeds maximum ({BPS_DENOMINATOR})", rate_bps)
        self._recipient = normalize_address(recipient, "royalty_recipient")
        self._rate_bps = rate_bps

    @property
    def recipient(self) -> str:
        return self._recipient

    @property
    def rate_bps(self) -> int:
        return self._rate_bps

    def royalty_info(self, token_id: int, sale_price: int) -> Tuple[str, int]:
        """Return (recipient, amount). `token_id` does not affect the result."""
        Validators.validate_wei(sale_price, "sale_price").raise_if_invalid()
        return self._recipient, sale_price * self._rate_bps // BPS_DENOMINATOR
