"""
NEXUS Issuance Engine

The single writer for a crew sale. Every issuance, gift, withdrawal and
administrative change goes through an `IssuanceEngine` instance, which owns
the ledger, pricing, phase flags and royalty settings.

Issuance request order:

    0. validate quantity, recipient and category
    1. pick the path: preboarding (proof supplied) or general
    2. preboarding: phase open?           -> PhaseClosed
    3. preboarding: caller allow-listed?  -> NotAllowListed
    4. general: phase open?               -> PhaseClosed
    5. payment >= unit price * quantity   -> InsufficientPayment
    6. capacity                           -> TotalSupplyExceeded / FoundingCrewFull / WalletLimitExceeded
    7. record, credit payment, emit receipt

The whole request runs under the engine lock, so checks and the ledger
write can never interleave with another request. A failed request leaves
no trace in state; it is only written to the audit log.

Administrative operations take the caller explicitly and fail with
`NotOwner` unless it matches the current owner.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from tools.nexus.allowlist import leaf_hash, verify_proof
from tools.nexus.errors import (
    InsufficientPayment,
    IssuanceError,
    NonexistentToken,
    NotAllowListed,
    NotOwner,
    PhaseClosed,
    UnknownCategory,
)
from tools.nexus.hardening import (
    Validators,
    canonical_json_bytes,
    normalize_address,
    require_quantity,
    sha256_hex,
)
from tools.nexus.ledger import IssuanceLedger
from tools.nexus.observability import (
    AuditEventType,
    AuditLog,
    NexusLayer,
    get_logger,
    timed_operation,
)
from tools.nexus.phases import BoardingStatus, PhaseChange, SalePhaseController
from tools.nexus.pricing import (
    DEFAULT_GENERAL_PRICE_WEI,
    DEFAULT_PRESALE_PRICE_WEI,
    PricingPolicy,
    SalePhase,
)
from tools.nexus.royalty import DEFAULT_ROYALTY_BPS, RoyaltyCalculator

log = get_logger("engine", NexusLayer.ENGINE)

STATE_VERSION = 1

GENERAL_CLOSED_REASON = "General boarding starts soon!"


# =============================================================================
# CREW CATEGORIES
# =============================================================================

class CrewCategory(Enum):
    """Descriptive crew role attached to a token. Never affects price or capacity."""
    ARCHITECT = "architect"
    CAPTAIN = "captain"
    EXPLORER = "explorer"
    JOURNALIST = "journalist"
    MECHANIC = "mechanic"
    MERCHANT = "merchant"

    @classmethod
    def parse(cls, value: Union[str, "CrewCategory"]) -> "CrewCategory":
        if isinstance(value, CrewCategory):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownCategory(category=value) from None

    @classmethod
    def by_index(cls, index: int) -> "CrewCategory":
        """1-based lookup in declaration order."""
        members = list(cls)
        if isinstance(index, bool) or not isinstance(index, int) or not 1 <= index <= len(members):
            raise UnknownCategory(index=index)
        return members[index - 1]


# =============================================================================
# RECEIPTS
# =============================================================================

class ReceiptKind(Enum):
    MINT = "mint"
    GIFT = "gift"


@dataclass(frozen=True)
class Receipt:
    """Record of one committed issuance."""
    receipt_id: str
    kind: ReceiptKind
    caller: str
    recipient: str
    quantity: int
    phase: Optional[SalePhase]
    amount_charged: int
    amount_paid: int
    token_ids: Tuple[int, ...]
    category: Optional[str]
    issued_at: str
    digest: str = ""

    def _content(self) -> Dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "kind": self.kind.value,
            "caller": self.caller,
            "recipient": self.recipient,
            "quantity": self.quantity,
            "phase": self.phase.value if self.phase else None,
            "amount_charged": str(self.amount_charged),
            "amount_paid": str(self.amount_paid),
            "token_ids": list(self.token_ids),
            "category": self.category,
            "issued_at": self.issued_at,
        }

    def compute_digest(self) -> str:
        return sha256_hex(canonical_json_bytes(self._content()))

    def to_dict(self) -> Dict[str, Any]:
        d = self._content()
        d["digest"] = self.digest
        return d


@dataclass(frozen=True)
class Payout:
    """Record of one withdrawal."""
    payout_id: str
    to: str
    amount: int
    requested_by: str
    paid_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "to": self.to,
            "amount": str(self.amount),
            "requested_by": self.requested_by,
            "paid_at": self.paid_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payout":
        return cls(
            payout_id=str(data["payout_id"]),
            to=str(data["to"]),
            amount=int(data["amount"]),
            requested_by=str(data["requested_by"]),
            paid_at=str(data["paid_at"]),
        )


def derive_treasury_address(owner: str, allow_list_root: Optional[str]) -> str:
    """Stable stand-in for the sale's own address, used as royalty recipient."""
    seed = f"nexus-treasury:{owner}:{allow_list_root or ''}".encode("utf-8")
    return "0x" + hashlib.sha256(seed).digest()[-20:].hex()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENGINE
# =============================================================================

class IssuanceEngine:
    """
    Crew sale state machine.

    Example:
        engine = IssuanceEngine(owner, max_total_issued=10000, max_per_wallet=3,
                                allow_list_root=tree.root, base_uri="ipfs://xyz/",
                                max_preboarding_issued=1000)
        engine.set_general_boarding(owner, True)
        receipt = engine.request_issuance(buyer, buyer, 2, payment=2 * engine.price("general"))
    """

    def __init__(
        self,
        owner: str,
        max_total_issued: int,
        max_per_wallet: int,
        allow_list_root: Optional[str] = None,
        base_uri: str = "",
        max_preboarding_issued: Optional[int] = None,
        presale_price: int = DEFAULT_PRESALE_PRICE_WEI,
        general_price: int = DEFAULT_GENERAL_PRICE_WEI,
        royalty_bps: int = DEFAULT_ROYALTY_BPS,
        treasury: Optional[str] = None,
        withdrawal_address: Optional[str] = None,
        audit: Optional[AuditLog] = None,
    ):
        self._owner = normalize_address(owner, "owner")
        if allow_list_root is not None:
            result = Validators.validate_digest(allow_list_root, "allow_list_root")
            result.raise_if_invalid()
            allow_list_root = result.sanitized_value
        self._allow_list_root: Optional[str] = allow_list_root
        self._base_uri = self._clean_uri(base_uri)

        self._ledger = IssuanceLedger(max_total_issued, max_per_wallet, max_preboarding_issued)
        self._pricing = PricingPolicy(presale_price, general_price)
        self._phases = SalePhaseController()

        if treasury is None:
            treasury = derive_treasury_address(self._owner, self._allow_list_root)
        self._royalty = RoyaltyCalculator(treasury, royalty_bps)
        self._withdrawal = normalize_address(withdrawal_address or self._owner, "withdrawal_address")

        self._balance = 0
        self._receipt_seq = 0
        self._payouts: List[Payout] = []
        # Revision of the stored snapshot this engine was loaded from.
        self.revision = 0
        self._listeners: List[Callable[[Receipt], None]] = []
        self._lock = threading.RLock()
        self.audit = audit if audit is not None else AuditLog()

    @staticmethod
    def _clean_uri(uri: Any) -> str:
        result = Validators.validate_uri(uri)
        result.raise_if_invalid()
        return result.sanitized_value

    # -------------------------------------------------------------------------
    # Getters
    # -------------------------------------------------------------------------

    @property
    def owner(self) -> str:
        with self._lock:
            return self._owner

    @property
    def preboarding_open(self) -> bool:
        return self._phases.preboarding_open

    @property
    def general_open(self) -> bool:
        return self._phases.general_open

    @property
    def boarding_status(self) -> BoardingStatus:
        return self._phases.status

    def price(self, phase: Union[str, SalePhase]) -> int:
        return self._pricing.unit_price(phase)

    @property
    def max_per_wallet(self) -> int:
        return self._ledger.max_per_wallet

    @property
    def max_total_issued(self) -> int:
        return self._ledger.max_total_issued

    @property
    def max_preboarding_issued(self) -> int:
        return self._ledger.max_preboarding_issued

    @property
    def total_issued(self) -> int:
        return self._ledger.total_issued

    @property
    def preboarding_issued(self) -> int:
        return self._ledger.preboarding_issued

    def issued_count(self, address: str) -> int:
        return self._ledger.issued_count(address)

    def tokens_of(self, address: str) -> List[int]:
        return self._ledger.tokens_of(address)

    def owner_of(self, token_id: int) -> str:
        owner = self._ledger.owner_of(token_id)
        if owner is None:
            raise NonexistentToken(token_id=token_id)
        return owner

    def category_of(self, token_id: int) -> Optional[str]:
        if not self._ledger.exists(token_id):
            raise NonexistentToken(token_id=token_id)
        return self._ledger.category_of(token_id)

    @property
    def withdrawal_address(self) -> str:
        with self._lock:
            return self._withdrawal

    @property
    def base_uri(self) -> str:
        with self._lock:
            return self._base_uri

    @property
    def balance(self) -> int:
        with self._lock:
            return self._balance

    @property
    def allow_list_root(self) -> Optional[str]:
        return self._allow_list_root

    @property
    def royalty_bps(self) -> int:
        return self._royalty.rate_bps

    @property
    def treasury(self) -> str:
        return self._royalty.recipient

    @property
    def payouts(self) -> List[Payout]:
        with self._lock:
            return list(self._payouts)

    def phase_history(self, flag: Optional[str] = None) -> List[PhaseChange]:
        return self._phases.history(flag)

    def token_uri(self, token_id: int) -> str:
        if not self._ledger.exists(token_id):
            raise NonexistentToken(token_id=token_id)
        with self._lock:
            return f"{self._base_uri}{token_id}.json"

    def royalty_info(self, token_id: int, sale_price: int) -> Tuple[str, int]:
        return self._royalty.royalty_info(token_id, sale_price)

    @staticmethod
    def token_type(index: int) -> str:
        """Category name at a 1-based position in the crew vocabulary."""
        return CrewCategory.by_index(index).value

    def can_issue(self, recipient: str, quantity: int, preboarding: bool = False) -> bool:
        return self._ledger.can_issue(recipient, quantity, preboarding=preboarding)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Callable[[Receipt], None]) -> Callable[[], None]:
        """Register a receipt listener. Returns a function that removes it."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, receipt: Receipt) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(receipt)
            except Exception:
                log.error(
                    "Receipt listener failed",
                    error_code="LISTENER_FAILED",
                    exc_info=True,
                    receipt_id=receipt.receipt_id,
                )

    # -------------------------------------------------------------------------
    # Issuance
    # -------------------------------------------------------------------------

    def _next_receipt_id(self) -> str:
        self._receipt_seq += 1
        return f"rcpt-{self._receipt_seq:08d}"

    def _build_receipt(
        self,
        kind: ReceiptKind,
        caller: str,
        recipient: str,
        quantity: int,
        phase: Optional[SalePhase],
        charged: int,
        paid: int,
        token_ids: List[int],
        category: Optional[str],
    ) -> Receipt:
        draft = Receipt(
            receipt_id=self._next_receipt_id(),
            kind=kind,
            caller=caller,
            recipient=recipient,
            quantity=quantity,
            phase=phase,
            amount_charged=charged,
            amount_paid=paid,
            token_ids=tuple(token_ids),
            category=category,
            issued_at=_now(),
        )
        return replace(draft, digest=draft.compute_digest())

    def _resolve_phase(
        self,
        proof: Optional[Sequence[str]],
        phase: Optional[Union[str, SalePhase]],
    ) -> SalePhase:
        if phase is not None:
            return SalePhase.parse(phase)
        return SalePhase.PRESALE if proof else SalePhase.GENERAL

    @timed_operation(log, "request_issuance")
    def request_issuance(
        self,
        caller: str,
        recipient: str,
        quantity: int,
        payment: int,
        proof: Optional[Sequence[str]] = None,
        category: Optional[Union[str, CrewCategory]] = None,
        phase: Optional[Union[str, SalePhase]] = None,
    ) -> Receipt:
        """
        Paid issuance through the preboarding or general path.

        A non-empty `proof` selects the preboarding path. `phase` may be
        given to pick the path explicitly; a single-address allow-list has
        an empty proof, so its member must pass `phase="presale"`.
        """
        try:
            with self._lock:
                receipt = self._request_locked(caller, recipient, quantity, payment, proof, category, phase)
        except IssuanceError as e:
            self.audit.log(
                AuditEventType.ISSUANCE_REJECTED,
                actor=str(caller),
                action="request_issuance",
                outcome="rejected",
                details={"kind": e.kind.value, "reason": e.reason, "quantity": str(quantity)},
            )
            log.info("Issuance rejected", error_code=e.kind.value, reason=e.reason, caller=str(caller))
            raise

        self.audit.log(
            AuditEventType.ISSUED,
            actor=receipt.caller,
            action="request_issuance",
            outcome="success",
            details=receipt.to_dict(),
        )
        log.info(
            "Crew boarded",
            receipt_id=receipt.receipt_id,
            recipient=receipt.recipient,
            quantity=receipt.quantity,
            phase=receipt.phase.value if receipt.phase else None,
        )
        self._notify(receipt)
        return receipt

    def _request_locked(
        self,
        caller: str,
        recipient: str,
        quantity: int,
        payment: int,
        proof: Optional[Sequence[str]],
        category: Optional[Union[str, CrewCategory]],
        phase: Optional[Union[str, SalePhase]],
    ) -> Receipt:
        require_quantity(quantity)
        caller_addr = normalize_address(caller, "caller")
        recipient_addr = normalize_address(recipient, "recipient")
        category_name = CrewCategory.parse(category).value if category is not None else None
        Validators.validate_wei(payment, "payment").raise_if_invalid()

        sale_phase = self._resolve_phase(proof, phase)
        preboarding = sale_phase is SalePhase.PRESALE

        if preboarding:
            if not self._phases.preboarding_open:
                raise PhaseClosed()
            if not self._allow_list_root or not verify_proof(
                self._allow_list_root, leaf_hash(caller_addr), proof or []
            ):
                raise NotAllowListed(caller=caller_addr)
        elif not self._phases.general_open:
            raise PhaseClosed(GENERAL_CLOSED_REASON)

        required = self._pricing.required_payment(sale_phase, quantity)
        if payment < required:
            raise InsufficientPayment(required=required, paid=payment)

        token_ids = self._ledger.admit(
            recipient_addr, quantity, preboarding=preboarding, category=category_name,
        )
        self._balance += payment
        return self._build_receipt(
            ReceiptKind.MINT, caller_addr, recipient_addr, quantity,
            sale_phase, required, payment, token_ids, category_name,
        )

    def gift_issuance(
        self,
        caller: str,
        recipient: str,
        quantity: int,
        category: Optional[Union[str, CrewCategory]] = None,
    ) -> Receipt:
        """Owner-only free issuance. Skips phase and payment, not capacity."""
        with self._lock:
            owner = self._require_owner(caller, "gift_issuance")
            require_quantity(quantity)
            recipient_addr = normalize_address(recipient, "recipient")
            category_name = CrewCategory.parse(category).value if category is not None else None
            token_ids = self._ledger.admit(recipient_addr, quantity, category=category_name)
            receipt = self._build_receipt(
                ReceiptKind.GIFT, owner, recipient_addr, quantity,
                None, 0, 0, token_ids, category_name,
            )

        self.audit.log(
            AuditEventType.GIFTED,
            actor=owner,
            action="gift_issuance",
            outcome="success",
            details=receipt.to_dict(),
        )
        log.info("Crew gifted", receipt_id=receipt.receipt_id, recipient=recipient_addr, quantity=quantity)
        self._notify(receipt)
        return receipt

    # -------------------------------------------------------------------------
    # Funds
    # -------------------------------------------------------------------------

    def withdraw_funds(self, caller: str) -> int:
        """Move the whole balance to the withdrawal address; returns the amount."""
        with self._lock:
            owner = self._require_owner(caller, "withdraw_funds")
            amount = self._balance
            payout = Payout(
                payout_id=f"payout-{len(self._payouts) + 1:06d}",
                to=self._withdrawal,
                amount=amount,
                requested_by=owner,
                paid_at=_now(),
            )
            self._balance = 0
            self._payouts.append(payout)

        self.audit.log(
            AuditEventType.FUNDS_WITHDRAWN,
            actor=owner,
            action="withdraw_funds",
            outcome="success",
            details=payout.to_dict(),
        )
        log.info("Funds withdrawn", to=payout.to, amount=str(amount))
        return amount

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def _require_owner(self, caller: Any, action: str) -> str:
        caller_str = caller.strip().lower() if isinstance(caller, str) else ""
        if caller_str != self._owner:
            self.audit.log(
                AuditEventType.AUTHZ_DENIED,
                actor=str(caller),
                action=action,
                outcome="denied",
            )
            log.warning("Owner check failed", error_code="NOT_OWNER", caller=str(caller), action=action)
            raise NotOwner(caller=caller, action=action)
        return self._owner

    def _admin_event(
        self,
        event_type: AuditEventType,
        actor: str,
        action: str,
        old: Any,
        new: Any,
        **extra: Any,
    ) -> None:
        details = {"old": old, "new": new, **extra}
        self.audit.log(event_type, actor=actor, action=action, outcome="success", details=details)
        log.info("Setting changed", operation=action, old=old, new=new, **extra)

    def set_preboarding(self, caller: str, enabled: bool) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_preboarding")
            change = self._phases.set_preboarding(enabled, actor=owner)
        self._admin_event(AuditEventType.PHASE_CHANGED, owner, "set_preboarding", change.old, change.new)

    def set_general_boarding(self, caller: str, enabled: bool) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_general_boarding")
            change = self._phases.set_general_boarding(enabled, actor=owner)
        self._admin_event(AuditEventType.PHASE_CHANGED, owner, "set_general_boarding", change.old, change.new)

    def set_price(self, caller: str, phase: Union[str, SalePhase], price: int) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_price")
            sale_phase = SalePhase.parse(phase)
            old, new = self._pricing.set_price(sale_phase, price)
        self._admin_event(
            AuditEventType.PRICE_CHANGED, owner, "set_price", str(old), str(new), phase=sale_phase.value,
        )

    def set_per_wallet_limit(self, caller: str, limit: int) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_per_wallet_limit")
            old, new = self._ledger.set_per_wallet_limit(limit)
        self._admin_event(AuditEventType.LIMIT_CHANGED, owner, "set_per_wallet_limit", old, new)

    def set_withdrawal_address(self, caller: str, address: str) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_withdrawal_address")
            new = normalize_address(address, "withdrawal_address")
            old, self._withdrawal = self._withdrawal, new
        self._admin_event(
            AuditEventType.WITHDRAWAL_ADDRESS_CHANGED, owner, "set_withdrawal_address", old, new,
        )

    def set_base_uri(self, caller: str, uri: str) -> None:
        with self._lock:
            owner = self._require_owner(caller, "set_base_uri")
            new = self._clean_uri(uri)
            old, self._base_uri = self._base_uri, new
        self._admin_event(AuditEventType.BASE_URI_CHANGED, owner, "set_base_uri", old, new)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self._lock:
            owner = self._require_owner(caller, "transfer_ownership")
            new = normalize_address(new_owner, "new_owner")
            self._owner = new
        self._admin_event(AuditEventType.OWNERSHIP_TRANSFERRED, owner, "transfer_ownership", owner, new)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Full engine state. Wei amounts are decimal strings."""
        with self._lock:
            ledger = self._ledger.to_dict()
            return {
                "version": STATE_VERSION,
                "revision": self.revision,
                "owner": self._owner,
                "withdrawal_address": self._withdrawal,
                "treasury": self._royalty.recipient,
                "base_uri": self._base_uri,
                "allow_list_root": self._allow_list_root,
                "royalty_bps": self._royalty.rate_bps,
                "phases": self._phases.to_dict(),
                "prices": {k: str(v) for k, v in self._pricing.to_dict().items()},
                "balance": str(self._balance),
                "receipts_issued": self._receipt_seq,
                "ledger": ledger,
                "payouts": [p.to_dict() for p in self._payouts],
            }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], audit: Optional[AuditLog] = None) -> "IssuanceEngine":
        ledger_data = data["ledger"]
        prices = data["prices"]
        engine = cls(
            owner=data["owner"],
            max_total_issued=int(ledger_data["max_total_issued"]),
            max_per_wallet=int(ledger_data["max_per_wallet"]),
            allow_list_root=data.get("allow_list_root"),
            base_uri=data.get("base_uri", ""),
            max_preboarding_issued=int(ledger_data["max_preboarding_issued"]),
            presale_price=int(prices["presale"]),
            general_price=int(prices["general"]),
            royalty_bps=int(data["royalty_bps"]),
            treasury=data.get("treasury"),
            withdrawal_address=data.get("withdrawal_address"),
            audit=audit,
        )
        engine._ledger = IssuanceLedger.from_dict(ledger_data)
        engine._phases = SalePhaseController.from_dict(data.get("phases") or {})
        engine._balance = int(data.get("balance", "0"))
        engine._receipt_seq = int(data.get("receipts_issued", 0))
        engine.revision = int(data.get("revision", 0))
        engine._payouts = [Payout.from_dict(p) for p in data.get("payouts") or []]
        return engine
