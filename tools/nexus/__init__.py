"""
NEXUS: Crew Boarding Issuance Engine

Runs a two-phase crew sale: an allow-listed preboarding window at the
presale price, then general boarding at the general price, with fixed total,
founding-crew and per-wallet capacities.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          CREW BOARDING ENGINE                           │
    │                                                                          │
    │  SURFACE                                                                 │
    │    cli.py           `nexus` admin commands over a state file            │
    │    signer.py        Ed25519 operator keys, caller attribution           │
    │    store.py         Atomic, schema-validated state file, audit JSONL    │
    │                                                                          │
    │  ENGINE                                                                  │
    │    engine.py        Request ordering, owner gate, receipts, funds       │
    │                                                                          │
    │  POLICY                                                                  │
    │    allowlist.py     SHA-256 sorted-pair Merkle allow-list               │
    │    ledger.py        Total / founding crew / per-wallet capacity         │
    │    pricing.py       Per-phase unit prices in wei                        │
    │    phases.py        Preboarding and general boarding flags             │
    │    royalty.py       Fixed-rate secondary-sale royalty                   │
    │                                                                          │
    │  SUPPORT                                                                 │
    │    config.py        YAML + NEXUS_* environment configuration            │
    │    observability.py Structured logs, hash-chained audit log             │
    │    hardening.py     Validation, canonical hashing, amounts             │
    │    errors.py        Rejection taxonomy                                  │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright © 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):

    # Engine exports
    if name in ("IssuanceEngine", "Receipt", "ReceiptKind", "Payout", "CrewCategory",
                "derive_treasury_address"):
        from tools.nexus import engine
        return getattr(engine, name)

    # Allow-list exports
    if name in ("AllowListTree", "leaf_hash", "node_hash", "verify_proof", "load_addresses"):
        from tools.nexus import allowlist
        return getattr(allowlist, name)

    # Policy exports
    if name in ("IssuanceLedger", "TokenRecord"):
        from tools.nexus import ledger
        return getattr(ledger, name)
    if name in ("PricingPolicy", "SalePhase"):
        from tools.nexus import pricing
        return getattr(pricing, name)
    if name in ("SalePhaseController", "BoardingStatus", "PhaseChange"):
        from tools.nexus import phases
        return getattr(phases, name)
    if name in ("RoyaltyCalculator",):
        from tools.nexus import royalty
        return getattr(royalty, name)

    # Error exports
    if name in ("ErrorKind", "IssuanceError", "NotOwner", "PhaseClosed", "NotAllowListed",
                "InsufficientPayment", "TotalSupplyExceeded", "FoundingCrewFull",
                "WalletLimitExceeded", "UnknownCategory", "InvalidRecipient",
                "InvalidQuantity", "NonexistentToken", "StateError", "SignatureInvalid"):
        from tools.nexus import errors
        return getattr(errors, name)

    # Persistence exports
    if name in ("StateStore", "JsonFileStore", "MemoryStateStore", "JsonlAuditSink"):
        from tools.nexus import store
        return getattr(store, name)

    # Signing exports
    if name in ("CommandSigner", "CallerAuthenticator", "SignedCommand",
                "address_from_public_key", "generate_ed25519_jwk"):
        from tools.nexus import signer
        return getattr(signer, name)

    raise AttributeError(f"module 'nexus' has no attribute '{name}'")


__all__ = [
    # Version info
    "__version__",
    # Engine
    "IssuanceEngine", "Receipt", "ReceiptKind", "Payout", "CrewCategory",
    # Allow-list
    "AllowListTree", "leaf_hash", "verify_proof",
    # Policy
    "IssuanceLedger", "PricingPolicy", "SalePhase", "SalePhaseController",
    "BoardingStatus", "RoyaltyCalculator",
    # Errors
    "IssuanceError", "ErrorKind",
    # Persistence
    "JsonFileStore", "JsonlAuditSink",
    # Signing
    "CommandSigner", "CallerAuthenticator",
]
