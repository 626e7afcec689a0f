"""
NEXUS Validation and Hardening Utilities

Input validation, canonical hashing, and thread-safety primitives shared by
every NEXUS layer.

Security Model:
    - All inputs are untrusted until validated
    - Addresses are normalized once, at the boundary, and compared lowercased
    - Digest comparisons use constant-time comparisons
    - Monetary amounts are integers in wei; ether strings are converted exactly

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Union

from tools.nexus.errors import (
    InvalidQuantity,
    InvalidRecipient,
    ValidationError,
)


ZERO_ADDRESS = "0x" + "0" * 40
WEI_PER_ETHER = 10 ** 18


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first ValidationError if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')

    MAX_URI_LENGTH = 2048

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate an Ethereum-style address (0x + 40 hex)."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        lower = value.strip().lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be valid address (0x + 40 hex)", value)
            ])
        if lower == ZERO_ADDRESS:
            return ValidationResult.failure([
                ValidationError(field_name, "Zero address is not allowed", value)
            ])
        return ValidationResult.success(lower)

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars, optional 0x prefix)."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])
        lower = value.strip().lower()
        if lower.startswith("0x"):
            lower = lower[2:]
        if not cls.HEX64_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 lowercase hex characters", value)
            ])
        return ValidationResult.success(lower)

    @classmethod
    def validate_wei(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        """Validate a non-negative integer amount in wei."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected int, got {type(value).__name__}", value)
            ])
        if value < 0:
            return ValidationResult.failure([
                ValidationError(field_name, "Must be non-negative", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_count(cls, value: Any, field_name: str, minimum: int = 0) -> ValidationResult:
        """Validate an integer count with a lower bound."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected int, got {type(value).__name__}", value)
            ])
        if value < minimum:
            return ValidationResult.failure([
                ValidationError(field_name, f"Below minimum ({minimum})", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_uri(cls, value: Any, field_name: str = "base_uri") -> ValidationResult:
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])
        sanitized = value.strip().replace('\x00', '')
        if len(sanitized) > cls.MAX_URI_LENGTH:
            return ValidationResult.failure([
                ValidationError(field_name, f"Too long (max {cls.MAX_URI_LENGTH} chars)", value)
            ])
        return ValidationResult.success(sanitized)


def normalize_address(value: Any, field_name: str = "address") -> str:
    """Return the lowercased address or raise InvalidRecipient."""
    result = Validators.validate_address(value, field_name)
    if not result.is_valid:
        raise InvalidRecipient(field=field_name, value=value)
    return result.sanitized_value


def require_quantity(quantity: Any) -> int:
    result = Validators.validate_count(quantity, "quantity", minimum=1)
    if not result.is_valid:
        raise InvalidQuantity(quantity=quantity)
    return quantity


# =============================================================================
# CLI VALUE PARSING
# =============================================================================

_TRUE_WORDS = {"true", "1", "yes", "y", "on"}
_FALSE_WORDS = {"false", "0", "no", "n", "off"}


def parse_bool(value: Union[str, bool]) -> bool:
    """Parse a boolean flag strictly; "false" is False."""
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValidationError("enabled", "Expected true/false", value)


def parse_amount(value: Union[str, int], unit: str = "auto") -> int:
    """
    Parse an amount into wei.

    ``unit="ether"`` always treats the value as ether, ``unit="wei"`` as wei,
    and ``unit="auto"`` treats values with a decimal point as ether.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        amount = Decimal(value)
        text = str(value)
    else:
        text = str(value).strip()
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise ValidationError("amount", "Invalid decimal value", value) from None

    if not amount.is_finite() or amount < 0:
        raise ValidationError("amount", "Must be a finite non-negative number", value)

    as_ether = unit == "ether" or (unit == "auto" and "." in text)
    wei = amount * WEI_PER_ETHER if as_ether else amount
    if wei != wei.to_integral_value():
        raise ValidationError("amount", "Amount has more precision than 1 wei", value)
    return int(wei)


def format_ether(wei: int) -> str:
    """Format wei as a trimmed ether decimal string (70000000000000000 -> "0.07")."""
    quantized = Decimal(wei) / Decimal(WEI_PER_ETHER)
    text = format(quantized.normalize(), "f")
    return text


# =============================================================================
# CANONICAL HASHING
# =============================================================================

def _coerce_json_types(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _coerce_json_types(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(v) for v in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, float):
        raise ValueError("floats are not allowed in canonical JSON; use strings")
    if isinstance(obj, Enum):
        return obj.value
    return obj


def canonical_json_bytes(obj: Any) -> bytes:
    """Canonical JSON: sorted keys, no whitespace, UTF-8, no floats."""
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        with self._lock:
            self._value = value
