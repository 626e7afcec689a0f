"""
NEXUS Observability

Structured logging and a tamper-evident audit trail for the boarding engine.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Engine / CLI Code                     │
    │  log.info("msg", recipient=x)   audit.log(event_type...)│
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │               NexusLogger / AuditLog                     │
    │  correlation IDs, layer tags, hash-chained audit events │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                     Handlers / Sinks                     │
    │  StructuredHandler (JSON) │ text │ JSONL audit sink      │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from tools.nexus.hardening import AtomicCounter, canonical_json_bytes, sha256_hex

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class NexusLayer(Enum):
    """NEXUS components, used to tag log events."""
    ALLOWLIST = "allowlist"
    LEDGER = "ledger"
    PRICING = "pricing"
    PHASES = "phases"
    ROYALTY = "royalty"
    ENGINE = "engine"
    STORE = "store"
    SIGNER = "signer"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON lines."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install a single handler on the root `nexus` logger."""
    root = logging.getLogger("nexus")
    for h in list(root.handlers):
        root.removeHandler(h)
    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    root.propagate = False


class NexusLogger:
    """
    Structured logger for NEXUS components.

    Includes the correlation ID and layer in every event. Handlers are
    installed once on the `nexus` logger by `configure_logging`.
    """

    def __init__(self, name: str, layer: NexusLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"nexus.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: NexusLayer) -> NexusLogger:
    return NexusLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: NexusLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper
    return decorator


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditEventType(Enum):
    """Types of audit events."""
    DEPLOYED = "deployed"
    ISSUED = "issued"
    GIFTED = "gifted"
    ISSUANCE_REJECTED = "issuance_rejected"
    PHASE_CHANGED = "phase_changed"
    PRICE_CHANGED = "price_changed"
    LIMIT_CHANGED = "limit_changed"
    WITHDRAWAL_ADDRESS_CHANGED = "withdrawal_address_changed"
    BASE_URI_CHANGED = "base_uri_changed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    FUNDS_WITHDRAWN = "funds_withdrawn"
    AUTHZ_DENIED = "authz_denied"


@dataclass
class AuditEvent:
    """An audit log entry, chained to its predecessor by digest."""
    event_id: str
    event_type: AuditEventType
    timestamp: str
    actor: str
    action: str
    outcome: str  # success, denied, rejected
    details: Dict[str, Any]
    correlation_id: str = ""
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self._compute_digest()

    def _compute_digest(self) -> str:
        content = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "outcome": self.outcome,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
        }
        return sha256_hex(canonical_json_bytes(content))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "outcome": self.outcome,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "previous_event_digest": self.previous_event_digest,
            "event_digest": self.event_digest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=data["event_id"],
            event_type=AuditEventType(data["event_type"]),
            timestamp=data["timestamp"],
            actor=data["actor"],
            action=data["action"],
            outcome=data["outcome"],
            details=dict(data.get("details") or {}),
            correlation_id=data.get("correlation_id") or "",
            previous_event_digest=data.get("previous_event_digest"),
            event_digest=data.get("event_digest") or "",
        )


class AuditLog:
    """
    Tamper-evident audit log.

    Each event carries the digest of the previous one, so editing or dropping
    an event breaks `verify_chain`. Sinks receive every event after it is
    appended.
    """

    def __init__(self, sinks: Optional[List[Callable[[AuditEvent], None]]] = None):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()
        self._counter = AtomicCounter(0)
        self._sinks: List[Callable[[AuditEvent], None]] = list(sinks or [])

    def add_sink(self, sink: Callable[[AuditEvent], None]) -> None:
        self._sinks.append(sink)

    def log(
        self,
        event_type: AuditEventType,
        actor: str,
        action: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        with self._lock:
            num = self._counter.increment()
            previous = self._events[-1].event_digest if self._events else None
            event = AuditEvent(
                event_id=f"evt-{num:012d}",
                event_type=event_type,
                timestamp=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                action=action,
                outcome=outcome,
                details=details or {},
                correlation_id=correlation_id_var.get(),
                previous_event_digest=previous,
            )
            self._events.append(event)
            sinks = list(self._sinks)

        for sink in sinks:
            sink(event)
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """Returns (valid, first_invalid_index)."""
        with self._lock:
            for i, event in enumerate(self._events):
                if event._compute_digest() != event.event_digest:
                    return (False, i)
                if i > 0 and event.previous_event_digest != self._events[i - 1].event_digest:
                    return (False, i)
            return (True, None)

    def get_events(
        self,
        actor: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        if actor:
            events = [e for e in events if e.actor == actor]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._events]

    @classmethod
    def from_export(cls, events: List[Dict[str, Any]]) -> "AuditLog":
        log = cls()
        log._events = [AuditEvent.from_dict(e) for e in events]
        log._counter.reset(len(log._events))
        return log
