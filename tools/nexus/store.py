"""
NEXUS State Persistence

Engine state survives process restarts as a single canonical JSON document,
validated against `schemas/engine-state.schema.json` on both save and load.
Wei amounts are stored as decimal strings so no reader ever sees a float.

Writes are atomic: the document is written to a sibling temp file, fsynced
and then moved over the target with `os.replace`. Each save bumps a `revision`
counter, and a save from an engine loaded at an older revision is refused.

Audit events are appended to a JSON lines file by `JsonlAuditSink`.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from tools.nexus.engine import IssuanceEngine
from tools.nexus.errors import IssuanceError, StateError, ValidationError
from tools.nexus.hardening import canonical_json_bytes, sha256_hex
from tools.nexus.observability import AuditEvent, AuditLog, NexusLayer, get_logger

log = get_logger("store", NexusLayer.STORE)

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
STATE_SCHEMA = "engine-state.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of every NEXUS schema, keyed by `$id`, for `$ref` resolution."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema_id = schema.get("$id") or f"https://schemas.momentum.inc/nexus/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=4)
def schema_validator(name: str = STATE_SCHEMA) -> Draft202012Validator:
    schema = json.loads((SCHEMAS_DIR / name).read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_state(doc: Any) -> List[str]:
    """Return schema errors for an engine state document (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in schema_validator().iter_errors(doc)
    ]


# =============================================================================
# STATE STORES
# =============================================================================

class StateStore:
    """
    Interface for engine state persistence.

    Every save bumps the document's `revision`. A save whose engine was
    loaded at an older revision than the stored one raises `StateError`
    instead of overwriting the newer state.
    """

    def load(self, audit: Optional[AuditLog] = None) -> Optional[IssuanceEngine]:
        raise NotImplementedError

    def save(self, engine: IssuanceEngine, overwrite: bool = False) -> str:
        raise NotImplementedError

    def exists(self) -> bool:
        raise NotImplementedError


def _next_revision(engine: IssuanceEngine, stored: Optional[int], overwrite: bool, where: str) -> int:
    if stored is None:
        return engine.revision + 1
    if overwrite:
        return max(stored, engine.revision) + 1
    if stored != engine.revision:
        raise StateError(
            f"{where} changed since it was loaded (revision {engine.revision}, now {stored}); "
            f"reload and retry"
        )
    return stored + 1


class MemoryStateStore(StateStore):
    """Keeps the last saved snapshot in memory. Used by tests and dry runs."""

    def __init__(self):
        self._doc: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    def load(self, audit: Optional[AuditLog] = None) -> Optional[IssuanceEngine]:
        with self._lock:
            doc = json.loads(json.dumps(self._doc)) if self._doc is not None else None
        return IssuanceEngine.from_snapshot(doc, audit=audit) if doc is not None else None

    def save(self, engine: IssuanceEngine, overwrite: bool = False) -> str:
        doc = engine.snapshot()
        with self._lock:
            stored = self._doc.get("revision", 0) if self._doc is not None else None
            doc["revision"] = _next_revision(engine, stored, overwrite, "Stored state")
            errors = validate_state(doc)
            if errors:
                raise StateError("; ".join(errors))
            self._doc = doc
            engine.revision = doc["revision"]
        return sha256_hex(canonical_json_bytes(doc))

    def exists(self) -> bool:
        with self._lock:
            return self._doc is not None


class JsonFileStore(StateStore):
    """
    Engine state in one JSON file.

    `locked()` takes an exclusive `flock` on a sibling `<state>.lock` file;
    hold it across load, change and save so commands from separate processes
    apply one after another. `save` takes the same lock around its revision
    check and write.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive cross-process lock on the state file. Re-entrant per store."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path, "a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def read_document(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state file {self.path}: {e}") from e

        errors = validate_state(doc)
        if errors:
            raise StateError(f"Invalid state file {self.path}: " + "; ".join(errors))
        return doc

    def load(self, audit: Optional[AuditLog] = None) -> Optional[IssuanceEngine]:
        doc = self.read_document()
        if doc is None:
            return None
        try:
            engine = IssuanceEngine.from_snapshot(doc, audit=audit)
        except (IssuanceError, ValidationError, KeyError, ValueError) as e:
            raise StateError(f"Inconsistent state file {self.path}: {e}") from e
        log.debug("State loaded", path=str(self.path), total_issued=engine.total_issued)
        return engine

    def save(self, engine: IssuanceEngine, overwrite: bool = False) -> str:
        """
        Write the engine snapshot atomically; returns its SHA-256 digest.

        Raises `StateError` if the file moved past the revision the engine
        was loaded at, unless `overwrite` is set.
        """
        doc = engine.snapshot()
        with self.locked():
            try:
                current = self.read_document()
            except StateError:
                if not overwrite:
                    raise
                current = None
            stored = current.get("revision", 0) if current is not None else None
            doc["revision"] = _next_revision(engine, stored, overwrite, f"State file {self.path}")

            errors = validate_state(doc)
            if errors:
                raise StateError("Refusing to save invalid state: " + "; ".join(errors))

            canonical = canonical_json_bytes(doc)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(canonical + b"\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            engine.revision = doc["revision"]

        digest = sha256_hex(canonical)
        log.debug("State saved", path=str(self.path), revision=doc["revision"], digest=digest)
        return digest


# =============================================================================
# AUDIT SINK
# =============================================================================

class JsonlAuditSink:
    """Appends audit events to a JSON lines file, one event per line."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def __call__(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_events(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        out: List[Dict[str, Any]] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError as e:
                    raise StateError(f"{self.path}:{n}: invalid audit line: {e}") from e
        return out

    def load_log(self) -> AuditLog:
        """Rebuild an `AuditLog` from the file so new events continue the chain."""
        return AuditLog.from_export(self.read_events())
