"""
State persistence tests: JSON file store, schema validation, atomic writes
and the JSON lines audit sink.
"""

import json
import threading

import pytest

from tools.nexus.engine import IssuanceEngine
from tools.nexus.errors import StateError
from tools.nexus.observability import AuditEventType
from tools.nexus.store import (
    JsonFileStore,
    JsonlAuditSink,
    MemoryStateStore,
    validate_state,
)


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


OWNER = addr(0x0A)
BUYER = addr(0xB1)
PRICE = 90_000_000_000_000_000


@pytest.fixture
def engine():
    e = IssuanceEngine(OWNER, max_total_issued=100, max_per_wallet=3, base_uri="ipfs://xyz/")
    e.set_general_boarding(OWNER, True)
    e.request_issuance(BUYER, BUYER, 2, 2 * PRICE, category="journalist")
    return e


class TestSchema:

    def test_snapshot_is_valid(self, engine):
        assert validate_state(engine.snapshot()) == []

    def test_float_amount_is_invalid(self, engine):
        doc = engine.snapshot()
        doc["balance"] = 0.18
        assert validate_state(doc)

    def test_unknown_field_is_invalid(self, engine):
        doc = engine.snapshot()
        doc["surprise"] = True
        assert validate_state(doc)


class TestJsonFileStore:

    def test_missing_file_loads_none(self, tmp_path):
        store = JsonFileStore(tmp_path / "state.json")
        assert not store.exists()
        assert store.load() is None

    def test_round_trip(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "state.json")
        digest = store.save(engine)
        assert len(digest) == 64

        restored = store.load()
        assert restored.snapshot() == engine.snapshot()
        assert restored.issued_count(BUYER) == 2
        assert restored.token_uri(2) == "ipfs://xyz/2.json"

    def test_wei_stored_as_strings(self, tmp_path, engine):
        path = tmp_path / "state.json"
        JsonFileStore(path).save(engine)
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert doc["balance"] == str(2 * PRICE)
        assert doc["prices"]["general"] == str(PRICE)

    def test_save_is_canonical(self, tmp_path, engine):
        a, b = tmp_path / "a.json", tmp_path / "b.json"
        copy = IssuanceEngine.from_snapshot(engine.snapshot())
        JsonFileStore(a).save(engine)
        JsonFileStore(b).save(copy)
        assert a.read_bytes() == b.read_bytes()

    def test_no_temp_files_left(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "state.json")
        store.save(engine)
        store.save(engine)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json", "state.json.lock"]

    def test_invalid_document_rejected(self, tmp_path, engine):
        path = tmp_path / "state.json"
        doc = engine.snapshot()
        doc["ledger"]["total_issued"] = -4
        path.write_text(json.dumps(doc), encoding="utf-8")
        with pytest.raises(StateError):
            JsonFileStore(path).load()

    def test_corrupt_json_rejected(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateError):
            JsonFileStore(path).load()

    def test_creates_parent_directories(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "nested" / "dir" / "state.json")
        store.save(engine)
        assert store.exists()


class TestRevisions:

    def test_each_save_bumps_revision(self, tmp_path, engine):
        path = tmp_path / "state.json"
        store = JsonFileStore(path)
        store.save(engine)
        store.save(engine)
        assert engine.revision == 2
        assert json.loads(path.read_text(encoding="utf-8"))["revision"] == 2
        assert store.load().revision == 2

    def test_stale_save_does_not_drop_issuance(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "state.json")
        store.save(engine)
        alice, bob = addr(0xA1), addr(0xB0B)

        first = store.load()
        second = store.load()
        first.request_issuance(alice, alice, 1, PRICE)
        store.save(first)

        second.request_issuance(bob, bob, 1, PRICE)
        with pytest.raises(StateError, match="changed since it was loaded"):
            store.save(second)

        current = store.load()
        assert current.total_issued == 3
        assert current.issued_count(alice) == 1
        assert current.issued_count(bob) == 0

        current.request_issuance(bob, bob, 1, PRICE)
        store.save(current)
        final = store.load()
        assert final.total_issued == 4
        assert final.issued_count(bob) == 1
        assert final.balance == 4 * PRICE

    def test_overwrite_replaces_newer_state(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "state.json")
        store.save(engine)
        store.save(engine)
        fresh = IssuanceEngine(OWNER, max_total_issued=5, max_per_wallet=1)
        with pytest.raises(StateError):
            store.save(fresh)
        store.save(fresh, overwrite=True)
        assert fresh.revision == 3
        assert store.load().max_total_issued == 5

    def test_overwrite_replaces_corrupt_file(self, tmp_path, engine):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonFileStore(path)
        with pytest.raises(StateError):
            store.save(engine)
        store.save(engine, overwrite=True)
        assert store.load().total_issued == 2

    def test_memory_store_rejects_stale_save(self, engine):
        store = MemoryStateStore()
        store.save(engine)
        first, second = store.load(), store.load()
        first.gift_issuance(OWNER, BUYER, 1)
        store.save(first)
        with pytest.raises(StateError):
            store.save(second)
        assert store.load().total_issued == 3

    def test_locked_serializes_separate_stores(self, tmp_path, engine):
        path = tmp_path / "state.json"
        JsonFileStore(path).save(engine)
        buyers = [addr(0x100 + i) for i in range(8)]
        errors = []

        def board(buyer):
            store = JsonFileStore(path)
            try:
                with store.locked():
                    current = store.load()
                    current.request_issuance(buyer, buyer, 1, PRICE)
                    store.save(current)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=board, args=(b,)) for b in buyers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        final = JsonFileStore(path).load()
        assert final.total_issued == 2 + len(buyers)
        assert all(final.issued_count(b) == 1 for b in buyers)
        assert final.revision == 1 + len(buyers)

    def test_locked_is_reentrant(self, tmp_path, engine):
        store = JsonFileStore(tmp_path / "state.json")
        with store.locked():
            with store.locked():
                store.save(engine)
        assert store.lock_path.exists()
        assert store.load().revision == 1


class TestMemoryStateStore:

    def test_round_trip(self, engine):
        store = MemoryStateStore()
        assert store.load() is None
        store.save(engine)
        assert store.exists()
        assert store.load().snapshot() == engine.snapshot()

    def test_loaded_copy_is_independent(self, engine):
        store = MemoryStateStore()
        store.save(engine)
        first = store.load()
        first.gift_issuance(OWNER, BUYER, 1)
        assert store.load().total_issued == 2


class TestJsonlAuditSink:

    def test_events_are_appended(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit.jsonl")
        engine = IssuanceEngine(OWNER, max_total_issued=10, max_per_wallet=3)
        engine.audit.add_sink(sink)
        engine.gift_issuance(OWNER, BUYER, 1)
        engine.set_base_uri(OWNER, "ipfs://abc/")

        events = sink.read_events()
        assert [e["event_type"] for e in events] == ["gifted", "base_uri_changed"]

    def test_chain_continues_across_reloads(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        store = JsonFileStore(tmp_path / "state.json")

        sink = JsonlAuditSink(path)
        audit = sink.load_log()
        audit.add_sink(sink)
        engine = IssuanceEngine(OWNER, max_total_issued=10, max_per_wallet=3, audit=audit)
        engine.gift_issuance(OWNER, BUYER, 1)
        store.save(engine)

        sink = JsonlAuditSink(path)
        audit = sink.load_log()
        audit.add_sink(sink)
        engine = store.load(audit=audit)
        engine.withdraw_funds(OWNER)

        reloaded = JsonlAuditSink(path).load_log()
        assert len(reloaded) == 2
        assert reloaded.verify_chain() == (True, None)
        ids = [e.event_id for e in reloaded.get_events()]
        assert ids == ["evt-000000000001", "evt-000000000002"]
        assert reloaded.get_events()[1].event_type is AuditEventType.FUNDS_WITHDRAWN

    def test_bad_line_rejected(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        path.write_text("{}\nnot json\n", encoding="utf-8")
        with pytest.raises(StateError):
            JsonlAuditSink(path).read_events()
