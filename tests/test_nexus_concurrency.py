"""
Concurrent issuance tests.

Many threads race for the last spots; the engine must never issue past the
total capacity or past a wallet's limit.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from tools.nexus.engine import IssuanceEngine
from tools.nexus.errors import IssuanceError, TotalSupplyExceeded, WalletLimitExceeded


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


OWNER = addr(0x0E)
PRICE = 90_000_000_000_000_000


def _open_engine(max_total: int, per_wallet: int) -> IssuanceEngine:
    engine = IssuanceEngine(OWNER, max_total_issued=max_total, max_per_wallet=per_wallet)
    engine.set_general_boarding(OWNER, True)
    return engine


def _attempt(engine: IssuanceEngine, buyer: str, qty: int):
    try:
        return engine.request_issuance(buyer, buyer, qty, qty * PRICE)
    except IssuanceError as e:
        return e


class TestConcurrentIssuance:

    def test_total_capacity_never_overshoots(self):
        engine = _open_engine(max_total=50, per_wallet=5)
        buyers = [addr(1000 + i) for i in range(40)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda b: _attempt(engine, b, 2), buyers))

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 25
        assert all(isinstance(f, TotalSupplyExceeded) for f in failures)
        assert engine.total_issued == 50
        assert engine.balance == 50 * PRICE

        issued = sorted(t for r in successes for t in r.token_ids)
        assert issued == list(range(1, 51))

    def test_wallet_limit_never_overshoots(self):
        engine = _open_engine(max_total=1000, per_wallet=3)
        buyer = addr(0xB)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: _attempt(engine, buyer, 1), range(20)))

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 3
        assert all(
            isinstance(r, WalletLimitExceeded) for r in results if isinstance(r, Exception)
        )
        assert engine.issued_count(buyer) == 3

    @pytest.mark.slow
    def test_mixed_gifts_and_mints(self):
        engine = _open_engine(max_total=200, per_wallet=200)

        def work(i):
            buyer = addr(5000 + i)
            if i % 3 == 0:
                try:
                    return engine.gift_issuance(OWNER, buyer, 1)
                except IssuanceError as e:
                    return e
            return _attempt(engine, buyer, 1)

        with ThreadPoolExecutor(max_workers=32) as pool:
            list(pool.map(work, range(400)))

        assert engine.total_issued == 200
        assert engine.audit.verify_chain() == (True, None)
