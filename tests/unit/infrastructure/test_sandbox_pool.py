import threading
import time
from unittest.mock import MagicMock

import pytest

from fakes import FakeFactory
from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.errors import InstantiationError, RunCancelled, SandboxTrap, UnknownRuleError
from sandlint.infrastructure.sandbox.pool import SandboxPool


def _factory() -> FakeFactory:
    return FakeFactory(lambda name, payload, timeout: b"")


class TestSandboxPool:
    def test_creates_lazily_and_reuses(self) -> None:
        factory = _factory()
        with SandboxPool({"r": factory}, 2) as pool:
            assert factory.created == []
            first = pool.acquire("r")
            pool.release(first)
            second = pool.acquire("r")
            assert second.instance is first.instance
            pool.release(second)
            assert pool.stats("r").created == 1

    def test_unknown_rule(self) -> None:
        with SandboxPool({}, 1) as pool, pytest.raises(UnknownRuleError):
            pool.acquire("missing")

    def test_rejects_non_positive_bound(self) -> None:
        with pytest.raises(ValueError):
            SandboxPool({"r": _factory()}, 0)

    def test_acquire_blocks_at_bound(self) -> None:
        factory = _factory()
        pool = SandboxPool({"r": factory}, 1, poll_interval=0.01)
        held = pool.acquire("r")
        acquired = threading.Event()

        def waiter() -> None:
            handle = pool.acquire("r")
            acquired.set()
            pool.release(handle)

        thread = threading.Thread(target=waiter)
        thread.start()
        assert not acquired.wait(0.1)
        pool.release(held)
        assert acquired.wait(2.0)
        thread.join()
        assert len(factory.created) == 1
        pool.close()

    def test_bound_holds_under_contention(self) -> None:
        factory = _factory()
        pool = SandboxPool({"r": factory}, 3, poll_interval=0.01)
        lock = threading.Lock()
        in_use = 0
        peak = 0

        def worker() -> None:
            nonlocal in_use, peak
            for _ in range(20):
                with pool.lease("r"):
                    with lock:
                        in_use += 1
                        peak = max(peak, in_use)
                    time.sleep(0.001)
                    with lock:
                        in_use -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert peak <= 3
        assert len(factory.created) <= 3
        pool.close()

    def test_faulted_instance_is_discarded(self) -> None:
        factory = _factory()
        with SandboxPool({"r": factory}, 1) as pool:
            with pytest.raises(SandboxTrap):
                with pool.lease("r"):
                    raise SandboxTrap("unreachable")
            assert factory.created[0].closed
            with pool.lease("r") as handle:
                assert handle.instance is factory.created[1]
            assert pool.stats("r").discarded == 1

    def test_double_release_is_an_error(self) -> None:
        with SandboxPool({"r": _factory()}, 1) as pool:
            handle = pool.acquire("r")
            pool.release(handle)
            with pytest.raises(ValueError, match="not leased"):
                pool.release(handle)

    def test_evict_closes_idle_and_retires_leased(self) -> None:
        factory = _factory()
        with SandboxPool({"r": factory}, 2) as pool:
            idle = pool.acquire("r")
            leased = pool.acquire("r")
            pool.release(idle)
            pool.evict("r")
            assert idle.instance.closed
            assert not leased.instance.closed
            pool.release(leased)
            assert leased.instance.closed
            assert pool.stats("r").idle == 0

    def test_cancel_while_waiting(self) -> None:
        pool = SandboxPool({"r": _factory()}, 1, poll_interval=0.01)
        held = pool.acquire("r")
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("stop",)).start()
        with pytest.raises(RunCancelled, match="stop"):
            pool.acquire("r", token)
        pool.release(held)
        pool.close()

    def test_failed_creation_frees_the_slot(self) -> None:
        factory = MagicMock()
        factory.create.side_effect = [InstantiationError("boom"), MagicMock()]
        with SandboxPool({"r": factory}, 1) as pool:
            with pytest.raises(InstantiationError):
                pool.acquire("r")
            handle = pool.acquire("r")
            pool.release(handle)

    def test_interrupt_in_flight(self) -> None:
        factory = _factory()
        with SandboxPool({"r": factory, "s": _factory()}, 2) as pool:
            a = pool.acquire("r")
            b = pool.acquire("s")
            assert pool.interrupt_in_flight() == 2
            assert a.instance.interrupted.is_set()
            assert b.instance.interrupted.is_set()
            pool.release(a)
            pool.release(b)

    def test_close_refuses_new_leases(self) -> None:
        pool = SandboxPool({"r": _factory()}, 1)
        pool.close()
        with pytest.raises(RunCancelled, match="closed"):
            pool.acquire("r")
