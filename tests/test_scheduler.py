import asyncio
import threading
import time

import pytest

from payment_ui.deep_link import DeepLinker
from payment_ui.engine import PaymentEngine
from payment_ui.scheduler import AsyncioScheduler, BackgroundLoop, VirtualScheduler
from tests.conftest import FixedRandom


class HungGateway:
    """Gateway client whose calls block until ``release`` is set."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = []
        self._lock = threading.Lock()

    def _hang(self, name, *args):
        with self._lock:
            self.calls.append((name, args))
        self.release.wait(10)

    def create_transaction(self, amount):
        self._hang("create_transaction", amount)
        return "TXN1700000000000F00D"

    def complete_transaction(self, txn_ref, status):
        self._hang("complete_transaction", txn_ref, status)

    def log_intent(self, **entry):
        self._hang("log_intent", entry["txn_ref"])

    def names(self):
        with self._lock:
            return {name for name, _ in self.calls}


@pytest.fixture
def background_loop():
    loop = BackgroundLoop(name="test-engine").start()
    yield loop
    loop.stop()


def _engine(loop, value, emitted, done=None, **kwargs):
    def emit(txn):
        emitted.append(txn)
        if done is not None:
            done.set()

    return loop.call(PaymentEngine, loop.scheduler, random_source=FixedRandom(value), on_transaction=emit, **kwargs)


class TestBackgroundLoopPayments:
    def test_full_payment_emits_once(self, background_loop):
        emitted, done = [], threading.Event()
        engine = _engine(background_loop, 1.0, emitted, done)
        background_loop.call(engine.start_payment, "gpay", "Google Pay", "150", "Swiggy")

        assert done.wait(6)
        time.sleep(1.5)
        assert [t.status for t in emitted] == ["Completed"]
        assert background_loop.call(lambda: engine.attempt) is None

    def test_cancel_mid_flight_emits_nothing(self, background_loop):
        emitted = []
        engine = _engine(background_loop, 0.0, emitted)
        background_loop.call(engine.start_payment, "paytm", "Paytm", "75", "Zomato")
        time.sleep(0.5)
        background_loop.call(engine.reset)

        time.sleep(6)
        assert emitted == []
        assert background_loop.call(lambda: engine.attempt) is None

    def test_start_does_not_wait_for_gateway(self, background_loop):
        gateway = HungGateway()
        emitted, done = [], threading.Event()
        engine = _engine(background_loop, 1.0, emitted, done, reference_client=gateway,
                         deep_linker=DeepLinker(intent_logger=gateway.log_intent))
        try:
            started = time.monotonic()
            background_loop.call(engine.start_payment, "gpay", "Google Pay", "150", "Swiggy", mobile_client=True)
            assert time.monotonic() - started < 0.5

            started = time.monotonic()
            snapshot = background_loop.call(engine.snapshot)
            assert time.monotonic() - started < 0.5
            assert snapshot["status"] == "PENDING"

            assert done.wait(6)
            assert [t.status for t in emitted] == ["Completed"]
            assert gateway.names() == {"create_transaction", "log_intent"}
        finally:
            gateway.release.set()


class TestBackgroundLoop:
    def test_call_returns_value_on_loop_thread(self, background_loop):
        name = background_loop.call(lambda: threading.current_thread().name)
        assert name == "test-engine"
        assert background_loop.call(lambda a, b=0: a + b, 2, b=3) == 5

    def test_call_propagates_exceptions(self, background_loop):
        def boom():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            background_loop.call(boom)

    def test_call_blocking_runs_off_loop_and_returns_on_it(self, background_loop):
        seen, done = {}, threading.Event()

        def work():
            seen["worker"] = threading.current_thread().name
            return 42

        def finished(result):
            seen["result"] = result
            seen["callback"] = threading.current_thread().name
            done.set()

        background_loop.call(background_loop.scheduler.call_blocking, work, finished)
        assert done.wait(2)
        assert seen["worker"].startswith("test-engine-io")
        assert seen["callback"] == "test-engine"
        assert seen["result"] == 42

    def test_stop_joins_thread(self):
        loop = BackgroundLoop(name="short-lived").start()
        thread = loop._thread
        loop.stop()
        assert not thread.is_alive()
        assert not loop.loop.is_running()
        # Stopping twice is harmless.
        loop.stop()


class TestAsyncioScheduler:
    def test_call_every_rearms_until_cancelled_from_callback(self):
        fired = []

        async def scenario():
            scheduler = AsyncioScheduler(asyncio.get_running_loop())
            handle = None

            def tick():
                fired.append(scheduler.time())
                if len(fired) == 3:
                    handle.cancel()

            handle = scheduler.call_every(0.01, tick)
            await asyncio.sleep(0.2)
            return handle

        handle = asyncio.run(scenario())
        assert len(fired) == 3
        assert fired == sorted(fired)
        assert handle.cancelled

    def test_cancelled_call_later_never_fires(self):
        fired = []

        async def scenario():
            scheduler = AsyncioScheduler(asyncio.get_running_loop())
            kept = scheduler.call_later(0.01, lambda: fired.append("kept"))
            dropped = scheduler.call_later(0.01, lambda: fired.append("dropped"))
            dropped.cancel()
            dropped.cancel()
            await asyncio.sleep(0.05)
            return kept, dropped

        kept, dropped = asyncio.run(scenario())
        assert fired == ["kept"]
        assert dropped.cancelled and dropped.inner.cancelled()
        assert not kept.cancelled

    def test_failed_blocking_call_skips_callback(self, caplog):
        results = []

        async def scenario():
            scheduler = AsyncioScheduler(asyncio.get_running_loop())

            def broken():
                raise ConnectionError("gateway down")

            scheduler.call_blocking(broken, results.append)
            scheduler.call_blocking(lambda: "ok", results.append)
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert results == ["ok"]
        assert "gateway down" in caplog.text


def test_virtual_call_blocking_is_inline():
    scheduler = VirtualScheduler()
    results = []
    scheduler.call_blocking(lambda: "ref", results.append)
    assert results == ["ref"]
    scheduler.call_blocking(lambda: 1 / 0, results.append)
    assert results == ["ref"]
