"""
Demo script - drive one simulated payment end to end and print what the
payment dialog would show at each step.
"""

import argparse
import asyncio
import logging
import random

from payment_ui.db import get_engine, init_db
from payment_ui.engine import PAYMENT_METHODS, PaymentEngine, PaymentValidationError, validate_payment_input
from payment_ui.ledger import TransactionLedger, summarize
from payment_ui.scheduler import AsyncioScheduler, VirtualScheduler

logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] [demo] %(message)s")

METHOD_LABELS = {m["id"]: m["name"] for m in PAYMENT_METHODS}
FRAME = 0.35


def _print_frame(engine: PaymentEngine, elapsed: float, last: dict) -> None:
    attempt = engine.attempt
    if attempt is None:
        return
    frame = (attempt.status.value, attempt.current_step, attempt.masked_reference)
    if last.get("frame") != frame:
        last["frame"] = frame
        print(f"  [{elapsed:4.1f}s] {frame[0]:<10} {frame[1]:<30} Ref: {frame[2]}")


def run_fast(engine: PaymentEngine, scheduler: VirtualScheduler) -> None:
    last = {}
    while engine.is_processing:
        scheduler.advance(FRAME)
        _print_frame(engine, scheduler.time(), last)


async def run_realtime(engine: PaymentEngine, started: float, loop) -> None:
    last = {}
    while engine.is_processing:
        await asyncio.sleep(FRAME)
        _print_frame(engine, loop.time() - started, last)


def main():
    parser = argparse.ArgumentParser(description="Simulate one UniPay quick payment")
    parser.add_argument("--method", default="gpay", choices=sorted(METHOD_LABELS))
    parser.add_argument("--amount", default="299")
    parser.add_argument("--merchant", default="Amazon India")
    parser.add_argument("--mobile", action="store_true", help="behave like a mobile browser (deep-link handoff)")
    parser.add_argument("--fast", action="store_true", help="use a virtual clock instead of real time")
    parser.add_argument("--seed", type=int, default=None, help="seed the outcome random source")
    parser.add_argument("--db", default="sqlite://", help="ledger database URL")
    args = parser.parse_args()

    try:
        validate_payment_input(args.amount, args.merchant)
    except PaymentValidationError as e:
        for field, message in e.field_errors.items():
            print(f"[ERROR] {field}: {message}")
        raise SystemExit(2)

    ledger = TransactionLedger(init_db(get_engine(args.db)))
    outcome = {}

    print("=" * 80)
    print("UniPay Quick Payment (Demo Mode)")
    print("=" * 80)
    print(f"  Method   : {METHOD_LABELS[args.method]}")
    print(f"  Amount   : ₹{args.amount}")
    print(f"  Merchant : {args.merchant}")
    print()

    def start(scheduler):
        engine = PaymentEngine(
            scheduler,
            random_source=random.Random(args.seed),
            ledger=ledger,
            on_transaction=lambda txn: outcome.setdefault("txn", txn),
        )
        engine.start_payment(args.method, METHOD_LABELS[args.method], args.amount, args.merchant,
                             mobile_client=args.mobile)
        for notice in engine.attempt.notices:
            print(f"  ({notice['title']}) {notice['description']}")
        return engine

    if args.fast:
        scheduler = VirtualScheduler()
        engine = start(scheduler)
        run_fast(engine, scheduler)
    else:
        async def realtime():
            loop = asyncio.get_running_loop()
            engine = start(AsyncioScheduler(loop))
            await run_realtime(engine, loop.time(), loop)
            return engine
        engine = asyncio.run(realtime())

    txn = outcome.get("txn")
    print()
    if txn is None:
        print("[WARNING] Payment did not reach a terminal state")
        return
    attempt = engine.attempt
    print(f"[{'OK' if txn.status == 'Completed' else 'FAILED'}] Payment {txn.status.lower()}")
    if attempt is not None:
        for notice in attempt.notices[-1:]:
            print(f"  {notice['title']}: {notice['description']}")
    print(f"  Transaction : {txn.id}")
    print(f"  Reference   : {txn.reference}")
    print(f"  Amount      : {txn.amount}")
    print(f"  Ledger      : {summarize(ledger.list())}")


if __name__ == "__main__":
    main()
