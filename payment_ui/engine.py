"""
Payment simulation engine.

Drives one simulated payment at a time from the pay tap to a terminal
outcome. Two cooperative timers run per attempt: the stepper animates the
progress text and reveals the reference, and the outcome poller decides when
and how the attempt ends. Every timer callback carries the generation of the
attempt that armed it and does nothing once that attempt is discarded.
"""
from __future__ import annotations

import logging
import random
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Protocol

from common.errors import UniPayError, ValidationError
from payment_ui.deep_link import DeepLinker, Handoff, HANDOFF_LIFETIME
from payment_ui.models import PaymentStatus, Transaction

logger = logging.getLogger(__name__)

STEPS = (
    "Connecting to bank...",
    "Verifying details...",
    "Initiating payment...",
    "Awaiting app confirmation...",
)
STEP_INTERVAL = 0.85
POLL_INTERVAL = 0.7
MIN_POLL_TICKS = 3
MAX_POLL_TICKS = 8
FINISH_THRESHOLD = 0.4
FAILURE_THRESHOLD = 0.1
DISMISS_DELAY = 0.6
MIN_MERCHANT_LENGTH = 3
INITIAL_REVEAL = 8
REVEAL_PER_TICK = 4
MASK_CHAR = "•"
BASE36 = string.digits + string.ascii_uppercase

PAYMENT_METHODS = (
    {"id": "gpay", "name": "Google Pay"},
    {"id": "phonepe", "name": "PhonePe"},
    {"id": "paytm", "name": "Paytm"},
    {"id": "upi", "name": "UPI Direct"},
)


class RandomSource(Protocol):
    def random(self) -> float: ...


class PaymentValidationError(ValidationError):
    def __init__(self, field_errors: Dict[str, str], message: str = "Please enter a valid amount and merchant."):
        super().__init__(message)
        self.field_errors = field_errors

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = dict(self.field_errors)
        return data


class PaymentInFlightError(UniPayError):
    code = "PAYMENT_IN_FLIGHT"
    http_status = 409


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def parse_amount(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def field_errors(amount_raw, merchant) -> Dict[str, str]:
    """Live validation of the form. Empty fields are not flagged yet."""
    errors = {}
    if amount_raw not in (None, ""):
        amount = parse_amount(amount_raw)
        if amount is None or amount <= 0:
            errors["amount"] = "Enter an amount greater than ₹0"
    if merchant and len(merchant.strip()) < MIN_MERCHANT_LENGTH:
        errors["merchant"] = "Merchant name too short"
    return errors


def validate_payment_input(amount, merchant) -> tuple[Decimal, str]:
    errors = {}
    parsed = parse_amount(amount)
    if parsed is None or parsed <= 0:
        errors["amount"] = "Enter an amount greater than ₹0"
    merchant = merchant.strip() if isinstance(merchant, str) else ""
    if len(merchant) < MIN_MERCHANT_LENGTH:
        errors["merchant"] = "Merchant name too short"
    if errors:
        raise PaymentValidationError(errors)
    return parsed, merchant


def mask_reference(reference: str, visible: int) -> str:
    visible = min(len(reference), visible)
    return reference[:visible] + MASK_CHAR * (len(reference) - visible)


@dataclass
class PaymentForm:
    amount_raw: str = ""
    merchant: str = ""

    def clear(self) -> None:
        self.amount_raw = ""
        self.merchant = ""

    def errors(self) -> Dict[str, str]:
        return field_errors(self.amount_raw, self.merchant)


@dataclass
class PaymentAttempt:
    generation: int
    reference: str
    method_id: str
    method_label: str
    amount: Decimal
    merchant: str
    mobile_client: bool = False
    status: PaymentStatus = PaymentStatus.IDLE
    status_history: List[PaymentStatus] = field(default_factory=lambda: [PaymentStatus.IDLE])
    steps: tuple = STEPS
    step_index: int = 0
    step_ticks: int = 0
    poll_ticks: int = 0
    masked_reference: str = ""
    server_reference: Optional[str] = None
    handoff: Optional[Handoff] = None
    notices: List[Dict[str, str]] = field(default_factory=list)
    transaction: Optional[Transaction] = None
    timers: Dict[str, Any] = field(default_factory=dict)

    @property
    def current_step(self) -> str:
        if 0 <= self.step_index < len(self.steps):
            return self.steps[self.step_index]
        return "Processing payment..."

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "isProcessing": self.status.in_flight,
            "statusHistory": [s.value for s in self.status_history],
            "methodId": self.method_id,
            "methodLabel": self.method_label,
            "merchant": self.merchant,
            "amount": float(self.amount),
            "steps": list(self.steps),
            "stepIndex": self.step_index,
            "step": self.current_step,
            "reference": self.reference if self.status.terminal else None,
            "maskedReference": self.masked_reference,
            "serverReference": self.server_reference,
            "handoff": self.handoff.to_dict() if self.handoff else None,
            "notices": list(self.notices),
            "transaction": self.transaction.to_dict() if self.transaction else None,
        }


class PaymentEngine:
    def __init__(
        self,
        scheduler,
        *,
        random_source: Optional[RandomSource] = None,
        ledger=None,
        on_transaction: Optional[Callable[[Transaction], None]] = None,
        on_dismiss: Optional[Callable[[], None]] = None,
        reference_client=None,
        deep_linker: Optional[DeepLinker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.scheduler = scheduler
        self.random = random_source or random.Random()
        self.ledger = ledger
        self.on_transaction = on_transaction
        self.on_dismiss = on_dismiss
        self.reference_client = reference_client
        self.deep_linker = deep_linker or DeepLinker()
        self.clock = clock
        self.form = PaymentForm()
        self._attempt: Optional[PaymentAttempt] = None
        self._generation = 0
        self._issued_refs: set[str] = set()

    @property
    def attempt(self) -> Optional[PaymentAttempt]:
        return self._attempt

    @property
    def status(self) -> PaymentStatus:
        return self._attempt.status if self._attempt else PaymentStatus.IDLE

    @property
    def is_processing(self) -> bool:
        return self.status.in_flight

    def start_payment(self, method_id: str, method_label: str, amount, merchant: str, *,
                      mobile_client: bool = False) -> None:
        """Begin one attempt. The outcome arrives later through ``on_transaction``."""
        if self.is_processing:
            raise PaymentInFlightError("A payment is already in progress")
        amount, merchant = validate_payment_input(amount, merchant)
        method_id = (method_id or "upi").strip().lower()
        method_label = method_label or method_id.upper()

        # A finished attempt may still have its dismiss timer armed.
        self._teardown()
        self.form.amount_raw = str(amount)
        self.form.merchant = merchant

        reference = self._mint_reference(method_id)
        self._generation += 1
        attempt = PaymentAttempt(
            generation=self._generation,
            reference=reference,
            method_id=method_id,
            method_label=method_label,
            amount=amount,
            merchant=merchant,
            mobile_client=mobile_client,
        )
        self._attempt = attempt
        self._request_server_reference(attempt)

        self._set_status(attempt, PaymentStatus.INITIATED)
        attempt.step_index = 0
        attempt.masked_reference = mask_reference(reference, INITIAL_REVEAL)
        gen = attempt.generation
        attempt.timers["stepper"] = self.scheduler.call_every(STEP_INTERVAL, lambda: self._step_tick(gen))

        self._attempt_deep_link(attempt)

        self._set_status(attempt, PaymentStatus.PENDING)
        attempt.timers["poller"] = self.scheduler.call_every(POLL_INTERVAL, lambda: self._poll_tick(gen))
        logger.info("Payment %s started | %s | %s | %s", reference, method_label, merchant, amount)

    def reset(self) -> None:
        """Cancel the current attempt, if any. No transaction is emitted for it."""
        if self._attempt is not None and self._attempt.status.in_flight:
            logger.info("Payment %s cancelled while %s", self._attempt.reference, self._attempt.status.value)
        self._teardown()

    def close(self) -> None:
        """Closing the payment dialog: discard the attempt and the form."""
        self.reset()
        self.form.clear()

    def snapshot(self) -> dict:
        data = {
            "status": self.status.value,
            "isProcessing": self.is_processing,
            "form": {
                "amount": self.form.amount_raw,
                "merchant": self.form.merchant,
                "errors": self.form.errors(),
            },
            "attempt": None,
        }
        if self._attempt is not None:
            data["attempt"] = self._attempt.to_dict()
        return data

    # -- internals ---------------------------------------------------------

    def _teardown(self) -> None:
        attempt = self._attempt
        if attempt is not None:
            for handle in attempt.timers.values():
                handle.cancel()
            attempt.timers.clear()
        self._attempt = None
        # Bumping the generation orphans any callback already queued.
        self._generation += 1

    def _live(self, generation: int) -> Optional[PaymentAttempt]:
        attempt = self._attempt
        if attempt is None or attempt.generation != generation:
            return None
        return attempt

    def _mint_reference(self, method_id: str) -> str:
        while True:
            stamp = to_base36(int(self.clock() * 1000))
            suffix = "".join(secrets.choice(BASE36) for _ in range(4))
            reference = f"{method_id.upper()}-{stamp}-{suffix}"
            if reference not in self._issued_refs:
                self._issued_refs.add(reference)
                return reference

    def _request_server_reference(self, attempt: PaymentAttempt) -> None:
        if self.reference_client is None:
            return
        gen = attempt.generation
        amount = attempt.amount

        def fetch():
            try:
                return self.reference_client.create_transaction(amount)
            except Exception as e:
                logger.warning("Server reference unavailable, continuing with local reference: %s", e)
                return None

        self.scheduler.call_blocking(fetch, lambda ref: self._apply_server_reference(gen, ref))

    def _apply_server_reference(self, generation: int, server_reference: Optional[str]) -> None:
        attempt = self._live(generation)
        if attempt is None or not server_reference:
            if server_reference:
                logger.info("Server reference %s arrived after its attempt was discarded", server_reference)
            return
        attempt.server_reference = server_reference
        # The outcome may already be known when the reference arrives.
        if attempt.status.terminal:
            self._reconcile(attempt)

    def _set_status(self, attempt: PaymentAttempt, status: PaymentStatus) -> None:
        attempt.status = status
        attempt.status_history.append(status)
        logger.info("Payment %s -> %s", attempt.reference, status.value)

    def _notify(self, attempt: PaymentAttempt, title: str, description: str) -> None:
        attempt.notices.append({"title": title, "description": description})
        logger.info("[%s] %s: %s", attempt.reference, title, description)

    def _attempt_deep_link(self, attempt: PaymentAttempt) -> None:
        try:
            handoff = self.deep_linker.attempt(
                now=self.scheduler.time(),
                method_id=attempt.method_id,
                method_label=attempt.method_label,
                merchant=attempt.merchant,
                amount=attempt.amount,
                reference=attempt.reference,
                mobile_client=attempt.mobile_client,
                notify=lambda title, desc: self._notify(attempt, title, desc),
                dispatch=self.scheduler.call_blocking,
            )
        except Exception as e:
            logger.warning("Deep-link step failed for %s: %s", attempt.reference, e)
            return
        if handoff is not None:
            attempt.handoff = handoff
            gen = attempt.generation
            attempt.timers["handoff"] = self.scheduler.call_later(HANDOFF_LIFETIME, lambda: self._expire_handoff(gen))

    def _expire_handoff(self, generation: int) -> None:
        attempt = self._live(generation)
        if attempt is not None:
            attempt.handoff = None
            attempt.timers.pop("handoff", None)

    def _step_tick(self, generation: int) -> None:
        attempt = self._live(generation)
        if attempt is None or not attempt.status.in_flight:
            return
        attempt.step_ticks += 1
        last = len(attempt.steps) - 1
        attempt.step_index = min(attempt.step_index + 1, last)
        attempt.masked_reference = mask_reference(attempt.reference, (attempt.step_ticks + 1) * REVEAL_PER_TICK)
        if attempt.step_ticks >= last:
            self._stop_timer(attempt, "stepper")

    def _poll_tick(self, generation: int) -> None:
        attempt = self._live(generation)
        if attempt is None or attempt.status is not PaymentStatus.PENDING:
            return
        attempt.poll_ticks += 1
        ticks = attempt.poll_ticks
        will_finish = ticks >= MIN_POLL_TICKS and (self.random.random() > FINISH_THRESHOLD or ticks >= MAX_POLL_TICKS)
        if will_finish:
            self._resolve(attempt, self.random.random() > FAILURE_THRESHOLD)

    @staticmethod
    def _stop_timer(attempt: PaymentAttempt, name: str) -> None:
        handle = attempt.timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def _resolve(self, attempt: PaymentAttempt, success: bool) -> None:
        if attempt.transaction is not None:
            return
        self._stop_timer(attempt, "poller")
        self._stop_timer(attempt, "stepper")
        self._set_status(attempt, PaymentStatus.COMPLETED if success else PaymentStatus.FAILED)
        attempt.masked_reference = attempt.reference

        txn = self._build_transaction(attempt, success)
        attempt.transaction = txn

        if self.ledger is not None:
            try:
                self.ledger.append(txn)
            except Exception:
                logger.exception("Ledger append failed for %s", txn.id)

        if success:
            self._notify(attempt, "Payment Successful",
                         f"₹{attempt.amount:,.2f} paid to {attempt.merchant} via {attempt.method_label}")
        else:
            self._notify(attempt, "Payment Failed", f"Payment to {attempt.merchant} failed. Please try again.")

        if self.on_transaction is not None:
            try:
                self.on_transaction(txn)
            except Exception:
                logger.exception("on_transaction callback failed for %s", txn.id)

        self._reconcile(attempt)

        if success:
            gen = attempt.generation
            attempt.timers["dismiss"] = self.scheduler.call_later(DISMISS_DELAY, lambda: self._dismiss(gen))

    def _build_transaction(self, attempt: PaymentAttempt, success: bool) -> Transaction:
        now = datetime.fromtimestamp(self.clock())
        return Transaction(
            id=f"tx-{attempt.reference.lower()}",
            date=now.date().isoformat(),
            time=now.strftime("%H:%M:%S"),
            description=f"Payment via {attempt.method_label}",
            merchant=attempt.merchant,
            amount=-abs(attempt.amount),
            type="Payment",
            category="Digital Payment",
            status="Completed" if success else "Failed",
            reference=attempt.reference.replace("-", "").upper(),
            location="Online",
            payment_method=attempt.method_label,
        )

    def _reconcile(self, attempt: PaymentAttempt) -> None:
        if self.reference_client is None or not attempt.server_reference:
            return
        server_reference = attempt.server_reference
        status = "completed" if attempt.status is PaymentStatus.COMPLETED else "failed"

        def settle():
            try:
                self.reference_client.complete_transaction(server_reference, status)
            except Exception as e:
                logger.warning("Could not reconcile %s with the gateway: %s", server_reference, e)

        self.scheduler.call_blocking(settle)

    def _dismiss(self, generation: int) -> None:
        attempt = self._live(generation)
        if attempt is None:
            return
        logger.info("Payment %s dismissed", attempt.reference)
        self._teardown()
        self.form.clear()
        if self.on_dismiss is not None:
            try:
                self.on_dismiss()
            except Exception:
                logger.exception("on_dismiss callback failed")
