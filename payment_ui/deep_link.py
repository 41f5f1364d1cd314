"""
UPI deep links and the best-effort app handoff.

The handoff never reports success or failure: whether an external app opened
is unobservable, and the payment outcome comes only from the outcome poller.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

FALLBACK_VPA = "test@upi"
HANDOFF_LIFETIME = 1.2

KNOWN_MERCHANT_VPA = {
    "amazon india": "amazonpay@apl",
    "swiggy": "swiggy@icici",
    "zomato": "zomato@hdfcbank",
    "flipkart": "flipkart@icici",
    "myntra": "myntra@icici",
}

MOBILE_UA_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


def is_mobile_client(user_agent: Optional[str]) -> bool:
    return bool(user_agent and MOBILE_UA_RE.search(user_agent))


def resolve_payee_vpa(merchant: str) -> str:
    return KNOWN_MERCHANT_VPA.get((merchant or "").strip().lower(), FALLBACK_VPA)


def format_amount(amount) -> str:
    """Plain decimal without exponent or trailing zeros: 299, 150.5."""
    return format(Decimal(str(amount)).normalize(), "f")


def _enc(value) -> str:
    return quote(str(value), safe="")


def _upi_query(vpa: str, name: str, amount, note: str, txn_ref: str) -> str:
    return (
        f"pa={_enc(vpa)}&pn={_enc(name or 'Merchant')}&am={_enc(format_amount(amount))}"
        f"&cu=INR&tn={_enc(note or 'Payment')}&tr={_enc(txn_ref)}"
    )


def build_upi_pay_url(vpa: str, name: str, amount, note: str, txn_ref: str) -> str:
    return f"upi://pay?{_upi_query(vpa, name, amount, note, txn_ref)}"


def build_android_intent_url(vpa: str, name: str, amount, note: str, txn_ref: str, package: str) -> str:
    """Intent URI that asks Android to open one specific UPI app."""
    query = _upi_query(vpa, name, amount, note, txn_ref)
    return f"intent://upi/pay?{query}#Intent;scheme=upi;package={package};end"


@dataclass
class Handoff:
    uri: str
    opened_at: float
    expires_at: float

    def to_dict(self) -> dict:
        return {"uri": self.uri, "expiresAt": self.expires_at}


class DeepLinker:
    """
    Attempts the external-app handoff for one payment attempt.

    ``attempt(...)`` returns a Handoff for mobile clients (the UI mounts it as
    an invisible frame until it expires) and None otherwise. Nothing raised
    by the intent logger or the notifier escapes.
    """

    def __init__(self, intent_logger: Optional[Callable[..., object]] = None):
        self.intent_logger = intent_logger

    def attempt(self, *, now: float, method_id: str, method_label: str, merchant: str, amount,
                reference: str, mobile_client: bool, notify: Callable[[str, str], None],
                dispatch: Optional[Callable[[Callable[[], object]], object]] = None) -> Optional[Handoff]:
        try:
            merchant = (merchant or "").strip()
            vpa = resolve_payee_vpa(merchant)
            uri = build_upi_pay_url(
                vpa=vpa,
                name=merchant or "Merchant",
                amount=amount,
                note=f"Paying {merchant} via {method_id.upper()}",
                txn_ref=reference,
            )
            self._log_intent(reference, vpa, amount, method_id, dispatch)

            if not mobile_client:
                notify("Simulating payment",
                       "UPI apps open on mobile devices. Proceeding with demo mode on desktop.")
                return None

            handoff = Handoff(uri=uri, opened_at=now, expires_at=now + HANDOFF_LIFETIME)
            notify("Opening payment app…", f"Redirecting to {method_label} (if installed).")
            logger.info("Deep-link handoff for %s: %s", reference, uri)
            return handoff
        except Exception as e:
            logger.warning("Deep-link attempt for %s failed: %s", reference, e)
            return None

    def _log_intent(self, reference: str, vpa: str, amount, method_id: str, dispatch=None) -> None:
        if self.intent_logger is None:
            return
        entry = dict(
            txn_ref=reference,
            upi_id=vpa,
            amount=format_amount(amount),
            app_package=method_id or "generic",
            attempted_at=datetime.now(timezone.utc).isoformat(),
        )

        def send():
            try:
                self.intent_logger(**entry)
            except Exception as e:
                logger.warning("Intent log for %s failed: %s", reference, e)

        if dispatch is None:
            send()
        else:
            dispatch(send)
