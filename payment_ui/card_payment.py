"""
Card payments recorded from the credit card dialog. The card itself is only
checked for shape; the ledger keeps the last four digits and nothing else.
"""
from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import datetime
from typing import Dict, Mapping

from payment_ui.engine import PaymentValidationError, parse_amount
from payment_ui.ledger import TransactionLedger
from payment_ui.models import Transaction

logger = logging.getLogger(__name__)

CARD_CATEGORIES = ("Groceries", "Utilities", "Travel", "Dining", "Entertainment", "Healthcare", "Education", "Others")

_EXPIRY = re.compile(r"^\d{2}/\d{2}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _text(data: Mapping, key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def card_digits(card_number) -> str:
    return re.sub(r"\s", "", card_number) if isinstance(card_number, str) else ""


def card_field_errors(data: Mapping) -> Dict[str, str]:
    errors = {}
    amount = parse_amount(data.get("amount"))
    if amount is None or amount <= 0:
        errors["amount"] = "Enter a valid amount"
    digits = card_digits(data.get("cardNumber"))
    if len(digits) < 16 or not digits.isdigit():
        errors["cardNumber"] = "Invalid card number"
    if not _EXPIRY.match(_text(data, "expiryDate")):
        errors["expiryDate"] = "Invalid expiry date"
    cvv = _text(data, "cvv")
    if len(cvv) < 3 or not cvv.isdigit():
        errors["cvv"] = "Invalid CVV"
    if not _text(data, "nameOnCard"):
        errors["nameOnCard"] = "Name required"
    if not _text(data, "merchantName"):
        errors["merchantName"] = "Merchant name required"
    if not _ISO_DATE.match(_text(data, "date")):
        errors["date"] = "Date must be in YYYY-MM-DD"
    if not _text(data, "description"):
        errors["description"] = "Description required"
    if not _text(data, "category"):
        errors["category"] = "Category required"
    return errors


def record_card_payment(ledger: TransactionLedger, data: Mapping, clock=time.time) -> Transaction:
    """Validate the dialog's fields and append a completed card debit."""
    errors = card_field_errors(data)
    if errors:
        raise PaymentValidationError(errors, "Please correct the highlighted card payment fields.")

    amount = parse_amount(data.get("amount"))
    last4 = card_digits(data["cardNumber"])[-4:]
    now = datetime.fromtimestamp(clock())
    txn = Transaction(
        id=f"tx-card-{int(clock() * 1000)}-{secrets.token_hex(2)}",
        date=_text(data, "date"),
        time=now.strftime("%H:%M:%S"),
        description=_text(data, "description"),
        merchant=_text(data, "merchantName"),
        amount=-abs(amount),
        type="Payment",
        category=_text(data, "category"),
        status="Completed",
        reference=f"CARD{last4}",
        location="Online",
        payment_method=f"Card ending {last4}",
    )
    ledger.append(txn)
    logger.info("Card payment %s recorded for %s", txn.id, txn.merchant)
    return txn
