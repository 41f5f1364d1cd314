"""
Transaction reference issuer and UPI intent log.
"""
from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from common.errors import UniPayError

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
SETTLED_STATUSES = (COMPLETED, FAILED)


class InvalidAmountError(UniPayError):
    code = "INVALID_AMOUNT"


class TxnNotFoundError(UniPayError):
    code = "TXN_NOT_FOUND"
    http_status = 404


class TxnAlreadySettledError(UniPayError):
    code = "TXN_ALREADY_SETTLED"
    http_status = 409


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError("Amount must be a number greater than 0")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError("Amount must be a number greater than 0")
    return amount


@dataclass
class TxnRef:
    txn_ref: str
    amount: Decimal
    created_at: str
    status: str = PENDING
    settled_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data


@dataclass
class IntentLog:
    txn_ref: str
    upi_id: str
    amount: str
    app_package: str
    attempted_at: str
    received_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class TxnRefIssuer:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._refs: Dict[str, TxnRef] = {}
        self.intents: List[IntentLog] = []

    def _mint(self) -> str:
        while True:
            ref = f"TXN{int(self._clock() * 1000)}{secrets.token_hex(2).upper()}"
            if ref not in self._refs:
                return ref

    def create(self, amount) -> TxnRef:
        amount = parse_amount(amount)
        record = TxnRef(
            txn_ref=self._mint(),
            amount=amount,
            created_at=datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(),
        )
        self._refs[record.txn_ref] = record
        return record

    def get(self, txn_ref: str) -> TxnRef:
        record = self._refs.get(txn_ref)
        if record is None:
            raise TxnNotFoundError(f"Unknown transaction reference {txn_ref}")
        return record

    def complete(self, txn_ref: str, status: str) -> TxnRef:
        """Settle a pending reference once with the client's terminal outcome."""
        status = (status or "").strip().lower()
        if status not in SETTLED_STATUSES:
            raise UniPayError("status must be 'completed' or 'failed'", code="INVALID_STATUS")
        record = self.get(txn_ref)
        if record.status != PENDING:
            raise TxnAlreadySettledError(f"Transaction {txn_ref} already {record.status}")
        record.status = status
        record.settled_at = datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()
        return record

    def log_intent(self, *, txn_ref: str, upi_id: str, amount, app_package: str, attempted_at: str) -> IntentLog:
        entry = IntentLog(
            txn_ref=str(txn_ref or ""),
            upi_id=str(upi_id or ""),
            amount=str(amount or ""),
            app_package=str(app_package or "generic"),
            attempted_at=str(attempted_at or ""),
        )
        self.intents.append(entry)
        return entry
