"""
Transaction ledger: a live, append-only collection of completed and failed
payments, plus the filtering, summary and export used by the history view.
"""
from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from common.errors import UniPayError
from payment_ui.db import PaymentRecord, persist_transaction
from payment_ui.models import Transaction

logger = logging.getLogger(__name__)

Listener = Callable[[List[Transaction]], None]

EXPORT_COLUMNS = ["Date", "Description", "Merchant", "Amount", "Type", "Status", "Category"]


class TransactionNotFoundError(UniPayError):
    code = "TXN_NOT_FOUND"
    http_status = 404


def _to_transaction(row: PaymentRecord) -> Transaction:
    return Transaction(
        id=row.txn_id,
        date=row.date or (row.timestamp.date().isoformat() if row.timestamp else ""),
        time=row.time or "",
        description=row.description or "",
        merchant=row.merchant_name or "",
        amount=Decimal(str(row.amount)),
        type=row.txn_type or "",
        category=row.category or "",
        status=row.status or "",
        reference=row.reference or "",
        location=row.location or "",
        payment_method=row.payment_method,
        notes=row.notes,
    )


class TransactionLedger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._listeners: List[Listener] = []

    def list(self) -> List[Transaction]:
        with self._session_factory() as session:
            rows = (
                session.query(PaymentRecord)
                .order_by(PaymentRecord.timestamp.desc(), PaymentRecord.id.desc())
                .all()
            )
            return [_to_transaction(row) for row in rows]

    def get(self, txn_id: str) -> Optional[Transaction]:
        with self._session_factory() as session:
            row = session.query(PaymentRecord).filter_by(txn_id=txn_id).one_or_none()
            return _to_transaction(row) if row is not None else None

    def append(self, txn: Transaction) -> None:
        with self._session_factory() as session:
            persist_transaction(
                session,
                txn_id=txn.id,
                date=txn.date,
                time=txn.time,
                description=txn.description,
                merchant_name=txn.merchant,
                amount=float(txn.amount),
                txn_type=txn.type,
                category=txn.category,
                status=txn.status,
                reference=txn.reference,
                location=txn.location,
                payment_method=txn.payment_method,
                notes=txn.notes,
            )
            session.commit()
        logger.info("Ledger append %s | %s | %s | %s", txn.id, txn.merchant, txn.amount, txn.status)
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Deliver the current snapshot now and after every append."""
        self._listeners.append(listener)
        self._deliver(listener, self.list())

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.list()
        for listener in list(self._listeners):
            self._deliver(listener, snapshot)

    @staticmethod
    def _deliver(listener: Listener, snapshot: List[Transaction]) -> None:
        try:
            listener(list(snapshot))
        except Exception:
            logger.exception("Ledger listener failed")


@dataclass
class LedgerFilter:
    search: str = ""
    date_range: str = "all"
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    status: str = "all"
    txn_type: str = "all"
    tab: str = "all"


def _parse_date(value: str) -> Optional[date]:
    if not value:
        return None
    for parse in (date.fromisoformat, lambda v: datetime.fromisoformat(v).date(),
                  lambda v: datetime.strptime(v, "%m/%d/%Y").date()):
        try:
            return parse(value)
        except ValueError:
            continue
    return None


def _in_date_range(txn: Transaction, date_range: str, today: date) -> bool:
    if date_range in ("", "all"):
        return True
    txn_date = _parse_date(txn.date)
    if txn_date is None:
        return False
    if date_range == "today":
        return txn_date == today
    if date_range == "month":
        return (txn_date.year, txn_date.month) == (today.year, today.month)
    if date_range == "year":
        return txn_date.year == today.year
    days = {"7days": 7, "week": 7, "30days": 30, "90days": 90}.get(date_range)
    if days is None:
        return True
    return today - timedelta(days=days) <= txn_date <= today


def _matches_tab(txn: Transaction, tab: str) -> bool:
    if tab == "completed":
        return txn.status == "Completed"
    if tab == "scheduled":
        return txn.status == "Scheduled"
    if tab == "payments":
        return txn.type == "Payment"
    if tab == "transfers":
        return txn.type == "Transfer"
    return True


def filter_transactions(txns: Iterable[Transaction], criteria: LedgerFilter,
                        today: Optional[date] = None) -> List[Transaction]:
    today = today or date.today()
    query = criteria.search.strip().lower()
    status = criteria.status.strip().lower()
    txn_type = criteria.txn_type.strip().lower()

    results = []
    for txn in txns:
        if query and query not in txn.description.lower() and query not in txn.merchant.lower():
            continue
        magnitude = abs(txn.amount)
        if criteria.min_amount is not None and magnitude < criteria.min_amount:
            continue
        if criteria.max_amount is not None and magnitude > criteria.max_amount:
            continue
        if status not in ("", "all") and txn.status.lower() != status:
            continue
        if txn_type not in ("", "all") and txn.type.lower() != txn_type:
            continue
        if not _matches_tab(txn, criteria.tab):
            continue
        if not _in_date_range(txn, criteria.date_range, today):
            continue
        results.append(txn)
    return results


def summarize(txns: Iterable[Transaction]) -> dict:
    debits = Decimal("0")
    credits = Decimal("0")
    count = 0
    for txn in txns:
        count += 1
        if txn.amount < 0:
            debits += -txn.amount
        else:
            credits += txn.amount
    return {
        "count": count,
        "totalDebits": float(debits),
        "totalCredits": float(credits),
        "net": float(credits - debits),
    }


def export_csv(txns: Iterable[Transaction]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for txn in txns:
        writer.writerow([
            txn.date,
            txn.description,
            txn.merchant,
            f"{txn.amount:.2f}",
            txn.type,
            txn.status,
            txn.category,
        ])
    return buf.getvalue()
