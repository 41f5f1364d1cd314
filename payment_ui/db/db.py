"""
Ledger storage for completed and failed payments (table ``payments``).
"""
from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class PaymentRecord(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    txn_id = Column(String(128), nullable=False, unique=True)
    date = Column(String(32), nullable=False)
    time = Column(String(32), nullable=True)
    description = Column(String(512), nullable=False, default="")
    merchant_name = Column(String(255), nullable=False, default="")
    amount = Column(Float, nullable=False)
    txn_type = Column(String(32), nullable=False, default="Payment")
    category = Column(String(64), nullable=False, default="")
    status = Column(String(32), nullable=False)
    reference = Column(String(128), nullable=True)
    location = Column(String(64), nullable=True)
    payment_method = Column(String(64), nullable=True)
    notes = Column(String(1024), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))


def get_engine(db_url: Optional[str] = None):
    url = db_url or os.getenv("DATABASE_URL") or f"sqlite:///{os.path.abspath('unipay_payments.sqlite')}"
    kwargs = {}
    if url.startswith("sqlite"):
        # Ledger is written from the engine loop thread and read from request threads.
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, future=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db(engine=None) -> sessionmaker:
    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    return make_session_factory(engine)


def persist_transaction(session: Session, *, txn_id: str, date: str, time: str, description: str,
                        merchant_name: str, amount: float, txn_type: str, category: str, status: str,
                        reference: Optional[str] = None, location: Optional[str] = None,
                        payment_method: Optional[str] = None, notes: Optional[str] = None,
                        timestamp: Optional[datetime] = None) -> PaymentRecord:
    row = PaymentRecord(
        txn_id=txn_id,
        date=date,
        time=time,
        description=description,
        merchant_name=merchant_name,
        amount=amount,
        txn_type=txn_type,
        category=category,
        status=status,
        reference=reference,
        location=location,
        payment_method=payment_method,
        notes=notes,
        timestamp=timestamp or datetime.now(timezone.utc),
    )
    session.add(row)
    return row
