from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class PaymentStatus(str, Enum):
    IDLE = "IDLE"
    INITIATED = "INITIATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def in_flight(self) -> bool:
        return self in (PaymentStatus.INITIATED, PaymentStatus.PENDING)

    @property
    def terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


@dataclass
class Transaction:
    """A ledger entry. Negative amounts are debits."""
    id: str
    date: str
    description: str
    merchant: str
    amount: Decimal
    category: str
    status: str
    reference: str = ""
    time: str = ""
    type: str = "Payment"
    location: str = "Online"
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date,
            "time": self.time,
            "description": self.description,
            "merchant": self.merchant,
            "amount": float(self.amount),
            "type": self.type,
            "category": self.category,
            "status": self.status,
            "reference": self.reference,
            "location": self.location,
            "paymentMethod": self.payment_method,
            "notes": self.notes,
            "tags": list(self.tags),
        }
