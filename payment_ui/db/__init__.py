from .db import (
    Base,
    PaymentRecord,
    get_engine,
    init_db,
    make_session_factory,
    persist_transaction,
)

__all__ = [
    "Base",
    "PaymentRecord",
    "get_engine",
    "init_db",
    "make_session_factory",
    "persist_transaction",
]
