"""
In-memory OTP ledger: one pending code per mobile number.

The ledger is constructed explicitly and handed to the gateway app, so tests
can swap the clock and the code source. Concurrent sends for the same number
are last-write-wins; the store is not safe for multi-process deployments.
"""
from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from common.errors import ErrorCategory, UniPayError

MOBILE_RE = re.compile(r"^\d{10}$")
OTP_TTL_SECONDS = 5 * 60


class InvalidMobileError(UniPayError):
    code = "INVALID_MOBILE"


class NoPendingOtpError(UniPayError):
    code = "NO_PENDING_OTP"


class OtpExpiredError(UniPayError):
    code = "OTP_EXPIRED"
    category = ErrorCategory.EXPIRED


class OtpMismatchError(UniPayError):
    code = "OTP_MISMATCH"


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def validate_mobile(mobile) -> str:
    if not isinstance(mobile, str) or not MOBILE_RE.match(mobile):
        raise InvalidMobileError("Invalid mobile number")
    return mobile


@dataclass
class OtpRecord:
    code: str
    expires_at: float


class OtpLedger:
    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        ttl: float = OTP_TTL_SECONDS,
        code_factory: Callable[[], str] = generate_code,
    ):
        self._clock = clock
        self._ttl = ttl
        self._code_factory = code_factory
        self._records: Dict[str, OtpRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def new_code(self) -> str:
        return self._code_factory()

    def issue(self, mobile: str, code: Optional[str] = None) -> OtpRecord:
        """Store a code for ``mobile``, replacing any pending one."""
        validate_mobile(mobile)
        record = OtpRecord(code=code or self._code_factory(), expires_at=self._clock() + self._ttl)
        self._records[mobile] = record
        return record

    def get(self, mobile: str) -> Optional[OtpRecord]:
        return self._records.get(mobile)

    def verify(self, mobile: str, code: str) -> None:
        record = self._records.get(mobile)
        if record is None:
            raise NoPendingOtpError("No OTP request found for this mobile")
        if self._clock() > record.expires_at:
            self._records.pop(mobile, None)
            raise OtpExpiredError("OTP expired, please request a new one")
        if record.code != code:
            raise OtpMismatchError("Incorrect OTP")
        self._records.pop(mobile, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [m for m, r in self._records.items() if now > r.expires_at]
        for mobile in expired:
            self._records.pop(mobile, None)
        return len(expired)
