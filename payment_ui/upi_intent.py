"""
Direct UPI intent flow: the user proves possession of their phone with an
OTP, then gets a pay URI (generic or app-specific) for a fixed merchant.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from common.errors import ExternalUnavailableError, UniPayError, ValidationError
from gateway.otp_ledger import InvalidMobileError, validate_mobile
from payment_ui.deep_link import build_android_intent_url, build_upi_pay_url, format_amount
from payment_ui.engine import parse_amount

logger = logging.getLogger(__name__)

MERCHANT_UPI_ID = os.environ.get("MERCHANT_UPI_ID", "unipay.merchant@oksbi")
MERCHANT_NAME = os.environ.get("MERCHANT_NAME", "UniPay Merchant")

UPI_APPS = {
    "gpay": {"name": "Google Pay", "package": "com.google.android.apps.nbu.paisa.user"},
    "phonepe": {"name": "PhonePe", "package": "com.phonepe.app"},
    "paytm": {"name": "Paytm", "package": "net.one97.paytm"},
    "amazon": {"name": "Amazon Pay", "package": "in.amazon.mShop.android.shopping"},
    "bhim": {"name": "BHIM", "package": ""},
}


class OtpNotVerifiedError(UniPayError):
    code = "OTP_NOT_VERIFIED"
    http_status = 403


@dataclass
class UpiSession:
    """Per-browser progress through the OTP gate, kept in the signed session cookie."""

    mobile: Optional[str] = None
    otp_sent: bool = False
    otp_verified: bool = False
    txn_ref: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "UpiSession":
        data = data or {}
        return cls(
            mobile=data.get("mobile"),
            otp_sent=bool(data.get("otpSent")),
            otp_verified=bool(data.get("otpVerified")),
            txn_ref=data.get("txnRef"),
        )

    def to_dict(self) -> dict:
        return {"mobile": self.mobile, "otpSent": self.otp_sent,
                "otpVerified": self.otp_verified, "txnRef": self.txn_ref}


class UpiIntentFlow:
    """
    Stateless driver for the OTP gate and intent building. Each call takes the
    caller's ``UpiSession`` and updates it in place; the host decides where
    that state lives.
    """

    def __init__(self, gateway, merchant_vpa: str = MERCHANT_UPI_ID, merchant_name: str = MERCHANT_NAME,
                 clock=time.time):
        self.gateway = gateway
        self.merchant_vpa = merchant_vpa
        self.merchant_name = merchant_name
        self.clock = clock

    def send_otp(self, state: UpiSession, mobile: str) -> tuple[int, dict]:
        try:
            validate_mobile(mobile)
        except InvalidMobileError:
            return 400, {"success": False, "error": "Enter a valid 10-digit Indian mobile number",
                         "code": InvalidMobileError.code}
        status, body = self.gateway.send_otp(mobile)
        if body.get("success"):
            state.mobile = mobile
            state.otp_sent = True
            state.otp_verified = False
        return status, body

    def verify_otp(self, state: UpiSession, otp: str) -> tuple[int, dict]:
        if not state.otp_sent or not state.mobile:
            return 400, {"success": False, "error": "Request an OTP first", "code": "NO_PENDING_OTP"}
        if not otp:
            return 400, {"success": False, "error": "Enter OTP", "code": "VALIDATION"}
        status, body = self.gateway.verify_otp(state.mobile, otp)
        state.otp_verified = bool(body.get("success"))
        return status, body

    def _create_reference(self, amount) -> str:
        try:
            ref = self.gateway.create_transaction(amount)
        except ExternalUnavailableError as e:
            logger.warning("create-transaction failed, using local reference: %s", e)
            ref = None
        return ref or f"TXN{int(self.clock() * 1000)}"

    def build_intent(self, state: UpiSession, amount, app_id: Optional[str] = None) -> dict:
        parsed = parse_amount(amount)
        if parsed is None or parsed <= 0:
            raise ValidationError("Enter a valid amount greater than 0")
        if not state.otp_verified:
            raise OtpNotVerifiedError("Please verify mobile via OTP before proceeding")

        app = UPI_APPS.get((app_id or "").lower())
        package = app["package"] if app else ""
        txn = self._create_reference(parsed)
        state.txn_ref = txn
        amount_2dp = parsed.quantize(Decimal("0.01"))
        note = f"Order {txn}"
        upi_uri = build_upi_pay_url(self.merchant_vpa, self.merchant_name, amount_2dp, note, txn)
        uri = upi_uri
        if package:
            uri = build_android_intent_url(self.merchant_vpa, self.merchant_name, amount_2dp, note, txn, package)

        self.gateway.log_intent(
            txn_ref=txn,
            upi_id=self.merchant_vpa,
            amount=format_amount(parsed),
            app_package=package or "generic",
            attempted_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("UPI intent built for %s via %s", txn, package or "generic")
        return {"success": True, "uri": uri, "upiUri": upi_uri, "txnRef": txn}
