"""
HTTP client for the UniPay gateway service.
"""
import logging
import os
from typing import Any, Dict, Optional

import requests

from common.errors import ExternalUnavailableError

logger = logging.getLogger(__name__)

GATEWAY_URL = os.environ.get("GATEWAY_URL", "http://localhost:5000")


class GatewayClient:
    def __init__(self, base_url: Optional[str] = None, timeout: float = 10, fire_and_forget_timeout: float = 2,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or GATEWAY_URL).rstrip("/")
        self.timeout = timeout
        self.fire_and_forget_timeout = fire_and_forget_timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> tuple[int, Dict[str, Any]]:
        try:
            r = self.session.post(f"{self.base_url}{path}", json=payload, timeout=timeout or self.timeout)
        except requests.RequestException as e:
            raise ExternalUnavailableError(f"Gateway unreachable: {e}") from e
        try:
            body = r.json()
        except ValueError:
            body = {"success": False, "error": f"Gateway returned status {r.status_code}"}
        return r.status_code, body

    # OTP endpoints pass the gateway's response through unchanged.
    def send_otp(self, mobile: str) -> tuple[int, Dict[str, Any]]:
        return self._post("/api/send-otp", {"mobile": mobile})

    def verify_otp(self, mobile: str, otp: str) -> tuple[int, Dict[str, Any]]:
        return self._post("/api/verify-otp", {"mobile": mobile, "otp": otp})

    def create_transaction(self, amount) -> Optional[str]:
        """Ask the gateway to mirror a reference. Returns None when it cannot."""
        status, body = self._post("/api/create-transaction", {"amount": str(amount)},
                                  timeout=self.fire_and_forget_timeout)
        if status == 200 and body.get("success") and body.get("txnRef"):
            return body["txnRef"]
        logger.warning("create-transaction rejected (status=%s): %s", status, body.get("error"))
        return None

    def complete_transaction(self, txn_ref: str, status: str) -> bool:
        code, body = self._post("/api/complete-transaction", {"txnRef": txn_ref, "status": status},
                                timeout=self.fire_and_forget_timeout)
        if code != 200:
            logger.warning("complete-transaction for %s rejected (status=%s): %s", txn_ref, code, body.get("error"))
        return code == 200

    def log_intent(self, *, txn_ref: str, upi_id: str, amount, app_package: str, attempted_at: str) -> None:
        """Fire-and-forget; failures are logged and dropped."""
        try:
            self._post("/api/log-intent", {
                "txnRef": txn_ref,
                "upiId": upi_id,
                "amount": str(amount),
                "appPackage": app_package,
                "attemptedAt": attempted_at,
            }, timeout=self.fire_and_forget_timeout)
        except ExternalUnavailableError as e:
            logger.warning("log-intent failed: %s", e)
