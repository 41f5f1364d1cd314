"""
Stripe Checkout collaborator used by the net-banking transfer flow.

Talks to Stripe's form-encoded REST API directly with ``requests``.
"""
import logging
import os

import requests

logger = logging.getLogger(__name__)

PRODUCT_NAME = "Premium Service Subscription"
DEMO_CUSTOMER = {
    "email": "demo.customer@unipay.example",
    "name": "UniPay Demo Customer",
    "address[line1]": "123 Main Street",
    "address[city]": "Pune",
    "address[state]": "MH",
    "address[postal_code]": "410504",
    "address[country]": "IN",
}


class CheckoutError(Exception):
    pass


def parse_checkout_amount(value) -> int:
    """Whole rupees, as the transfer form submits them. Returns 0 when unusable."""
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return 0


class StripeCheckout:
    BASE_URL = "https://api.stripe.com/v1"

    def __init__(self, secret_key=None, frontend_url=None, timeout=15):
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.frontend_url = (frontend_url or os.getenv("FRONTEND_URL") or "http://localhost:5173").rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, data: dict) -> dict:
        if not self.secret_key:
            raise CheckoutError("Stripe is not configured")
        try:
            r = requests.post(f"{self.BASE_URL}{path}", data=data, auth=(self.secret_key, ""), timeout=self.timeout)
        except requests.RequestException as e:
            raise CheckoutError(f"Stripe unreachable: {e}") from e
        try:
            body = r.json()
        except ValueError:
            raise CheckoutError(f"Stripe returned non-JSON response (status={r.status_code})")
        if r.status_code >= 400:
            message = (body.get("error") or {}).get("message") or f"Stripe error {r.status_code}"
            raise CheckoutError(message)
        return body

    def create_session(self, amount: int) -> str:
        customer = self._post("/customers", DEMO_CUSTOMER)
        session = self._post("/checkout/sessions", {
            "payment_method_types[0]": "card",
            "line_items[0][price_data][currency]": "inr",
            "line_items[0][price_data][product_data][name]": PRODUCT_NAME,
            "line_items[0][price_data][unit_amount]": amount * 100,
            "line_items[0][quantity]": 1,
            "mode": "payment",
            "customer": customer["id"],
            "success_url": f"{self.frontend_url}/NetBanking?success=true",
            "cancel_url": f"{self.frontend_url}/NetBanking?canceled=true",
        })
        logger.info("Created checkout session %s for INR %s", session.get("id"), amount)
        return session["id"]
