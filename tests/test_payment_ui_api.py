import csv
import io
from unittest.mock import MagicMock

import pytest
import requests

from common.errors import ExternalUnavailableError
from payment_ui.app import create_app
from payment_ui.engine import PaymentEngine
from payment_ui.gateway_client import GatewayClient
from payment_ui.scheduler import VirtualScheduler

ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Mobile Safari/537.36"


def _pay(client, **overrides):
    payload = {"methodId": "gpay", "amount": "150", "merchant": "Swiggy"}
    payload.update(overrides)
    return client.post("/api/payments", json=payload)


def test_health_and_catalogue(ui_client):
    assert ui_client.get("/health").get_json() == {"status": "ok"}
    body = ui_client.get("/api/methods").get_json()
    assert [m["id"] for m in body["methods"]] == ["gpay", "phonepe", "paytm", "upi"]
    assert {a["id"] for a in body["upiApps"]} == {"gpay", "phonepe", "paytm", "amazon", "bhim"}
    items = ui_client.get("/api/demo-shopping").get_json()["items"]
    assert [i["merchant"] for i in items] == ["Amazon India", "Swiggy"]


def test_payment_runs_to_completion(ui_client, scheduler):
    r = _pay(ui_client)
    assert r.status_code == 202
    body = r.get_json()
    assert body["success"] is True
    assert body["status"] == "PENDING"
    assert body["attempt"]["reference"] is None
    assert body["attempt"]["notices"][0]["title"] == "Simulating payment"

    scheduler.advance(2.2)
    attempt = ui_client.get("/api/payments/current").get_json()["attempt"]
    assert attempt["status"] == "COMPLETED"
    assert attempt["statusHistory"] == ["IDLE", "INITIATED", "PENDING", "COMPLETED"]
    assert attempt["maskedReference"] == attempt["reference"]
    assert attempt["transaction"]["amount"] == -150.0

    listing = ui_client.get("/api/transactions").get_json()
    assert [t["merchant"] for t in listing["transactions"]] == ["Swiggy"]
    assert listing["summary"]["totalDebits"] == 150.0

    scheduler.advance(1)
    assert ui_client.get("/api/payments/current").get_json()["attempt"] is None


def test_concurrent_start_rejected(ui_client):
    assert _pay(ui_client).status_code == 202
    r = _pay(ui_client, merchant="Zomato")
    assert r.status_code == 409
    assert r.get_json()["code"] == "PAYMENT_IN_FLIGHT"


def test_validation_errors(ui_client):
    r = _pay(ui_client, amount="0", merchant="ab")
    assert r.status_code == 400
    body = r.get_json()
    assert body["code"] == "VALIDATION"
    assert set(body["fields"]) == {"amount", "merchant"}
    assert ui_client.get("/api/payments/current").get_json()["attempt"] is None


def test_unknown_method(ui_client):
    r = _pay(ui_client, methodId="bitcoin")
    assert r.status_code == 400
    assert "Unknown payment method" in r.get_json()["error"]


def test_mobile_user_agent_gets_handoff(ui_client):
    r = ui_client.post("/api/payments", json={"methodId": "phonepe", "amount": "299", "merchant": "Amazon India"},
                       headers={"User-Agent": ANDROID_UA})
    handoff = r.get_json()["attempt"]["handoff"]
    assert handoff["uri"].startswith("upi://pay?pa=amazonpay%40apl&pn=Amazon%20India&am=299")


def test_cancel_discards_attempt(ui_client, scheduler):
    _pay(ui_client)
    scheduler.advance(1)
    r = ui_client.post("/api/payments/cancel")
    assert r.get_json()["attempt"] is None
    scheduler.advance(10)
    assert ui_client.get("/api/transactions").get_json()["transactions"] == []


def test_transaction_filters_and_export(ui_client, scheduler):
    _pay(ui_client)
    scheduler.advance(3)
    _pay(ui_client, amount="1200", merchant="Flipkart")
    scheduler.advance(3)

    r = ui_client.get("/api/transactions", query_string={"minAmount": "500"})
    assert [t["merchant"] for t in r.get_json()["transactions"]] == ["Flipkart"]
    r = ui_client.get("/api/transactions", query_string={"search": "swig", "maxAmount": "abc"})
    assert [t["merchant"] for t in r.get_json()["transactions"]] == ["Swiggy"]

    r = ui_client.get("/api/transactions/export")
    assert r.mimetype == "text/csv"
    assert "transaction-history.csv" in r.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(r.get_data(as_text=True))))
    assert len(rows) == 3
    assert {row[2] for row in rows[1:]} == {"Swiggy", "Flipkart"}


def test_injected_engine_requires_runner(ledger, ui_gateway):
    engine = PaymentEngine(VirtualScheduler())
    with pytest.raises(ValueError):
        create_app({"TESTING": True}, engine=engine, ledger=ledger, gateway=ui_gateway)


class TestUpiIntentFlow:
    def _verify(self, client, gateway):
        gateway.send_otp.return_value = (200, {"success": True, "message": "OTP sent successfully"})
        gateway.verify_otp.return_value = (200, {"success": True, "message": "OTP verified successfully"})
        assert client.post("/api/upi/send-otp", json={"mobile": "9876543210"}).status_code == 200
        assert client.post("/api/upi/verify-otp", json={"otp": "482913"}).status_code == 200
        gateway.verify_otp.assert_called_once_with("9876543210", "482913")

    def test_intent_for_specific_app(self, ui_client, ui_gateway):
        self._verify(ui_client, ui_gateway)
        ui_gateway.create_transaction.return_value = "TXN1700000000000BEEF"

        r = ui_client.post("/api/upi/intent", json={"amount": "99.5", "appId": "phonepe"})
        body = r.get_json()
        assert body["txnRef"] == "TXN1700000000000BEEF"
        assert body["upiUri"] == (
            "upi://pay?pa=unipay.merchant%40oksbi&pn=UniPay%20Merchant&am=99.5&cu=INR"
            "&tn=Order%20TXN1700000000000BEEF&tr=TXN1700000000000BEEF"
        )
        assert body["uri"].startswith("intent://upi/pay?")
        assert body["uri"].endswith("package=com.phonepe.app;end")
        kwargs = ui_gateway.log_intent.call_args.kwargs
        assert kwargs["app_package"] == "com.phonepe.app"
        assert kwargs["amount"] == "99.5"

    def test_generic_intent_falls_back_to_local_reference(self, ui_client, ui_gateway):
        self._verify(ui_client, ui_gateway)
        ui_gateway.create_transaction.side_effect = ExternalUnavailableError("down")
        body = ui_client.post("/api/upi/intent", json={"amount": "10", "appId": "bhim"}).get_json()
        assert body["txnRef"].startswith("TXN")
        assert body["uri"] == body["upiUri"]

    def test_intent_requires_verified_otp(self, ui_client):
        r = ui_client.post("/api/upi/intent", json={"amount": "10"})
        assert r.status_code == 403
        assert r.get_json()["code"] == "OTP_NOT_VERIFIED"

    def test_intent_rejects_bad_amount(self, ui_client, ui_gateway):
        self._verify(ui_client, ui_gateway)
        r = ui_client.post("/api/upi/intent", json={"amount": "0"})
        assert r.status_code == 400

    def test_send_otp_validates_locally(self, ui_client, ui_gateway):
        r = ui_client.post("/api/upi/send-otp", json={"mobile": "12345"})
        assert r.status_code == 400
        assert r.get_json()["error"] == "Enter a valid 10-digit Indian mobile number"
        ui_gateway.send_otp.assert_not_called()

    def test_gateway_down_is_502(self, ui_client, ui_gateway):
        ui_gateway.send_otp.side_effect = ExternalUnavailableError("Gateway unreachable")
        r = ui_client.post("/api/upi/send-otp", json={"mobile": "9876543210"})
        assert r.status_code == 502
        assert r.get_json()["code"] == "EXTERNAL_UNAVAILABLE"

    def test_verify_before_send(self, ui_client):
        r = ui_client.post("/api/upi/verify-otp", json={"otp": "123456"})
        assert r.status_code == 400
        assert r.get_json()["code"] == "NO_PENDING_OTP"

    def test_reset_clears_verification(self, ui_client, ui_gateway):
        self._verify(ui_client, ui_gateway)
        assert ui_client.post("/api/upi/reset").get_json() == {"success": True}
        assert ui_client.post("/api/upi/intent", json={"amount": "10"}).status_code == 403

    def test_verification_is_per_browser(self, ui_app, ui_client, ui_gateway):
        self._verify(ui_client, ui_gateway)
        other = ui_app.test_client()

        r = other.post("/api/upi/intent", json={"amount": "10"})
        assert r.status_code == 403
        assert r.get_json()["code"] == "OTP_NOT_VERIFIED"
        r = other.post("/api/upi/verify-otp", json={"otp": "482913"})
        assert r.get_json()["code"] == "NO_PENDING_OTP"

        ui_gateway.create_transaction.return_value = "TXN1700000000000CAFE"
        assert ui_client.post("/api/upi/intent", json={"amount": "10"}).status_code == 200

    def test_reset_in_one_browser_leaves_another_verified(self, ui_app, ui_client, ui_gateway):
        other = ui_app.test_client()
        self._verify(ui_client, ui_gateway)
        ui_gateway.verify_otp.reset_mock()
        self._verify(other, ui_gateway)

        ui_client.post("/api/upi/reset")
        assert ui_client.post("/api/upi/intent", json={"amount": "10"}).status_code == 403
        assert other.post("/api/upi/intent", json={"amount": "10"}).status_code == 200


def test_gateway_client_maps_network_errors():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")
    client = GatewayClient("http://gateway.local", session=session)
    with pytest.raises(ExternalUnavailableError):
        client.send_otp("9876543210")
    # log_intent never raises.
    client.log_intent(txn_ref="T", upi_id="a@b", amount="1", app_package="gpay", attempted_at="now")

    session.post.side_effect = None
    session.post.return_value = MagicMock(status_code=200, json=MagicMock(return_value={"success": True, "txnRef": "TXN9"}))
    assert client.create_transaction("150") == "TXN9"
    assert session.post.call_args.kwargs["timeout"] == 2


CARD_PAYMENT = {
    "amount": "499.00",
    "cardNumber": "4111 1111 1111 1234",
    "expiryDate": "09/28",
    "cvv": "321",
    "nameOnCard": "Asha Rao",
    "saveCard": False,
    "merchantName": "Big Basket",
    "date": "2024-06-15",
    "description": "Weekly groceries",
    "category": "Groceries",
}


class TestCardPayments:
    def test_recorded_in_ledger(self, ui_client, ledger):
        r = ui_client.post("/api/card-payments", json=CARD_PAYMENT)
        assert r.status_code == 201
        body = r.get_json()
        assert body["message"] == "Payment of ₹499 recorded."
        txn = body["transaction"]
        assert txn["id"].startswith("tx-card-")
        assert txn["amount"] == -499.0
        assert txn["status"] == "Completed"
        assert txn["paymentMethod"] == "Card ending 1234"
        assert txn["date"] == "2024-06-15"

        stored = ledger.get(txn["id"])
        assert stored.merchant == "Big Basket"
        assert stored.category == "Groceries"
        assert stored.reference == "CARD1234"
        assert stored.notes is None

    def test_every_field_is_checked(self, ui_client, ledger):
        r = ui_client.post("/api/card-payments", json={})
        assert r.status_code == 400
        body = r.get_json()
        assert body["code"] == "VALIDATION"
        assert body["fields"] == {
            "amount": "Enter a valid amount",
            "cardNumber": "Invalid card number",
            "expiryDate": "Invalid expiry date",
            "cvv": "Invalid CVV",
            "nameOnCard": "Name required",
            "merchantName": "Merchant name required",
            "date": "Date must be in YYYY-MM-DD",
            "description": "Description required",
            "category": "Category required",
        }
        assert ledger.list() == []

    @pytest.mark.parametrize("field, value", [
        ("amount", "0"),
        ("amount", "abc"),
        ("cardNumber", "4111 1111 1111 123"),
        ("cardNumber", "4111-1111-1111-1234"),
        ("expiryDate", "9/28"),
        ("expiryDate", "09/2028"),
        ("cvv", "12"),
        ("cvv", "12a"),
        ("nameOnCard", "   "),
        ("merchantName", ""),
        ("date", "15/06/2024"),
        ("description", " "),
        ("category", None),
    ])
    def test_single_bad_field(self, ui_client, field, value):
        r = ui_client.post("/api/card-payments", json={**CARD_PAYMENT, field: value})
        assert r.status_code == 400
        assert list(r.get_json()["fields"]) == [field]

    def test_each_payment_gets_its_own_id(self, ui_client, ledger):
        first = ui_client.post("/api/card-payments", json=CARD_PAYMENT).get_json()["transaction"]["id"]
        second = ui_client.post("/api/card-payments", json=CARD_PAYMENT).get_json()["transaction"]["id"]
        assert first != second
        assert len(ledger.list()) == 2


class TestTransactionLookup:
    def test_found(self, ui_client):
        txn_id = ui_client.post("/api/card-payments", json=CARD_PAYMENT).get_json()["transaction"]["id"]
        r = ui_client.get(f"/api/transactions/{txn_id}")
        assert r.status_code == 200
        assert r.get_json()["merchant"] == "Big Basket"

    def test_missing_is_404(self, ui_client):
        r = ui_client.get("/api/transactions/tx-nope")
        assert r.status_code == 404
        assert r.get_json()["code"] == "TXN_NOT_FOUND"

    def test_export_is_not_a_lookup(self, ui_client):
        r = ui_client.get("/api/transactions/export")
        assert r.status_code == 200
        assert r.mimetype == "text/csv"
