"""
Payment UI host: JSON API behind the browser payment dialog, the UPI intent
flow and the transaction history view.
"""
import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, session

from common.errors import ExternalUnavailableError, UniPayError
from common.http_logging import configure_logging, install_request_logging
from payment_ui.card_payment import record_card_payment
from payment_ui.db import get_engine, init_db
from payment_ui.deep_link import DeepLinker, format_amount, is_mobile_client
from payment_ui.engine import PAYMENT_METHODS, PaymentEngine
from payment_ui.gateway_client import GatewayClient
from payment_ui.ledger import (
    LedgerFilter,
    TransactionLedger,
    TransactionNotFoundError,
    export_csv,
    filter_transactions,
    summarize,
)
from payment_ui.scheduler import BackgroundLoop
from payment_ui.upi_intent import UPI_APPS, UpiIntentFlow, UpiSession

load_dotenv()

logger = configure_logging("payment_ui")

DEMO_SHOPPING = [
    {"label": "Amazon (₹299)", "amount": "299", "merchant": "Amazon India"},
    {"label": "Swiggy (₹150)", "amount": "150", "merchant": "Swiggy"},
]
METHOD_LABELS = {m["id"]: m["name"] for m in PAYMENT_METHODS}
UPI_SESSION_KEY = "upi"


def _optional_decimal(value):
    if value in (None, ""):
        return None
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def create_app(config=None, *, engine=None, runner=None, ledger=None, gateway=None, upi_flow=None) -> Flask:
    """
    Build the UI host. Without injected collaborators it starts a background
    event loop for the engine and talks to the gateway at ``GATEWAY_URL``.
    """
    app = Flask(__name__)
    app.config.update(
        DATABASE_URL=os.environ.get("DATABASE_URL"),
        GATEWAY_URL=os.environ.get("GATEWAY_URL", "http://localhost:5000"),
        SECRET_KEY=os.getenv("UNIPAY_SECRET", "dev-secret-key"),
    )
    if config:
        app.config.update(config)

    gateway = gateway or GatewayClient(app.config["GATEWAY_URL"])
    if ledger is None:
        ledger = TransactionLedger(init_db(get_engine(app.config["DATABASE_URL"])))
    if engine is None:
        loop = BackgroundLoop().start()
        runner = loop
        engine = PaymentEngine(
            loop.scheduler,
            ledger=ledger,
            reference_client=gateway,
            deep_linker=DeepLinker(intent_logger=gateway.log_intent),
        )
    elif runner is None:
        raise ValueError("runner is required when an engine is injected")
    upi_flow = upi_flow or UpiIntentFlow(gateway)

    app.extensions["unipay_ui"] = {"engine": engine, "runner": runner, "ledger": ledger, "upi_flow": upi_flow}
    install_request_logging(app, logger)

    @app.errorhandler(UniPayError)
    def handle_unipay_error(e: UniPayError):
        return jsonify(e.to_dict()), e.http_status

    @app.get("/health")
    def health():
        return jsonify(status="ok"), 200

    @app.get("/api/methods")
    def methods():
        return jsonify(methods=list(PAYMENT_METHODS), upiApps=[{"id": k, **v} for k, v in UPI_APPS.items()]), 200

    @app.get("/api/demo-shopping")
    def demo_shopping():
        return jsonify(items=DEMO_SHOPPING), 200

    @app.post("/api/payments")
    def start_payment():
        data = request.get_json(silent=True) or {}
        method_id = (data.get("methodId") or "").strip().lower()
        if method_id not in METHOD_LABELS:
            return jsonify(success=False, error=f"Unknown payment method: {method_id or 'N/A'}", code="VALIDATION"), 400
        mobile = is_mobile_client(request.headers.get("User-Agent"))

        runner.call(engine.start_payment, method_id, METHOD_LABELS[method_id],
                    data.get("amount"), data.get("merchant"), mobile_client=mobile)
        snapshot = runner.call(engine.snapshot)
        return jsonify(success=True, **snapshot), 202

    @app.get("/api/payments/current")
    def current_payment():
        return jsonify(runner.call(engine.snapshot)), 200

    @app.post("/api/payments/cancel")
    def cancel_payment():
        runner.call(engine.close)
        return jsonify(success=True, **runner.call(engine.snapshot)), 200

    @app.get("/api/transactions")
    def list_transactions():
        args = request.args
        criteria = LedgerFilter(
            search=args.get("search", ""),
            date_range=args.get("range", "all"),
            min_amount=_optional_decimal(args.get("minAmount")),
            max_amount=_optional_decimal(args.get("maxAmount")),
            status=args.get("status", "all"),
            txn_type=args.get("type", "all"),
            tab=args.get("tab", "all"),
        )
        txns = filter_transactions(ledger.list(), criteria)
        return jsonify(transactions=[t.to_dict() for t in txns], summary=summarize(txns)), 200

    @app.get("/api/transactions/export")
    def export_transactions():
        body = export_csv(ledger.list())
        return Response(body, mimetype="text/csv",
                        headers={"Content-Disposition": "attachment; filename=transaction-history.csv"})

    @app.get("/api/transactions/<txn_id>")
    def get_transaction(txn_id):
        txn = ledger.get(txn_id)
        if txn is None:
            raise TransactionNotFoundError(f"Transaction not found: {txn_id}")
        return jsonify(txn.to_dict()), 200

    @app.post("/api/card-payments")
    def card_payment():
        data = request.get_json(silent=True) or {}
        txn = record_card_payment(ledger, data)
        return jsonify(success=True, message=f"Payment of ₹{format_amount(abs(txn.amount))} recorded.",
                       transaction=txn.to_dict()), 201

    def upi_state() -> UpiSession:
        return UpiSession.from_dict(session.get(UPI_SESSION_KEY))

    def save_upi_state(state: UpiSession) -> None:
        session[UPI_SESSION_KEY] = state.to_dict()

    @app.post("/api/upi/send-otp")
    def upi_send_otp():
        data = request.get_json(silent=True) or {}
        state = upi_state()
        try:
            status, body = upi_flow.send_otp(state, str(data.get("mobile") or ""))
        except ExternalUnavailableError as e:
            logger.error("Error sending OTP: %s", e)
            return jsonify(e.to_dict()), e.http_status
        save_upi_state(state)
        return jsonify(body), status

    @app.post("/api/upi/verify-otp")
    def upi_verify_otp():
        data = request.get_json(silent=True) or {}
        state = upi_state()
        try:
            status, body = upi_flow.verify_otp(state, str(data.get("otp") or ""))
        except ExternalUnavailableError as e:
            logger.error("Error verifying OTP: %s", e)
            return jsonify(e.to_dict()), e.http_status
        save_upi_state(state)
        return jsonify(body), status

    @app.post("/api/upi/intent")
    def upi_intent():
        data = request.get_json(silent=True) or {}
        state = upi_state()
        intent = upi_flow.build_intent(state, data.get("amount"), data.get("appId"))
        save_upi_state(state)
        return jsonify(intent), 200

    @app.post("/api/upi/reset")
    def upi_reset():
        session.pop(UPI_SESSION_KEY, None)
        return jsonify(success=True), 200

    return app


def main():
    port = int(os.environ.get("PAYMENT_UI_PORT", 9992))
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    app = create_app()
    logger.info(f"[Payment UI] Starting on 0.0.0.0:{port}")
    logger.info(f"[Payment UI] Gateway URL: {app.config['GATEWAY_URL']}")
    # The reloader would start a second engine loop in the child process.
    app.run(host="0.0.0.0", port=port, debug=debug_mode, use_reloader=False)


if __name__ == "__main__":
    main()
