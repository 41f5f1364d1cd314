"""
UniPay gateway: OTP handshake, transaction references, intent log,
Stripe Checkout proxy and KYC upload.
"""
import os
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from common.errors import UniPayError
from common.http_logging import configure_logging, install_request_logging
from gateway.checkout import CheckoutError, StripeCheckout, parse_checkout_amount
from gateway.otp_ledger import OtpLedger, validate_mobile
from gateway.sms import TwilioSmsGateway
from gateway.txn_refs import TxnRefIssuer

load_dotenv()

logger = configure_logging("gateway")

DEMO_OTP = "123456"
MAX_KYC_BYTES = 5 * 1024 * 1024
# Room for multipart boundaries and headers around a full-size file.
MULTIPART_OVERHEAD = 64 * 1024
KYC_MIME_PREFIX = "image/"


def _error(exc: UniPayError):
    return jsonify(exc.to_dict()), exc.http_status


def create_app(config=None, *, otp_ledger=None, txn_refs=None, sms_gateway=None, checkout=None) -> Flask:
    app = Flask(__name__)
    app.config.update(
        UPLOAD_FOLDER=os.environ.get("UPLOAD_FOLDER", os.path.abspath("uploads")),
        MAX_CONTENT_LENGTH=MAX_KYC_BYTES + MULTIPART_OVERHEAD,
        DEMO_OTP=DEMO_OTP,
    )
    if config:
        app.config.update(config)

    otp_ledger = otp_ledger or OtpLedger()
    txn_refs = txn_refs or TxnRefIssuer()
    sms_gateway = sms_gateway or TwilioSmsGateway()
    checkout = checkout or StripeCheckout()
    app.extensions["unipay_gateway"] = {
        "otp_ledger": otp_ledger,
        "txn_refs": txn_refs,
        "sms_gateway": sms_gateway,
        "checkout": checkout,
    }

    install_request_logging(app, logger)

    def file_too_large():
        return jsonify(success=False, error="File too large (max 5MB)"), 413

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(_e):
        return file_too_large()

    @app.get("/health")
    def health():
        return jsonify(status="ok", pending_otps=len(otp_ledger)), 200

    @app.post("/api/send-otp")
    def send_otp():
        data = request.get_json(silent=True) or {}
        mobile = data.get("mobile")
        try:
            validate_mobile(mobile)
        except UniPayError as e:
            return _error(e)

        otp_ledger.purge_expired()
        code = otp_ledger.new_code()
        if sms_gateway.send_otp(mobile, code):
            otp_ledger.issue(mobile, code)
            logger.info("OTP sent to %s", mobile)
            return jsonify(success=True, message="OTP sent successfully"), 200

        # SMS gateway down or unconfigured: degrade to the well-known demo code.
        demo_code = app.config["DEMO_OTP"]
        otp_ledger.issue(mobile, demo_code)
        logger.warning("SMS delivery unavailable, issued demo OTP for %s", mobile)
        return jsonify(success=True, message=f"OTP sent. Use {demo_code} in demo mode."), 200

    @app.post("/api/verify-otp")
    def verify_otp():
        data = request.get_json(silent=True) or {}
        mobile = data.get("mobile")
        otp = data.get("otp")
        if not mobile or not otp:
            return jsonify(success=False, error="Mobile and OTP required", code="VALIDATION"), 400
        try:
            otp_ledger.verify(str(mobile), str(otp))
        except UniPayError as e:
            logger.info("OTP verification failed for %s: %s", mobile, e.code)
            return _error(e)
        return jsonify(success=True, message="OTP verified successfully"), 200

    @app.post("/api/create-transaction")
    def create_transaction():
        data = request.get_json(silent=True) or {}
        try:
            record = txn_refs.create(data.get("amount"))
        except UniPayError as e:
            return _error(e)
        logger.info("Issued txnRef %s for amount %s", record.txn_ref, record.amount)
        return jsonify(success=True, txnRef=record.txn_ref), 200

    @app.post("/api/log-intent")
    def log_intent():
        data = request.get_json(silent=True) or {}
        entry = txn_refs.log_intent(
            txn_ref=data.get("txnRef"),
            upi_id=data.get("upiId"),
            amount=data.get("amount"),
            app_package=data.get("appPackage"),
            attempted_at=data.get("attemptedAt"),
        )
        logger.info("UPI intent logged | txnRef=%s | app=%s | amount=%s",
                    entry.txn_ref, entry.app_package, entry.amount)
        return jsonify(success=True), 200

    @app.post("/api/complete-transaction")
    def complete_transaction():
        data = request.get_json(silent=True) or {}
        try:
            record = txn_refs.complete(data.get("txnRef"), data.get("status"))
        except UniPayError as e:
            return _error(e)
        logger.info("txnRef %s settled as %s", record.txn_ref, record.status)
        return jsonify(success=True, txnRef=record.txn_ref, status=record.status), 200

    @app.get("/api/transactions/<txn_ref>")
    def get_transaction(txn_ref: str):
        try:
            record = txn_refs.get(txn_ref)
        except UniPayError as e:
            return _error(e)
        return jsonify(success=True, **record.to_dict()), 200

    @app.post("/create-checkout-session")
    def create_checkout_session():
        data = request.get_json(silent=True) or {}
        amount = parse_checkout_amount(data.get("amount"))
        if amount <= 0:
            return jsonify(error="Invalid amount provided"), 400
        try:
            session_id = checkout.create_session(amount)
        except CheckoutError as e:
            logger.error("Error creating checkout session: %s", e)
            return jsonify(error=str(e) or "Internal server error"), 500
        return jsonify(id=session_id), 200

    @app.post("/upload-kyc")
    def upload_kyc():
        upload = request.files.get("kycFile")
        if upload is None or not upload.filename:
            return jsonify(success=False, error="kycFile is required"), 400
        if not (upload.mimetype or "").startswith(KYC_MIME_PREFIX):
            return jsonify(success=False, error="Only image files are allowed"), 400

        upload.stream.seek(0, os.SEEK_END)
        size = upload.stream.tell()
        upload.stream.seek(0)
        if size > MAX_KYC_BYTES:
            logger.warning("Rejected KYC document %s of %d bytes", upload.filename, size)
            return file_too_large()

        folder = app.config["UPLOAD_FOLDER"]
        os.makedirs(folder, exist_ok=True)
        filename = f"{int(time.time() * 1000)}-{secure_filename(upload.filename)}"
        upload.save(os.path.join(folder, filename))
        logger.info("Stored KYC document %s", filename)
        return jsonify(success=True, fileURL=f"{request.host_url.rstrip('/')}/uploads/{filename}"), 200

    @app.get("/uploads/<path:filename>")
    def uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    return app


def main():
    port = int(os.environ.get("PORT", 5000))
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    app = create_app()
    logger.info(f"[Gateway] Starting on 0.0.0.0:{port}")
    app.run(host="0.0.0.0", port=port, debug=debug_mode)


if __name__ == "__main__":
    main()
