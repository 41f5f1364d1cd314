from unittest.mock import MagicMock

import pytest

from gateway.app import create_app as create_gateway_app
from gateway.otp_ledger import OtpLedger
from gateway.txn_refs import TxnRefIssuer
from payment_ui.app import create_app as create_ui_app
from payment_ui.db import get_engine, init_db
from payment_ui.engine import PaymentEngine
from payment_ui.ledger import TransactionLedger
from payment_ui.scheduler import InlineRunner, VirtualScheduler


class FixedRandom:
    """Random source that always returns the same value."""

    def __init__(self, value):
        self.value = value
        self.calls = 0

    def random(self):
        self.calls += 1
        return self.value


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def ledger():
    return TransactionLedger(init_db(get_engine("sqlite://")))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(scheduler, ledger):
    def factory(value=1.0, **kwargs):
        kwargs.setdefault("ledger", ledger)
        return PaymentEngine(scheduler, random_source=FixedRandom(value), **kwargs)

    return factory


@pytest.fixture
def sms_gateway():
    sms = MagicMock()
    sms.send_otp.return_value = False
    return sms


@pytest.fixture
def checkout():
    return MagicMock()


@pytest.fixture
def gateway_app(tmp_path, clock, sms_gateway, checkout):
    app = create_gateway_app(
        {"TESTING": True, "UPLOAD_FOLDER": str(tmp_path / "uploads")},
        otp_ledger=OtpLedger(clock=clock, code_factory=lambda: "654321"),
        txn_refs=TxnRefIssuer(clock=clock),
        sms_gateway=sms_gateway,
        checkout=checkout,
    )
    return app


@pytest.fixture
def gateway_client(gateway_app):
    return gateway_app.test_client()


@pytest.fixture
def ui_gateway():
    gw = MagicMock()
    gw.create_transaction.return_value = None
    return gw


@pytest.fixture
def ui_app(scheduler, ledger, ui_gateway):
    engine = PaymentEngine(scheduler, random_source=FixedRandom(1.0), ledger=ledger)
    app = create_ui_app(
        {"TESTING": True},
        engine=engine,
        runner=InlineRunner(scheduler),
        ledger=ledger,
        gateway=ui_gateway,
    )
    return app


@pytest.fixture
def ui_client(ui_app):
    return ui_app.test_client()
