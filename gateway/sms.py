import logging
import os

import requests

logger = logging.getLogger(__name__)


class TwilioSmsGateway:
    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(self, account_sid=None, auth_token=None, from_number=None, country_code="91", timeout=10):
        self.account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        self.from_number = from_number or os.getenv("TWILIO_PHONE_NUMBER")
        self.country_code = country_code
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_sms(self, mobile: str, body: str) -> bool:
        if not self.configured:
            logger.warning("Twilio credentials not configured; SMS to %s not sent", mobile)
            return False

        url = f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        data = {
            "To": f"+{self.country_code}{mobile}",
            "From": self.from_number,
            "Body": body,
        }
        try:
            response = requests.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Twilio HTTP request failed for %s: %s", mobile, exc)
            return False

        if response.status_code not in (200, 201):
            logger.error("Twilio send failed (status=%s) for %s: %s", response.status_code, mobile, response.text)
            return False
        return True

    def send_otp(self, mobile: str, otp: str) -> bool:
        return self.send_sms(mobile, f"Your OTP for UniPay is: {otp}")
