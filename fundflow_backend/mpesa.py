"""Client for Safaricom's Daraja API (OAuth token + Lipa Na M-Pesa STK push)."""
import base64
import re
from datetime import datetime

import requests
from flask import current_app

from fundflow_backend.errors import GatewayAuthError, GatewayRequestError

COUNTRY_CODE = "254"


def format_phone_number(phone):
    """Normalize a Kenyan phone number to the ``2547XXXXXXXX`` form Daraja expects.

    Spaces, dashes and ``+`` are dropped, a leading ``0`` becomes the country
    code, and anything not already prefixed gets the country code prepended.
    The number of digits is not checked.
    """
    cleaned = re.sub(r"[\s\-+]", "", str(phone))
    if cleaned.startswith("0"):
        cleaned = COUNTRY_CODE + cleaned[1:]
    if not cleaned.startswith(COUNTRY_CODE):
        cleaned = COUNTRY_CODE + cleaned
    return cleaned


def generate_password(shortcode, passkey, timestamp=None):
    # STK push password is base64(shortcode + passkey + timestamp)
    timestamp = timestamp or datetime.now().strftime("%Y%m%d%H%M%S")
    password = base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()
    return password, timestamp


class MpesaClient:
    def __init__(self, config, session=None):
        self.config = config
        self.session = session or requests.Session()

    def get_access_token(self):
        config = self.config
        if not config.has_credentials():
            raise GatewayAuthError("M-Pesa credentials not configured")

        auth = base64.b64encode(f"{config.consumer_key}:{config.consumer_secret}".encode()).decode()
        try:
            response = self.session.get(
                config.token_url,
                headers={"Authorization": f"Basic {auth}"},
                timeout=config.timeout,
            )
        except requests.RequestException as e:
            raise GatewayAuthError(f"Token request failed: {e}") from e

        if not response.ok:
            raise GatewayAuthError(f"Token request returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayAuthError("Token response is not JSON") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise GatewayAuthError("Token response has no access_token")
        return token

    def stk_push(self, amount, phone, account_reference, description):
        """Send an STK push and return the gateway's JSON body.

        Rejections (``ResponseCode`` other than ``"0"``, or Daraja's
        ``errorCode``/``errorMessage`` bodies on 4xx) are returned as-is for the
        caller to inspect; only transport failures and unreadable bodies raise.
        """
        config = self.config
        access_token = self.get_access_token()
        password, timestamp = generate_password(config.shortcode, config.passkey)

        payload = {
            "BusinessShortCode": config.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": config.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.post(config.stk_push_url, json=payload, headers=headers, timeout=config.timeout)
            response_data = response.json()
        except requests.RequestException as e:
            raise GatewayRequestError(f"STK Push request failed: {e}") from e
        except ValueError as e:
            raise GatewayRequestError("STK Push response is not JSON") from e

        current_app.logger.info(f"M-Pesa STK Push response: {response_data}")
        if not isinstance(response_data, dict):
            raise GatewayRequestError("STK Push response is not a JSON object")
        return response_data


def push_accepted(response_data):
    return str(response_data.get("ResponseCode")) == "0"


def push_description(response_data):
    return (
        response_data.get("ResponseDescription")
        or response_data.get("errorMessage")
        or "STK Push failed"
    )
