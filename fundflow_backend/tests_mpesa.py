import base64

import pytest
import requests

from fundflow_backend.app import app
from fundflow_backend.config import MpesaConfig, PRODUCTION_BASE_URL, SANDBOX_BASE_URL
from fundflow_backend.conftest import FakeResponse, FakeSession, TEST_MPESA_CONFIG
from fundflow_backend.errors import GatewayAuthError, GatewayRequestError
from fundflow_backend.mpesa import MpesaClient, format_phone_number, generate_password, push_accepted, push_description


def test_format_phone_number():
    assert format_phone_number("0712345678") == "254712345678"
    assert format_phone_number("254712345678") == "254712345678"
    assert format_phone_number("712345678") == "254712345678"
    # separators and the plus sign are dropped before prefixing
    assert format_phone_number("+254 712-345-678") == "254712345678"
    assert format_phone_number("0712 345 678") == "254712345678"


def test_generate_password():
    password, timestamp = generate_password("174379", "passkey", "20240101120000")
    assert timestamp == "20240101120000"
    assert base64.b64decode(password).decode() == "174379passkey20240101120000"

    _, generated = generate_password("174379", "passkey")
    assert len(generated) == 14 and generated.isdigit()


def test_config_from_env():
    config = MpesaConfig.from_env({
        "MPESA_CONSUMER_KEY": "k",
        "MPESA_CONSUMER_SECRET": "s",
        "MPESA_SHORTCODE": "600000",
        "PUBLIC_APP_URL": "https://donate.example/",
        "MPESA_ENV": "production",
    })
    assert config.base_url == PRODUCTION_BASE_URL
    assert config.callback_url == "https://donate.example/api/mpesa-callback"
    assert config.has_credentials()

    assert MpesaConfig.from_env({}).base_url == SANDBOX_BASE_URL
    assert not MpesaConfig.from_env({}).has_credentials()


def test_access_token_uses_basic_auth():
    session = FakeSession()
    client = MpesaClient(TEST_MPESA_CONFIG, session=session)
    assert client.get_access_token() == "test-access-token"

    method, url, headers, _ = session.calls[0]
    assert method == "GET"
    assert url == "https://gateway.example/oauth/v1/generate?grant_type=client_credentials"
    expected = base64.b64encode(b"test-key:test-secret").decode()
    assert headers["Authorization"] == f"Basic {expected}"


def test_access_token_failures():
    # credentials unset: the gateway is never contacted
    session = FakeSession()
    with pytest.raises(GatewayAuthError):
        MpesaClient(MpesaConfig(), session=session).get_access_token()
    assert session.calls == []

    session.token_response = FakeResponse(401, {"errorMessage": "Invalid Authentication passed"})
    with pytest.raises(GatewayAuthError):
        MpesaClient(TEST_MPESA_CONFIG, session=session).get_access_token()

    session.token_response = FakeResponse(200, {"expires_in": "3599"})
    with pytest.raises(GatewayAuthError):
        MpesaClient(TEST_MPESA_CONFIG, session=session).get_access_token()

    session.token_response = requests.ConnectionError("connection refused")
    with pytest.raises(GatewayAuthError):
        MpesaClient(TEST_MPESA_CONFIG, session=session).get_access_token()


def test_stk_push_payload():
    session = FakeSession()
    client = MpesaClient(TEST_MPESA_CONFIG, session=session)
    with app.app_context():
        data = client.stk_push(amount=100.0, phone="254712345678",
                               account_reference="Donation-1", description="Donation for project 1")
    assert push_accepted(data)

    method, url, headers, payload = session.calls[1]
    assert method == "POST"
    assert url == "https://gateway.example/mpesa/stkpush/v1/processrequest"
    assert headers["Authorization"] == "Bearer test-access-token"
    assert payload["BusinessShortCode"] == "174379"
    assert payload["PartyB"] == "174379"
    assert payload["Amount"] == 100
    assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
    assert payload["TransactionType"] == "CustomerPayBillOnline"
    assert payload["CallBackURL"] == "https://fundflow.example/api/mpesa-callback"
    assert payload["AccountReference"] == "Donation-1"
    decoded = base64.b64decode(payload["Password"]).decode()
    assert decoded == "174379test-passkey" + payload["Timestamp"]


def test_stk_push_transport_errors():
    session = FakeSession()
    client = MpesaClient(TEST_MPESA_CONFIG, session=session)
    with app.app_context():
        session.push_response = requests.Timeout("read timed out")
        with pytest.raises(GatewayRequestError):
            client.stk_push(10, "254712345678", "Donation-1", "test")

        session.push_response = FakeResponse(502, None)
        with pytest.raises(GatewayRequestError):
            client.stk_push(10, "254712345678", "Donation-1", "test")


def test_push_response_helpers():
    assert push_accepted({"ResponseCode": "0"})
    assert push_accepted({"ResponseCode": 0})
    assert not push_accepted({"ResponseCode": "1", "ResponseDescription": "Rejected"})
    assert not push_accepted({"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

    assert push_description({"ResponseDescription": "Rejected"}) == "Rejected"
    assert push_description({"errorMessage": "Bad Request - Invalid Amount"}) == "Bad Request - Invalid Amount"
    assert push_description({}) == "STK Push failed"
