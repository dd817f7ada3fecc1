from fundflow_backend.app import app
from fundflow_backend.conftest import FakeResponse
from fundflow_backend.models import Donation, db


def _donations():
    with app.app_context():
        return [d.to_dict() for d in Donation.query.order_by(Donation.id).all()]


def test_missing_fields_rejected_without_donation(gateway, make_project):
    project_id = make_project()
    with app.test_client() as client:
        for body in [
            {"phone": "0712345678", "projectId": project_id},
            {"amount": 100, "projectId": project_id},
            {"amount": 100, "phone": "0712345678"},
            {},
        ]:
            r = client.post('/api/stk-push', json=body)
            assert r.status_code == 400
            assert r.get_json()["error"] == "Missing required fields"

    assert _donations() == []
    assert gateway.calls == []


def test_invalid_amount_and_unknown_project(gateway, make_project):
    project_id = make_project()
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": "abc", "phone": "0712345678", "projectId": project_id})
        assert r.status_code == 400

        # infinity and values past the Integer column are rejected before any insert
        for amount in ["1e400", "1e20", 2 ** 31]:
            r = client.post('/api/stk-push', json={"amount": amount, "phone": "0712345678", "projectId": project_id})
            assert r.status_code == 400
            assert r.get_json()["error"] in ("Invalid amount provided", "Amount is too large")

        r = client.post('/api/stk-push', json={"amount": 100, "phone": "0712345678", "projectId": 9999})
        assert r.status_code == 400
        assert r.get_json()["error"] == "Project not found"

    assert _donations() == []


def test_accepted_push_stores_correlation_ids(gateway, make_project):
    project_id = make_project()
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": "250", "phone": "0712345678", "projectId": project_id})
        assert r.status_code == 200
        data = r.get_json()
        assert data["success"] is True
        assert data["checkoutRequestId"] == "ws_CO_191220191020363925"

    donations = _donations()
    assert len(donations) == 1
    donation = donations[0]
    assert donation["id"] == data["donationId"]
    assert donation["status"] == "pending"
    assert donation["amount"] == 250
    assert donation["phone_number"] == "254712345678"
    assert donation["checkout_request_id"] == "ws_CO_191220191020363925"
    assert donation["merchant_request_id"] == "29115-34620561-1"

    payload = gateway.calls[-1][3]
    assert payload["AccountReference"] == f"Donation-{donation['id']}"
    assert payload["TransactionDesc"] == f"Donation for project {project_id}"


def test_rejected_push_marks_donation_failed(gateway, make_project):
    project_id = make_project()
    gateway.push_response = FakeResponse(200, {
        "MerchantRequestID": "29115-34620561-2",
        "CheckoutRequestID": "ws_CO_191220191020363926",
        "ResponseCode": "1",
        "ResponseDescription": "Rejected by the gateway",
    })
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": 100, "phone": "712345678", "projectId": project_id})
        assert r.status_code == 400
        assert r.get_json() == {"success": False, "error": "Rejected by the gateway"}

    donation = _donations()[0]
    assert donation["status"] == "failed"
    assert donation["checkout_request_id"] is None
    assert donation["merchant_request_id"] is None
    assert donation["failure_reason"] == "Rejected by the gateway"


def test_gateway_error_body_is_a_rejection(gateway, make_project):
    project_id = make_project()
    gateway.push_response = FakeResponse(400, {
        "requestId": "4788-81090592-1",
        "errorCode": "400.002.02",
        "errorMessage": "Bad Request - Invalid PhoneNumber",
    })
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": 100, "phone": "07", "projectId": project_id})
        assert r.status_code == 400
        assert r.get_json()["error"] == "Bad Request - Invalid PhoneNumber"
    assert _donations()[0]["status"] == "failed"


def test_gateway_auth_failure_keeps_pending_donation(gateway, make_project):
    project_id = make_project()
    gateway.token_response = FakeResponse(500, {"errorMessage": "Internal Server Error"})
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": 100, "phone": "0712345678", "projectId": project_id})
        assert r.status_code == 500
        # details stay in the log
        assert r.get_json() == {"error": "Internal server error"}

    donations = _donations()
    assert len(donations) == 1
    assert donations[0]["status"] == "pending"
    assert donations[0]["checkout_request_id"] is None


def test_unexpected_error_is_generic_500(gateway, make_project):
    project_id = make_project()
    gateway.push_response = RuntimeError("boom")
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": 100, "phone": "0712345678", "projectId": project_id})
        assert r.status_code == 500
        assert r.get_json() == {"error": "Internal server error"}
    assert _donations()[0]["status"] == "pending"


def test_donation_status_endpoint(gateway, make_project):
    project_id = make_project()
    with app.test_client() as client:
        r = client.post('/api/stk-push', json={"amount": 100, "phone": "0712345678", "projectId": project_id})
        donation_id = r.get_json()["donationId"]

        r = client.get(f'/api/donations/{donation_id}')
        assert r.status_code == 200
        assert r.get_json()["status"] == "pending"

        assert client.get('/api/donations/9999').status_code == 404
