from sqlalchemy import text

from fundflow_backend import payments
from fundflow_backend.app import app
from fundflow_backend.models import Donation, Project, db
from fundflow_backend.payments import increment_project_amount, parse_callback_metadata


def _pending_donation(project_id, amount, checkout_request_id):
    with app.app_context():
        donation = Donation(project_id=project_id, amount=amount, phone_number="254712345678",
                            checkout_request_id=checkout_request_id, merchant_request_id="29115-1")
        db.session.add(donation)
        db.session.commit()
        return donation.id


def _success_callback(checkout_request_id, amount, receipt="NLJ7RT61SV"):
    return {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]},
    }}}


def _failure_callback(checkout_request_id):
    return {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": 1032,
        "ResultDesc": "Request cancelled by user",
    }}}


def _state(donation_id, project_id):
    with app.app_context():
        return db.session.get(Donation, donation_id).to_dict(), db.session.get(Project, project_id).current_amount


def test_success_callback_completes_and_increments(make_project):
    project_id = make_project(current_amount=1000)
    donation_id = _pending_donation(project_id, 250, "ws_CO_1")
    with app.test_client() as client:
        r = client.post('/api/mpesa-callback', json=_success_callback("ws_CO_1", 250))
        assert r.status_code == 200
        assert r.get_json() == {"ResultCode": 0, "ResultDesc": "Callback processed successfully"}

    donation, current_amount = _state(donation_id, project_id)
    assert donation["status"] == "completed"
    assert donation["mpesa_receipt_number"] == "NLJ7RT61SV"
    assert donation["transaction_date"] == "20191219102115"
    assert donation["failure_reason"] is None
    assert current_amount == 1250


def test_failure_callback_records_reason(make_project):
    project_id = make_project(current_amount=1000)
    donation_id = _pending_donation(project_id, 250, "ws_CO_2")
    with app.test_client() as client:
        # the path the original frontend registered still works
        r = client.post('/api/stk-push/mpesa-callback', json=_failure_callback("ws_CO_2"))
        assert r.get_json()["ResultCode"] == 0

    donation, current_amount = _state(donation_id, project_id)
    assert donation["status"] == "failed"
    assert donation["failure_reason"] == "Request cancelled by user"
    assert donation["mpesa_receipt_number"] is None
    assert current_amount == 1000


def test_unknown_checkout_id_is_acknowledged(make_project):
    project_id = make_project(current_amount=1000)
    donation_id = _pending_donation(project_id, 250, "ws_CO_3")
    with app.test_client() as client:
        r = client.post('/api/mpesa-callback', json=_success_callback("ws_CO_unknown", 250))
        assert r.status_code == 200
        assert r.get_json() == {"ResultCode": 0, "ResultDesc": "Callback received"}

    donation, current_amount = _state(donation_id, project_id)
    assert donation["status"] == "pending"
    assert current_amount == 1000


def test_malformed_callback_is_acknowledged():
    with app.test_client() as client:
        for body in [{}, {"Body": {}}, {"unexpected": True}]:
            r = client.post('/api/mpesa-callback', json=body)
            assert r.status_code == 200
            assert r.get_json()["ResultCode"] == 0

        r = client.post('/api/mpesa-callback', data="not json", content_type="text/plain")
        assert r.status_code == 200
        assert r.get_json()["ResultCode"] == 0


def test_redelivered_callback_counts_once(make_project):
    project_id = make_project()
    donation_id = _pending_donation(project_id, 300, "ws_CO_4")
    with app.test_client() as client:
        client.post('/api/mpesa-callback', json=_success_callback("ws_CO_4", 300))
        r = client.post('/api/mpesa-callback', json=_success_callback("ws_CO_4", 300, receipt="OTHER"))
        assert r.get_json() == {"ResultCode": 0, "ResultDesc": "Callback received"}
        # a late failure cannot undo a completed donation either
        client.post('/api/mpesa-callback', json=_failure_callback("ws_CO_4"))

    donation, current_amount = _state(donation_id, project_id)
    assert donation["status"] == "completed"
    assert donation["mpesa_receipt_number"] == "NLJ7RT61SV"
    assert current_amount == 300


def test_two_donations_same_project(make_project):
    project_id = make_project()
    _pending_donation(project_id, 100, "ws_CO_5")
    _pending_donation(project_id, 200, "ws_CO_6")
    with app.test_client() as client:
        client.post('/api/mpesa-callback', json=_success_callback("ws_CO_5", 100))
        client.post('/api/mpesa-callback', json=_success_callback("ws_CO_6", 200))

    with app.app_context():
        assert db.session.get(Project, project_id).current_amount == 300


def test_parse_callback_metadata():
    metadata = parse_callback_metadata(_success_callback("ws_CO_7", 10)["Body"]["stkCallback"])
    assert metadata["MpesaReceiptNumber"] == "NLJ7RT61SV"
    assert metadata["TransactionDate"] == 20191219102115
    assert "Balance" not in metadata
    assert parse_callback_metadata({}) == {}


def test_long_failure_reason_is_stored(make_project):
    project_id = make_project()
    donation_id = _pending_donation(project_id, 100, "ws_CO_8")
    callback = _failure_callback("ws_CO_8")
    callback["Body"]["stkCallback"]["ResultDesc"] = "DS timeout user cannot be reached. " * 30
    with app.test_client() as client:
        client.post('/api/mpesa-callback', json=callback)

    donation, _ = _state(donation_id, project_id)
    assert donation["status"] == "failed"
    assert donation["failure_reason"] == callback["Body"]["stkCallback"]["ResultDesc"]


def test_callback_increment_keeps_concurrent_commit(make_project, monkeypatch):
    project_id = make_project(current_amount=1000)
    _pending_donation(project_id, 250, "ws_CO_9")
    finish_donation = payments._finish_donation
    seen = {}

    def finish_after_concurrent_commit(donation_id, values):
        # this request has already read the project total
        seen["current_amount"] = db.session.get(Project, project_id).current_amount
        # another callback for the same project commits in between
        with db.engine.begin() as conn:
            conn.execute(text("UPDATE project SET current_amount = current_amount + 500 WHERE id = :id"),
                         {"id": project_id})
        return finish_donation(donation_id, values)

    monkeypatch.setattr(payments, "_finish_donation", finish_after_concurrent_commit)
    with app.test_client() as client:
        r = client.post('/api/mpesa-callback', json=_success_callback("ws_CO_9", 250))
        assert r.get_json()["ResultDesc"] == "Callback processed successfully"

    assert seen["current_amount"] == 1000
    with app.app_context():
        assert db.session.get(Project, project_id).current_amount == 1750


def test_atomic_increment_from_stale_session(make_project):
    project_id = make_project(current_amount=0)
    with app.app_context():
        project = db.session.get(Project, project_id)
        assert project.current_amount == 0

        with db.engine.begin() as conn:
            conn.execute(text("UPDATE project SET current_amount = current_amount + 500 WHERE id = :id"),
                         {"id": project_id})

        increment_project_amount(project_id, 100)
        db.session.commit()
        assert db.session.get(Project, project_id).current_amount == 600
