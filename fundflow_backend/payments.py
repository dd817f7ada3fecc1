"""Donation payments: STK push initiation and Daraja callback reconciliation."""
import json
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from fundflow_backend.errors import PersistenceError, ValidationError
from fundflow_backend.models import (
    DONATION_COMPLETED,
    DONATION_FAILED,
    DONATION_PENDING,
    Donation,
    Project,
    db,
)
from fundflow_backend.mpesa import format_phone_number, push_accepted, push_description

MAX_AMOUNT = 2 ** 31 - 1


def _parse_amount(value):
    try:
        amount = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Invalid amount provided")
    if amount < 1:
        raise ValidationError("Amount must be at least 1")
    # amounts live in an Integer column
    if amount > MAX_AMOUNT:
        raise ValidationError("Amount is too large")
    return amount


def _commit(action):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Database error while {action}: {e}")
        raise PersistenceError(f"Failed to {action}") from e


def initiate_payment(data, client):
    """Create a pending donation and ask the gateway to prompt the payer.

    Returns the donation. It is still ``pending`` with correlation ids stored
    when the gateway accepted the push, or ``failed`` with the gateway's
    description in ``failure_reason`` when it was rejected. The pending row is
    committed before the gateway is contacted and is left in place if the
    gateway call raises.
    """
    data = data or {}
    amount, phone, project_id = data.get("amount"), data.get("phone"), data.get("projectId")
    if not amount or not phone or not project_id:
        raise ValidationError("Missing required fields")

    amount = _parse_amount(amount)
    try:
        project = db.session.get(Project, int(project_id))
    except (TypeError, ValueError):
        project = None
    if project is None:
        raise ValidationError("Project not found")

    formatted_phone = format_phone_number(phone)

    donation = Donation(project_id=project.id, amount=amount, phone_number=formatted_phone, status=DONATION_PENDING)
    db.session.add(donation)
    _commit("create donation record")
    current_app.logger.info(f"Created pending donation id={donation.id} project={project.id} amount={amount}")

    response_data = client.stk_push(
        amount=amount,
        phone=formatted_phone,
        account_reference=f"Donation-{donation.id}",
        description=f"Donation for project {project.id}",
    )

    if push_accepted(response_data):
        donation.checkout_request_id = response_data.get("CheckoutRequestID")
        donation.merchant_request_id = response_data.get("MerchantRequestID")
    else:
        donation.status = DONATION_FAILED
        donation.failure_reason = push_description(response_data)
        current_app.logger.error(f"M-Pesa STK Push rejected for donation id={donation.id}: {response_data}")
    _commit("update donation after STK push")
    return donation


def parse_callback_metadata(stk_callback):
    """Map ``CallbackMetadata.Item`` entries to ``{Name: Value}``; items without a value are skipped."""
    metadata = stk_callback.get("CallbackMetadata") or {}
    items = metadata.get("Item") or []
    return {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict) and "Value" in item}


def increment_project_amount(project_id, amount):
    # single UPDATE so concurrent completions for one project cannot lose a write
    db.session.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(current_amount=Project.current_amount + amount)
    )


def _finish_donation(donation_id, values):
    """Move a donation out of ``pending``; returns False if another callback already did."""
    result = db.session.execute(
        update(Donation)
        .where(Donation.id == donation_id, Donation.status == DONATION_PENDING)
        .values(updated_at=datetime.utcnow(), **values)
    )
    return result.rowcount == 1


def handle_stk_callback(payload):
    """Apply a Daraja STK callback and return the ``ResultDesc`` to acknowledge with.

    Unknown checkout ids and donations that already reached a terminal state
    are acknowledged without touching any record. Malformed payloads raise;
    the route still acknowledges them.
    """
    current_app.logger.info(f"M-Pesa Callback received: {json.dumps(payload, default=str)}")
    stk_callback = payload["Body"]["stkCallback"]
    checkout_request_id = stk_callback.get("CheckoutRequestID")
    result_code = stk_callback.get("ResultCode")
    result_desc = stk_callback.get("ResultDesc")

    donation = None
    if checkout_request_id:
        donation = Donation.query.filter_by(checkout_request_id=checkout_request_id).first()
    if donation is None:
        current_app.logger.error(f"Donation not found for CheckoutRequestID={checkout_request_id}")
        return "Callback received"

    if str(result_code) == "0":
        new_status = DONATION_COMPLETED
        metadata = parse_callback_metadata(stk_callback)
        transaction_date = metadata.get("TransactionDate", "")
        finished = _finish_donation(donation.id, {
            "status": new_status,
            "mpesa_receipt_number": str(metadata.get("MpesaReceiptNumber", "")),
            "transaction_date": str(transaction_date),
        })
        if finished:
            increment_project_amount(donation.project_id, donation.amount)
    else:
        new_status = DONATION_FAILED
        finished = _finish_donation(donation.id, {
            "status": new_status,
            "failure_reason": result_desc,
        })

    if not finished:
        db.session.rollback()
        current_app.logger.info(f"Donation id={donation.id} already processed, ignoring callback")
        return "Callback received"

    _commit("apply M-Pesa callback")
    current_app.logger.info(f"Donation id={donation.id} marked {new_status}")
    return "Callback processed successfully"
