import csv
import os
from io import StringIO

import click
from flask import Flask, g, jsonify, redirect, request
from flask_cors import CORS
from sqlalchemy.exc import IntegrityError

from fundflow_backend import auth
from fundflow_backend.config import Config, MpesaConfig
from fundflow_backend.errors import (
    AuthenticationFailure,
    FundFlowError,
    GatewayAuthError,
    GatewayRequestError,
    PersistenceError,
    ValidationError,
)
from fundflow_backend.models import (
    DONATION_COMPLETED,
    DONATION_FAILED,
    DONATION_PENDING,
    Donation,
    Project,
    db,
)
from fundflow_backend.mpesa import MpesaClient
from fundflow_backend.payments import handle_stk_callback, initiate_payment

app = Flask(__name__)
app.config.from_object(Config)
app.logger.setLevel(app.config["LOG_LEVEL"])
# Public API and project listing are called from the frontend origin
CORS(app, resources={r"/api/*": {"origins": "*"}, r"/projects*": {"origins": "*"}}, expose_headers=['Content-Type'])

if not app.config.get("SECRET_KEY"):
    app.logger.warning("SECRET_KEY not set. Admin sessions will not survive a restart; set SECRET_KEY in env for production.")
    app.config["SECRET_KEY"] = os.urandom(24).hex()

db.init_app(app)

# Gateway client; replace app.extensions["mpesa"] to point the payment routes elsewhere
app.extensions["mpesa"] = MpesaClient(MpesaConfig.from_env())

# Initialize DB
with app.app_context():
    db.create_all()

# Errors whose details stay in the log; the client only sees a generic message
GENERIC_ERRORS = (GatewayAuthError, GatewayRequestError, PersistenceError)

ADMIN_LOGIN_PATH = "/admin/login"


def mpesa_client():
    return app.extensions["mpesa"]


@app.errorhandler(FundFlowError)
def handle_fundflow_error(e):
    if isinstance(e, GENERIC_ERRORS):
        app.logger.error(f"{e.__class__.__name__}: {e.message}")
        return jsonify({"error": "Internal server error"}), e.status_code
    return jsonify({"error": e.message}), e.status_code


# Log each incoming request briefly (kept lightweight)
@app.before_request
def log_request_info():
    app.logger.info(f"Incoming request: method={request.method} path={request.path} origin={request.headers.get('Origin')} content-type={request.headers.get('Content-Type')}")


@app.before_request
def admin_gate():
    # Every /admin path except the login endpoint needs a valid signed session
    if request.path != "/admin" and not request.path.startswith("/admin/"):
        return None
    token = request.cookies.get(auth.SESSION_COOKIE)
    g.admin_session = auth.load_session(token)
    # a cookie that does not verify is cleared on whatever response goes out
    g.clear_admin_cookie = bool(token) and g.admin_session is None
    if g.clear_admin_cookie:
        app.logger.warning(f"Rejected admin session cookie for path={request.path}")
    if g.admin_session is not None or request.path == ADMIN_LOGIN_PATH:
        return None
    return redirect(ADMIN_LOGIN_PATH, code=303)


@app.after_request
def clear_rejected_admin_cookie(response):
    if not g.get("clear_admin_cookie"):
        return response
    # a successful login in the same request already replaced the cookie
    if any(h.startswith(f"{auth.SESSION_COOKIE}=") for h in response.headers.getlist("Set-Cookie")):
        return response
    return auth.clear_session_cookie(response)


@app.route("/")
def home():
    return jsonify({"message": "Backend is running successfully!"})


# ---------- PROJECTS (public) -----------
@app.route("/projects", methods=["GET"])
def list_projects():
    projects = Project.query.order_by(Project.created_at.desc()).all()
    return jsonify([p.to_dict() for p in projects])


@app.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        return jsonify({"message": "Project not found"}), 404
    return jsonify(project.to_dict())


# ---------- M-PESA PAYMENTS -----------
@app.route("/api/stk-push", methods=["POST"])
def stk_push():
    try:
        donation = initiate_payment(request.get_json(silent=True), mpesa_client())
    except FundFlowError:
        raise
    except Exception as e:
        app.logger.exception(f"STK Push error: {e}")
        return jsonify({"error": "Internal server error"}), 500

    if donation.status == DONATION_FAILED:
        return jsonify({"success": False, "error": donation.failure_reason}), 400
    return jsonify({
        "success": True,
        "message": "STK Push sent successfully",
        "checkoutRequestId": donation.checkout_request_id,
        "donationId": donation.id,
    })


@app.route("/api/mpesa-callback", methods=["POST"])
@app.route("/api/stk-push/mpesa-callback", methods=["POST"])
def mpesa_callback():
    # Always acknowledge, otherwise Daraja keeps redelivering the same result
    try:
        result_desc = handle_stk_callback(request.get_json(force=True, silent=True) or {})
    except Exception as e:
        db.session.rollback()
        app.logger.exception(f"Callback processing error: {e}")
        result_desc = "Callback received"
    return jsonify({"ResultCode": 0, "ResultDesc": result_desc})


@app.route("/api/donations/<int:donation_id>", methods=["GET"])
def donation_status(donation_id):
    donation = db.session.get(Donation, donation_id)
    if donation is None:
        return jsonify({"message": "Donation not found"}), 404
    return jsonify({
        "id": donation.id,
        "project_id": donation.project_id,
        "amount": donation.amount,
        "status": donation.status,
        "mpesa_receipt_number": donation.mpesa_receipt_number,
        "failure_reason": donation.failure_reason,
    })


# ---------------- ADMIN ----------------
@app.route("/admin/login", methods=["GET"])
def admin_login_page():
    if g.admin_session is not None:
        return redirect("/admin/dashboard", code=303)
    return jsonify({"session": None})


@app.route("/admin/login", methods=["POST"])
def admin_login():
    data = request.get_json(silent=True) or {}
    email = data.get("email")
    password = data.get("password")
    if not email or not password:
        raise ValidationError("Email and password are required")

    session = auth.login_admin(email, password)
    if session is None:
        app.logger.warning("Failed admin login attempt")
        raise AuthenticationFailure("Invalid credentials")

    response = jsonify(session)
    return auth.set_session_cookie(response, session)


@app.route("/admin/logout", methods=["POST"])
def admin_logout():
    response = jsonify({"message": "Logged out"})
    return auth.clear_session_cookie(response)


@app.route("/admin/dashboard", methods=["GET"])
def admin_dashboard():
    counts = {
        "total": Donation.query.count(),
        DONATION_PENDING: Donation.query.filter_by(status=DONATION_PENDING).count(),
        DONATION_COMPLETED: Donation.query.filter_by(status=DONATION_COMPLETED).count(),
        DONATION_FAILED: Donation.query.filter_by(status=DONATION_FAILED).count(),
    }
    total_raised = db.session.query(db.func.coalesce(db.func.sum(Project.current_amount), 0)).scalar()
    return jsonify({
        "session": g.admin_session,
        "projects": Project.query.count(),
        "donations": counts,
        "total_raised": total_raised,
    })


def _project_fields(data, partial=False):
    fields = {}
    if "title" in data or not partial:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required")
        fields["title"] = title
    if "goal_amount" in data or not partial:
        try:
            goal_amount = int(data.get("goal_amount"))
        except (TypeError, ValueError):
            raise ValidationError("goal_amount must be a whole number")
        if goal_amount < 0:
            raise ValidationError("goal_amount must not be negative")
        fields["goal_amount"] = goal_amount
    for k in ["description", "image_url"]:
        if k in data:
            fields[k] = data[k]
    return fields


@app.route("/admin/projects", methods=["GET", "POST"])
def admin_projects():
    if request.method == "GET":
        projects = Project.query.order_by(Project.created_at.desc()).all()
        return jsonify([p.to_dict() for p in projects])

    # current_amount is owned by the callback handler and never taken from the client
    data = request.get_json(silent=True) or {}
    project = Project(**_project_fields(data))
    db.session.add(project)
    db.session.commit()
    app.logger.info(f"Created project id={project.id}")
    return jsonify({"message": "Added", "id": project.id}), 201


@app.route("/admin/projects/<int:project_id>", methods=["PUT", "DELETE"])
def admin_project_item(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        return jsonify({"message": "Not found"}), 404

    if request.method == "DELETE":
        if project.donations.count():
            raise ValidationError("Project has donations and cannot be deleted")
        db.session.delete(project)
        db.session.commit()
        return jsonify({"message": "Deleted"}), 200

    data = request.get_json(silent=True) or {}
    fields = _project_fields(data, partial=True)
    if not fields:
        return jsonify({"message": "No fields to update"}), 400
    for k, v in fields.items():
        setattr(project, k, v)
    db.session.commit()
    return jsonify({"message": "Updated", "project": project.to_dict()}), 200


@app.route("/admin/donations", methods=["GET"])
def admin_donations():
    query = Donation.query
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    donations = query.order_by(Donation.created_at.desc()).all()
    return jsonify([d.to_dict() for d in donations])


@app.route("/admin/download-csv", methods=["GET"])
def download_csv():
    columns = ["id", "project_id", "amount", "phone_number", "status", "mpesa_receipt_number", "transaction_date", "created_at"]
    si = StringIO()
    cw = csv.writer(si)
    cw.writerow(columns)
    for d in Donation.query.order_by(Donation.id).all():
        row = d.to_dict()
        cw.writerow([row[c] for c in columns])
    output = si.getvalue()
    return app.response_class(output, mimetype='text/csv', headers={
        'Content-Disposition': 'attachment; filename=donations.csv'
    })


# ---------------- CLI ----------------
@app.cli.command("init-db")
def init_db_command():
    """Create database tables."""
    db.create_all()
    click.echo("Database tables created")


@app.cli.command("create-admin")
@click.argument("email")
@click.argument("password")
def create_admin_command(email, password):
    """Create an admin user that can log in at /admin/login."""
    try:
        admin = auth.create_admin(email, password)
    except IntegrityError:
        db.session.rollback()
        raise click.ClickException(f"An admin with email {email} already exists")
    click.echo(f"Admin created: id={admin.id} email={admin.email}")


if __name__ == "__main__":
    # Use PORT env var if provided (useful for hosting platforms)
    port = int(os.environ.get("PORT", 5000))
    # Bind to 0.0.0.0 so the service is reachable from outside
    app.run(host="0.0.0.0", port=port, debug=(os.environ.get("FLASK_DEBUG", "False") == "True"))
