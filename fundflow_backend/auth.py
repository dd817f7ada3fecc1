from flask import current_app
# token support (URLSafeTimedSerializer works across itsdangerous versions)
from itsdangerous import URLSafeTimedSerializer as Serializer, BadSignature, SignatureExpired
from werkzeug.security import check_password_hash, generate_password_hash

from fundflow_backend.models import AdminUser, db

SESSION_COOKIE = "admin-session"
SESSION_COOKIE_PATH = "/admin"

# compared against when the email is unknown so both failures cost the same
_DUMMY_HASH = generate_password_hash("fundflow-dummy-password")


def _serializer():
    return Serializer(current_app.config["SECRET_KEY"], salt="admin-session")


def login_admin(email, password):
    """Return ``{id, email, admin}`` for valid credentials, else None.

    Unknown email and wrong password are indistinguishable to the caller.
    """
    admin = AdminUser.query.filter_by(email=(email or "").strip().lower()).first()
    if admin is None:
        check_password_hash(_DUMMY_HASH, password or "")
        return None
    if not check_password_hash(admin.password_hash, password or ""):
        return None
    return {"id": admin.id, "email": admin.email, "admin": True}


def create_admin(email, password):
    admin = AdminUser(email=email.strip().lower(), password_hash=generate_password_hash(password))
    db.session.add(admin)
    db.session.commit()
    return admin


def is_authenticated(session):
    return isinstance(session, dict) and session.get("admin") is True


def generate_session_token(session):
    return _serializer().dumps(session)


def load_session(token):
    # None for a missing, tampered or expired cookie
    if not token:
        return None
    try:
        session = _serializer().loads(token, max_age=current_app.config["ADMIN_SESSION_MAX_AGE"])
    except SignatureExpired:
        return None
    except BadSignature:
        return None
    return session if is_authenticated(session) else None


def set_session_cookie(response, session):
    response.set_cookie(
        SESSION_COOKIE,
        generate_session_token(session),
        max_age=current_app.config["ADMIN_SESSION_MAX_AGE"],
        path=SESSION_COOKIE_PATH,
        httponly=True,
        samesite="Strict",
        secure=current_app.config["ADMIN_COOKIE_SECURE"],
    )
    return response


def clear_session_cookie(response):
    response.delete_cookie(
        SESSION_COOKIE,
        path=SESSION_COOKIE_PATH,
        httponly=True,
        samesite="Strict",
        secure=current_app.config["ADMIN_COOKIE_SECURE"],
    )
    return response
