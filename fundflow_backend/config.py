import os
from dotenv import load_dotenv

# Load local .env if present (for local development). The file is gitignored.
basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

# admin-session cookie lifetime in seconds (1 day)
ADMIN_SESSION_MAX_AGE = 60 * 60 * 24


def database_url(environ=None):
    environ = os.environ if environ is None else environ
    db_url = environ.get("DATABASE_URL")
    # Hosted Postgres providers still hand out the legacy scheme
    if db_url and db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url or f"sqlite:///{os.path.join(basedir, 'fundflow.db')}"


class Config:
    SQLALCHEMY_DATABASE_URI = database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }
    SECRET_KEY = os.environ.get("SECRET_KEY")
    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    ADMIN_SESSION_MAX_AGE = ADMIN_SESSION_MAX_AGE
    # secure-only admin cookie outside local development
    ADMIN_COOKIE_SECURE = APP_ENV == "production"


class MpesaConfig:
    """Daraja gateway settings handed to :class:`~fundflow_backend.mpesa.MpesaClient`.

    Built from the environment by :meth:`from_env`, or directly in tests with
    fake credentials.
    """

    def __init__(self, consumer_key=None, consumer_secret=None, passkey=None, shortcode=None,
                 app_url="http://localhost:5000", base_url=SANDBOX_BASE_URL, timeout=30):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.shortcode = shortcode
        self.app_url = app_url
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        default_base = PRODUCTION_BASE_URL if environ.get("MPESA_ENV") == "production" else SANDBOX_BASE_URL
        return cls(
            consumer_key=environ.get("MPESA_CONSUMER_KEY"),
            consumer_secret=environ.get("MPESA_CONSUMER_SECRET"),
            passkey=environ.get("MPESA_PASSKEY"),
            shortcode=environ.get("MPESA_SHORTCODE"),
            app_url=environ.get("PUBLIC_APP_URL", "http://localhost:5000"),
            base_url=environ.get("MPESA_BASE_URL") or default_base,
            timeout=int(environ.get("MPESA_TIMEOUT", 30)),
        )

    @property
    def callback_url(self):
        return f"{self.app_url.rstrip('/')}/api/mpesa-callback"

    @property
    def token_url(self):
        return f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"

    @property
    def stk_push_url(self):
        return f"{self.base_url}/mpesa/stkpush/v1/processrequest"

    def has_credentials(self):
        return bool(self.consumer_key and self.consumer_secret)

    def __repr__(self):
        return f"<MpesaConfig shortcode={self.shortcode!r} base_url={self.base_url!r}>"
