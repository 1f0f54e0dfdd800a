import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Stripe webhook ---
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    # Max age (seconds) of the signed timestamp before an event is rejected
    STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", 300))
    # Checkout session metadata key that carries the staged cart id
    CART_METADATA_KEY = os.environ.get("CART_METADATA_KEY", "cartId")
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "300 per minute")

    # --- Money ---
    CURRENCY_CODE = os.environ.get("CURRENCY_CODE", "gbp")
    CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "£")
    AMOUNT_TOLERANCE = os.environ.get("AMOUNT_TOLERANCE", "0.01")

    # --- Idempotency ---
    # An in_progress claim older than this is assumed abandoned by a crashed worker
    CLAIM_STALE_SECONDS = int(os.environ.get("CLAIM_STALE_SECONDS", 600))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Orders")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_REPLY_TO = os.environ.get("MAIL_REPLY_TO")
    MAIL_TIMEOUT = int(os.environ.get("MAIL_TIMEOUT", 20))
    MAIL_SUPPRESS_SEND = _env_flag("MAIL_SUPPRESS_SEND")
    MERCHANT_ORDER_EMAIL = os.environ.get("MERCHANT_ORDER_EMAIL")
    NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", 2))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_WEBHOOK_SECRET",
            "MERCHANT_ORDER_EMAIL",
        ]
        # Without suppression we need somewhere to send from
        if not _env_flag("MAIL_SUPPRESS_SEND"):
            if not (os.environ.get("MAIL_FROM_ADDRESS") or os.environ.get("MAIL_USERNAME")):
                required.append("MAIL_FROM_ADDRESS")
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = Config.SQLALCHEMY_DATABASE_URI or "sqlite:///fulfillment-dev.db"


class TestConfig(Config):
    """Testing: in-memory SQLite, mail captured in the outbox."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_WEBHOOK_TOLERANCE = 300
    CART_METADATA_KEY = "cartId"
    CURRENCY_CODE = "gbp"
    CURRENCY_SYMBOL = "£"
    AMOUNT_TOLERANCE = "0.01"
    CLAIM_STALE_SECONDS = 600
    MAIL_USERNAME = None
    MAIL_PASSWORD = None
    MAIL_FROM_NAME = "Test Shop"
    MAIL_FROM_ADDRESS = "support@shop.test"
    MAIL_REPLY_TO = None
    MAIL_SUPPRESS_SEND = True
    MERCHANT_ORDER_EMAIL = "orders@shop.test"
    NOTIFICATION_MAX_ATTEMPTS = 2
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode; everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
