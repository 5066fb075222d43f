import os


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

    # --- Shared secrets ---
    API_SECRET_KEY = os.environ.get("API_SECRET_KEY")  # X-API-Key for POST /sync
    CRON_SECRET = os.environ.get("CRON_SECRET")        # Bearer token for /cron/*

    # --- Digistore24 API (pull-sync) ---
    DIGISTORE24_API_KEY = os.environ.get("DIGISTORE24_API_KEY")
    DIGISTORE24_API_URL = os.environ.get(
        "DIGISTORE24_API_URL", "https://www.digistore24.com/api/call/v1"
    )
    SYNC_PAGE_SIZE = int(os.environ.get("SYNC_PAGE_SIZE", 50))
    SYNC_MAX_PAGES = int(os.environ.get("SYNC_MAX_PAGES", 5))

    # --- Sales domain ---
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "EUR")
    AFFILIATE_COMMISSION_RATE = os.environ.get("AFFILIATE_COMMISSION_RATE", "0.20")

    # When True, webhook processing runs on a background thread after
    # the 200 response is returned.
    WEBHOOK_PROCESS_ASYNC = True

    # --- Notifications ---
    DISCORD_WEBHOOK_URL = os.environ.get("DISCORD_WEBHOOK_URL")
    NOTIFICATION_EMAIL = os.environ.get("NOTIFICATION_EMAIL")  # sale alerts + daily report

    # --- Email (Google Workspace SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # Google App Password
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Sales Monitor")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    RATELIMIT_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "API_SECRET_KEY",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, synchronous webhook processing."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    API_SECRET_KEY = "test-api-secret"
    CRON_SECRET = "test-cron-secret"
    DIGISTORE24_API_KEY = "ds24_test_fake"
    DIGISTORE24_API_URL = "https://ds24.test/api"
    SYNC_PAGE_SIZE = 2
    SYNC_MAX_PAGES = 3
    DEFAULT_CURRENCY = "EUR"
    AFFILIATE_COMMISSION_RATE = "0.20"
    WEBHOOK_PROCESS_ASYNC = False  # process inline so tests can assert on the DB
    DISCORD_WEBHOOK_URL = "https://discord.test/api/webhooks/fake"
    NOTIFICATION_EMAIL = "owner@example.com"
    MAIL_USERNAME = None
    MAIL_PASSWORD = None
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
