"""Configuration module for the billing ledger application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '0') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'billing')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'billing')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'billing')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'
    DB_POOL_SIZE = int(os.getenv('DB_POOL_SIZE', '10'))
    DB_MAX_OVERFLOW = int(os.getenv('DB_MAX_OVERFLOW', '20'))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv(
        'LOG_FORMAT',
        '%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    # Payment ledger rules
    LEDGER_DUPLICATE_WINDOW_SECONDS = int(os.getenv('LEDGER_DUPLICATE_WINDOW_SECONDS', '120'))
    LEDGER_AMOUNT_TOLERANCE = os.getenv('LEDGER_AMOUNT_TOLERANCE', '0.01')
    LEDGER_DEFAULT_PAGE_SIZE = int(os.getenv('LEDGER_DEFAULT_PAGE_SIZE', '10'))
    LEDGER_MAX_PAGE_SIZE = int(os.getenv('LEDGER_MAX_PAGE_SIZE', '100'))


class TestConfig(Config):
    """Configuration used by the test-suite (file-backed SQLite)."""

    TESTING = True
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///billing_ledger_test.db')
    LOG_LEVEL = 'DEBUG'
