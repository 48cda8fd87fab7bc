"""Database configuration and initialization."""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base

# Create SQLAlchemy base
Base = declarative_base()

# Global session and engine
engine = None
db_session = None


def build_engine(database_uri, echo=False, pool_size=10, max_overflow=20):
    """Create an engine for the given URI.

    SQLite URIs (used by the test-suite) get neither pool sizing nor
    pre-ping; every other backend gets the production pool settings.
    """
    if make_url(database_uri).get_backend_name() == 'sqlite':
        return create_engine(
            database_uri,
            echo=echo,
            connect_args={'check_same_thread': False},
        )

    return create_engine(
        database_uri,
        echo=echo,
        pool_pre_ping=True,  # Enable connection health checks
        pool_size=pool_size,
        max_overflow=max_overflow
    )


def init_db(app):
    """Initialize database connection."""
    global engine, db_session

    engine = build_engine(
        app.config['SQLALCHEMY_DATABASE_URI'],
        echo=app.config.get('SQLALCHEMY_ECHO', False),
        pool_size=app.config.get('DB_POOL_SIZE', 10),
        max_overflow=app.config.get('DB_MAX_OVERFLOW', 20),
    )

    db_session = scoped_session(
        sessionmaker(autocommit=False, autoflush=False, bind=engine)
    )

    Base.query = db_session.query_property()

    # Register teardown
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            db_session.rollback()
        db_session.remove()


def create_all():
    """Create every ledger table on the configured engine."""
    # Import models so they are registered on Base.metadata
    import billing_ledger.models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_session():
    """Get database session."""
    return db_session
