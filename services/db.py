import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import config
from models.base import Base
from services.errors import ConfigurationError

logger = logging.getLogger(__name__)

SessionLocal = sessionmaker(expire_on_commit=False)
engine = None


def create_db_engine(db_url=None):
    """Create an engine for the configured storage connection string."""
    db_url = db_url or config.DB_URL
    if not db_url:
        raise ConfigurationError("DB_URL is not set. Provide a SQLAlchemy connection string via environment or .env file.")

    options = {"pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        options["connect_args"] = {"timeout": config.DB_TIMEOUT_SECONDS, "check_same_thread": False}
    else:
        options["pool_timeout"] = config.DB_TIMEOUT_SECONDS
    return create_engine(db_url, **options)


def configure_db(db_url=None):
    """Bind SessionLocal to a fresh engine and return it."""
    global engine
    engine = create_db_engine(db_url)
    SessionLocal.configure(bind=engine)
    logger.info(f"Database configured ({engine.url.get_backend_name()})")
    return engine


def init_db(db_url=None):
    """Create all tables in the database."""
    bind = engine if engine is not None and db_url is None else configure_db(db_url)
    Base.metadata.create_all(bind=bind)
    return bind
