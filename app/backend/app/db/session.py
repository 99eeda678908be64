"""Engine and session factory bound to configured database."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings

_settings = get_settings()

# Each concurrent report read holds its own connection.
engine = create_engine(
    _settings.database_url,
    pool_pre_ping=True,
    pool_size=max(5, _settings.finance_fetch_workers),
    future=True,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
