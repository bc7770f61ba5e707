import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_ENGINE_DB_URL = _require_env("RENTAL_ENGINE_DB_URL")

engine_rental = create_engine(
    RENTAL_ENGINE_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
