from functools import lru_cache

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import func

from config import settings
from models import utcnow

# Shared store tables (one record per issued code) and device-local tables
# live in separate databases, so they get separate metadata.
StoreBase = declarative_base()
LocalBase = declarative_base()


class ActivationKeyRow(StoreBase):
    __tablename__ = "activation_keys"

    code = Column(String(64), primary_key=True)
    client = Column(JSON, nullable=False, default=dict)
    duration_days = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="unused", index=True)

    # Stamped by the database server, never by the writer
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    # Binding
    device_id = Column(String(255))
    activated_at = Column(DateTime)
    expires_at = Column(DateTime)


class SystemConfig(LocalBase):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LocalActivationAttempt(LocalBase):
    __tablename__ = "local_activation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64))

    # Attempt Result
    result = Column(String(20), nullable=False)  # success, failed, conflict, offline
    error_message = Column(Text)

    # Context
    device_id = Column(String(255))
    attempted_at = Column(DateTime, default=utcnow, index=True)


def create_session_factory(url: str, metadata) -> sessionmaker:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args)
    metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache(maxsize=None)
def get_store_session_factory() -> sessionmaker:
    return create_session_factory(settings.STORE_DATABASE_URL, StoreBase.metadata)


@lru_cache(maxsize=None)
def get_local_session_factory() -> sessionmaker:
    return create_session_factory(settings.LOCAL_DATABASE_URL, LocalBase.metadata)


