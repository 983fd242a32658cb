"""
Shared fixtures: throwaway SQLite databases for the key store and for each
device's local state, plus a clock the tests can move in either direction.
"""
from datetime import datetime, timedelta

import pytest

from activation_engine import ActivationEngine
from database import LocalBase, StoreBase, create_session_factory
from key_issuer import KeyIssuer
from store import SQLKeyStore

T0 = datetime(2026, 1, 1, 12, 0, 0)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, now):
        self.now = now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'keys.db'}", StoreBase.metadata)


@pytest.fixture
def store(store_factory):
    return SQLKeyStore(store_factory, poll_interval=0)


@pytest.fixture
def issuer(store):
    return KeyIssuer(store)


@pytest.fixture
def local_db(tmp_path):
    sessions = []

    def make(name):
        factory = create_session_factory(f"sqlite:///{tmp_path / name}", LocalBase.metadata)
        session = factory()
        sessions.append(session)
        return session

    yield make
    for session in sessions:
        session.close()


@pytest.fixture
def make_engine(store, local_db, clock):
    """Engine for a device; the same device id reuses the same local database."""

    def make(device_id, key_store=None):
        return ActivationEngine(local_db(f"{device_id}.db"), key_store or store, device_id=device_id, clock=clock)

    return make
