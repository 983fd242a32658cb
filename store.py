"""
Key record store.

The store is a key-value map from activation code to ``ActivationKey`` with
push-style change notification. The admin service reaches it through SQL,
the protected application through the admin service's HTTP bridge. Both
share the same contract so the issuer and the engine never care which one
they hold.
"""
import asyncio
import enum
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import TypeAdapter
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config import settings
from database import ActivationKeyRow, get_store_session_factory
from exceptions import NotFoundError, StoreUnavailableError, ValidationError
from logger import get_logger
from models import (
    UPDATABLE_FIELDS,
    ActivationKey,
    ClientInfo,
    KeyChange,
    KeyStatus,
    StoreUpdateRequest,
)

logger = get_logger("activation.store")

ChangeCallback = Callable[[KeyChange], Union[None, Awaitable[None]]]

_ALIASES = {name: field.alias for name, field in ActivationKey.model_fields.items()}
_NAMES = {alias: name for name, alias in _ALIASES.items()}


def _check_fields(fields, allowed) -> None:
    unknown = [field for field in fields if field not in allowed]
    if unknown:
        raise ValidationError(f"Fields not writable through update: {', '.join(unknown)}")


def _check_record(key: ActivationKey) -> None:
    """Reject records whose status and binding fields disagree."""
    if key.status == KeyStatus.TAMPERED:
        raise ValidationError("Tampered is a device-local status and cannot be stored", key.code)
    if not key.binding_consistent:
        raise ValidationError("deviceId, activatedAt and expiresAt must be set together", key.code)
    if key.status == KeyStatus.UNUSED and key.is_bound:
        raise ValidationError("An unused key cannot carry a device binding", key.code)
    if key.status in (KeyStatus.ACTIVATED, KeyStatus.EXPIRED) and not key.is_bound:
        raise ValidationError(f"A {key.status.value} key needs a device binding", key.code)


def encode_changes(changes: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Field-name keyed values -> camelCase JSON-ready mapping."""
    if changes is None:
        return None
    encoded = {}
    for name, value in changes.items():
        annotation = ActivationKey.model_fields[name].annotation
        encoded[_ALIASES[name]] = TypeAdapter(annotation).dump_python(value, mode="json")
    return encoded


def decode_changes(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Inverse of ``encode_changes``; accepts aliases or field names."""
    if payload is None:
        return None
    decoded = {}
    for key, value in payload.items():
        name = _NAMES.get(key, key)
        if name not in ActivationKey.model_fields:
            raise ValidationError(f"Unknown key field: {key}")
        annotation = ActivationKey.model_fields[name].annotation
        try:
            decoded[name] = TypeAdapter(annotation).validate_python(value)
        except ValueError as e:
            raise ValidationError(f"Invalid value for {key}: {value!r}") from e
    return decoded


class Subscription:
    """Handle returned by ``KeyStore.on_change``."""

    def __init__(self, feed: "ChangeFeed", code: Optional[str], callback: ChangeCallback):
        self.code = code
        self.callback = callback
        self.active = True
        # Last state delivered to this subscriber, keyed by code
        self.snapshot: Dict[str, Optional[ActivationKey]] = {}
        self._feed = feed

    def matches(self, code: str) -> bool:
        return self.code is None or self.code == code

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed.discard(self)


class ChangeFeed:
    """
    Fan-out of key changes to subscribers.

    Writes made through the owning store are published right away; writes made
    by other processes are picked up by a polling job on an AsyncIOScheduler.
    Each subscription only hears about states it has not seen yet.
    """

    def __init__(self, store: "KeyStore", interval: int):
        self.store = store
        self.interval = interval
        self._subscriptions: List[Subscription] = []
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def polling(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def has_subscribers(self, code: str) -> bool:
        return any(sub.matches(code) for sub in self._subscriptions)

    async def subscribe(self, code: Optional[str], callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, code, callback)
        if code is None:
            records = await self.store.list_all()
        else:
            record = await self.store.get(code)
            records = [record] if record is not None else []

        self._subscriptions.append(subscription)

        # Initial value event
        for record in records:
            await self._deliver(subscription, record.code, record)
        if code is not None and not records:
            await self._deliver(subscription, code, None)

        self._start_polling()
        return subscription

    def discard(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if not self._subscriptions:
            self._stop_polling()

    async def publish(self, code: str) -> None:
        """Push the current state of ``code`` to matching subscribers."""
        if not self.has_subscribers(code):
            return
        try:
            record = await self.store.get(code)
        except StoreUnavailableError as e:
            logger.warning(f"Could not publish change for {code}, next poll will catch up: {e}")
            return
        for subscription in list(self._subscriptions):
            if subscription.matches(code):
                await self._deliver(subscription, code, record)

    async def poll(self) -> None:
        """Compare every subscription's snapshot with the store."""
        for subscription in list(self._subscriptions):
            try:
                if subscription.code is None:
                    current = {record.code: record for record in await self.store.list_all()}
                    for code in list(subscription.snapshot):
                        if code not in current:
                            await self._deliver(subscription, code, None)
                    for code, record in current.items():
                        await self._deliver(subscription, code, record)
                else:
                    record = await self.store.get(subscription.code)
                    await self._deliver(subscription, subscription.code, record)
            except StoreUnavailableError as e:
                logger.warning(f"Change poll failed: {e}")

    async def _deliver(self, subscription: Subscription, code: str, record: Optional[ActivationKey]) -> None:
        if not subscription.active:
            return
        if code in subscription.snapshot and subscription.snapshot[code] == record:
            return

        if record is None and subscription.code is None:
            if code not in subscription.snapshot:
                return
            del subscription.snapshot[code]
        else:
            subscription.snapshot[code] = record

        try:
            result = subscription.callback(KeyChange(code=code, record=record))
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Change callback failed for {code}")

    def _start_polling(self) -> None:
        if self.interval <= 0 or self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.poll,
            'interval',
            seconds=self.interval,
            id='key_change_poll',
            coalesce=True,
            max_instances=1
        )
        self._scheduler.start()

    def _stop_polling(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()
        self._stop_polling()


class KeyStore(ABC):
    """
    Contract of the shared record store.

    ``update`` is the only conditional primitive: ``expect`` maps field names
    to the values they must currently hold, and the write happens atomically
    only if they all match.
    """

    def __init__(self, poll_interval: Optional[int] = None):
        if poll_interval is None:
            poll_interval = settings.STORE_POLL_INTERVAL_SECONDS
        self.feed = ChangeFeed(self, poll_interval)

    @abstractmethod
    async def get(self, code: str) -> Optional[ActivationKey]:
        ...

    @abstractmethod
    async def list_all(self) -> List[ActivationKey]:
        ...

    @abstractmethod
    async def _write(self, key: ActivationKey) -> None:
        ...

    @abstractmethod
    async def _write_update(self, code: str, changes: Dict[str, Any], expect: Optional[Dict[str, Any]]) -> bool:
        ...

    @abstractmethod
    async def _write_remove(self, code: str) -> None:
        ...

    async def set(self, key: ActivationKey) -> None:
        """
        Write the whole record.

        ``created_at`` is always stamped by the store when the row is created
        and is never changed afterwards; ``duration_days`` is fixed at issuance.
        """
        _check_record(key)
        await self._write(key)
        await self.feed.publish(key.code)

    async def update(self, code: str, changes: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> bool:
        _check_fields(changes, UPDATABLE_FIELDS)
        if expect:
            _check_fields(expect, ActivationKey.model_fields)
        matched = await self._write_update(code, changes, expect)
        if matched:
            await self.feed.publish(code)
        return matched

    async def remove(self, code: str) -> None:
        await self._write_remove(code)
        await self.feed.publish(code)

    async def on_change(self, code: Optional[str], callback: ChangeCallback) -> Subscription:
        """Watch one code, or every code when ``code`` is None."""
        return await self.feed.subscribe(code, callback)

    async def close(self) -> None:
        self.feed.close()


def _column_value(value):
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _row_to_record(row: ActivationKeyRow) -> ActivationKey:
    return ActivationKey(
        code=row.code,
        client=ClientInfo(**(row.client or {})),
        duration_days=row.duration_days,
        status=KeyStatus(row.status),
        created_at=row.created_at,
        device_id=row.device_id,
        activated_at=row.activated_at,
        expires_at=row.expires_at,
    )


class SQLKeyStore(KeyStore):
    """Store backed by the shared database. Blocking work runs in threads."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, poll_interval: Optional[int] = None):
        super().__init__(poll_interval)
        self.session_factory = session_factory or get_store_session_factory()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"Key store error: {e}")
            raise StoreUnavailableError(f"Key store unavailable: {e.__class__.__name__}") from e

    async def get(self, code: str) -> Optional[ActivationKey]:
        return await self._run(self._get_sync, code)

    async def list_all(self) -> List[ActivationKey]:
        return await self._run(self._list_sync)

    async def _write(self, key: ActivationKey) -> None:
        await self._run(self._set_sync, key)

    async def _write_update(self, code, changes, expect) -> bool:
        return await self._run(self._update_sync, code, changes, expect)

    async def _write_remove(self, code: str) -> None:
        await self._run(self._remove_sync, code)

    def _get_sync(self, code: str) -> Optional[ActivationKey]:
        with self.session_factory() as session:
            row = session.get(ActivationKeyRow, code)
            return _row_to_record(row) if row else None

    def _list_sync(self) -> List[ActivationKey]:
        with self.session_factory() as session:
            rows = session.query(ActivationKeyRow).order_by(ActivationKeyRow.created_at.desc(), ActivationKeyRow.code.desc()).all()
            return [_row_to_record(row) for row in rows]

    def _set_sync(self, key: ActivationKey) -> None:
        values = {
            "client": key.client.model_dump(),
            "status": _column_value(key.status),
            "device_id": key.device_id,
            "activated_at": key.activated_at,
            "expires_at": key.expires_at,
        }
        with self.session_factory() as session:
            row = session.get(ActivationKeyRow, key.code)
            if row is None:
                # created_at comes from server_default
                session.add(ActivationKeyRow(code=key.code, duration_days=key.duration_days, **values))
            else:
                for field, value in values.items():
                    setattr(row, field, value)
            session.commit()


    def _update_sync(self, code, changes, expect) -> bool:
        stmt = update(ActivationKeyRow).where(ActivationKeyRow.code == code)
        for field, value in (expect or {}).items():
            column = getattr(ActivationKeyRow, field)
            stmt = stmt.where(column.is_(None) if value is None else column == _column_value(value))
        stmt = stmt.values({field: _column_value(value) for field, value in changes.items()})

        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def _remove_sync(self, code: str) -> None:
        with self.session_factory() as session:
            session.query(ActivationKeyRow).filter(ActivationKeyRow.code == code).delete()
            session.commit()


class HTTPKeyStore(KeyStore):
    """Store reached through the admin service's ``/api/store`` bridge."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: Optional[int] = None,
    ):
        super().__init__(poll_interval)
        self.base_url = (base_url or settings.STORE_API_URL).rstrip("/")
        self.retries = max(1, retries if retries is not None else settings.STORE_RETRY_ATTEMPTS)
        self.backoff = backoff if backoff is not None else settings.STORE_RETRY_BACKOFF_SECONDS
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.STORE_API_TIMEOUT,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )

    async def _request(self, method: str, path: str, json=None, retry: bool = True) -> httpx.Response:
        attempts = self.retries if retry else 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, json=json)
                if response.status_code >= 500:
                    raise StoreUnavailableError(f"Key store returned HTTP {response.status_code}")
                return response
            except (httpx.HTTPError, StoreUnavailableError) as e:
                last_error = e
                logger.warning(f"{method} {path} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))

        raise StoreUnavailableError(f"Key store unreachable: {last_error}") from last_error

    @staticmethod
    def _check(response: httpx.Response, code: Optional[str] = None) -> None:
        if response.status_code == 404:
            raise NotFoundError("Activation code not found", code)
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise ValidationError(f"Key store rejected request: {detail}", code)

    async def get(self, code: str) -> Optional[ActivationKey]:
        response = await self._request("GET", f"/keys/{code}")
        if response.status_code == 404:
            return None
        self._check(response, code)
        return ActivationKey.model_validate(response.json())

    async def list_all(self) -> List[ActivationKey]:
        response = await self._request("GET", "/keys")
        self._check(response)
        return [ActivationKey.model_validate(item) for item in response.json()]

    async def _write(self, key: ActivationKey) -> None:
        response = await self._request("PUT", f"/keys/{key.code}", json=key.to_wire())
        self._check(response, key.code)

    async def _write_update(self, code, changes, expect) -> bool:
        body = StoreUpdateRequest(changes=encode_changes(changes), expect=encode_changes(expect))
        # A lost response to a conditional write must not be replayed blindly
        response = await self._request("PATCH", f"/keys/{code}", json=body.model_dump(by_alias=True), retry=False)
        self._check(response, code)
        return bool(response.json().get("matched"))

    async def _write_remove(self, code: str) -> None:
        response = await self._request("DELETE", f"/keys/{code}")
        if response.status_code != 404:
            self._check(response, code)

    async def close(self) -> None:
        await super().close()
        await self._client.aclose()
