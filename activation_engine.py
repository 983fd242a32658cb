import inspect
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from activation import advance_watermark, evaluate, overlay_status
from database import LocalActivationAttempt, SystemConfig, get_local_session_factory
from exceptions import (
    AlreadyUsedError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from hardware_fingerprint import get_device_id
from logger import get_logger
from models import ActivationKey, KeyChange, KeyStatus, Verdict, utcnow
from store import ChangeCallback, HTTPKeyStore, KeyStore, Subscription

logger = get_logger("activation.engine")

CODE_KEY = "activation_code"
RECORD_KEY = "activation_record"
WATERMARK_KEY = "clock_watermark"
TAMPER_KEY = "tampered_code"


class ActivationEngine:
    """
    Client side of the activation contract.

    Binds codes to this device through the shared store, keeps the last known
    record cached locally for offline gating, and guards expiry with a
    device-local clock watermark that only ever moves forward.
    """

    def __init__(
        self,
        db: Session,
        store: KeyStore,
        device_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.store = store
        self.device_id = device_id or get_device_id()
        self.clock = clock or utcnow
        self.record: Optional[ActivationKey] = self._load_cached_record()
        self._subscription: Optional[Subscription] = None

    @property
    def code(self) -> Optional[str]:
        """Code remembered on this device, if any."""
        return self._get_config(CODE_KEY)

    @property
    def watermark(self) -> Optional[datetime]:
        value = self._get_config(WATERMARK_KEY)
        return datetime.fromisoformat(value) if value else None

    async def activate(self, code: str, device_id: Optional[str] = None, now: Optional[datetime] = None) -> ActivationKey:
        code = (code or "").strip()
        if not code:
            raise ValidationError("Please enter an activation code.")
        device_id = device_id or self.device_id
        now = now or self.clock()

        try:
            record = await self.store.get(code)
        except StoreUnavailableError as e:
            self._log_attempt(code, "offline", str(e))
            raise

        if record is None:
            self._log_attempt(code, "failed", "unknown code")
            raise NotFoundError("Invalid activation code", code)

        if record.status != KeyStatus.UNUSED:
            self._log_attempt(code, "failed", f"already {record.status.value}")
            raise AlreadyUsedError(
                "Activation code is already in use",
                code,
                device_id=record.device_id,
                activated_at=record.activated_at,
                expires_at=record.expires_at,
            )

        changes = {
            "status": KeyStatus.ACTIVATED,
            "device_id": device_id,
            "activated_at": now,
            "expires_at": now + timedelta(days=record.duration_days),
        }
        try:
            won = await self.store.update(code, changes, expect={"status": KeyStatus.UNUSED})
        except StoreUnavailableError as e:
            self._log_attempt(code, "offline", str(e))
            raise

        if not won:
            self._log_attempt(code, "conflict", "activated elsewhere first")
            logger.warning(f"Lost activation race for {code}")
            raise ConflictError("Activation code was activated on another device", code)

        bound = record.model_copy(update=changes)
        self._remember(bound)
        self._set_watermark(advance_watermark(self.watermark, now))
        self._log_attempt(code, "success", None, device_id=device_id)
        logger.info(f"Activated {code} on {device_id} until {bound.expires_at.isoformat()}")
        return bound

    async def resume(self, code: str) -> ActivationKey:
        """
        Re-enter a code that is already bound to this device.

        This is how the application recovers its binding after the local
        state was lost; a code bound elsewhere is still rejected.
        """
        code = (code or "").strip()
        record = await self.store.get(code) if code else None
        if record is None:
            raise NotFoundError("Invalid activation code", code)
        if record.status == KeyStatus.UNUSED:
            raise ValidationError("Activation code has not been activated yet", code)
        if record.device_id != self.device_id:
            raise AlreadyUsedError(
                "Activation code is bound to another device",
                code,
                device_id=record.device_id,
                activated_at=record.activated_at,
                expires_at=record.expires_at,
            )

        self._remember(record, clear_latch=False)
        logger.info(f"Resumed binding of {code} on {self.device_id}")
        return record

    def evaluate(self, record: Optional[ActivationKey], now: Optional[datetime] = None) -> Verdict:
        """Verdict for ``record`` at ``now``, advancing the clock watermark."""
        now = now or self.clock()
        watermark = self.watermark

        verdict = evaluate(record, now, watermark)
        if verdict != Verdict.INACTIVE and self._get_config(TAMPER_KEY) == record.code:
            verdict = Verdict.TAMPERED

        if verdict == Verdict.TAMPERED and self._get_config(TAMPER_KEY) != record.code:
            logger.warning(f"Clock moved back from {watermark.isoformat()} to {now.isoformat()}, locking {record.code}")
            self._set_config(TAMPER_KEY, record.code)

        advanced = advance_watermark(watermark, now)
        if advanced != watermark:
            self._set_watermark(advanced)
        return verdict

    def current_verdict(self, now: Optional[datetime] = None) -> Verdict:
        return self.evaluate(self.record, now)

    def current_key(self, now: Optional[datetime] = None) -> Optional[ActivationKey]:
        """The cached record with expiry or tampering overlaid on its status."""
        if self.record is None:
            return None
        return overlay_status(self.record, self.current_verdict(now))

    async def refresh(self) -> Verdict:
        """Re-read the remembered record from the store."""
        code = self.code
        if code:
            self.apply(KeyChange(code=code, record=await self.store.get(code)))
        return self.current_verdict()

    async def subscribe(self, on_change: Optional[ChangeCallback] = None, code: Optional[str] = None) -> Subscription:
        """
        Follow remote changes to the remembered code.

        ``on_change`` hears a ``KeyChange`` only when it changes what this
        engine holds; duplicates and replays are dropped.
        """
        code = code or self.code
        if not code:
            raise ValidationError("No activation code to watch")

        async def handle(change: KeyChange):
            if self.apply(change) and on_change is not None:
                result = on_change(change)
                if inspect.isawaitable(result):
                    await result

        if self._subscription is not None:
            self._subscription.unsubscribe()
        self._subscription = await self.store.on_change(code, handle)
        return self._subscription

    def apply(self, change: KeyChange) -> bool:
        """Fold a store change into local state. Returns False for no-ops."""
        if change.removed:
            if self.record is None and self.code != change.code:
                return False
            logger.info(f"{change.code} was removed, forgetting it")
            self.record = None
            for key in (CODE_KEY, RECORD_KEY, TAMPER_KEY):
                self._delete_config(key)
            return True

        if change.record == self.record:
            return False

        if change.record.status == KeyStatus.UNUSED:
            logger.info(f"{change.code} was reset")
            self._delete_config(TAMPER_KEY)
        self.record = change.record
        self._set_config(RECORD_KEY, change.record.model_dump_json(by_alias=True))
        return True

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _remember(self, record: ActivationKey, clear_latch: bool = True) -> None:
        self.record = record
        self._set_config(CODE_KEY, record.code)
        self._set_config(RECORD_KEY, record.model_dump_json(by_alias=True))
        if clear_latch:
            self._delete_config(TAMPER_KEY)

    def _load_cached_record(self) -> Optional[ActivationKey]:
        value = self._get_config(RECORD_KEY)
        return ActivationKey.model_validate_json(value) if value else None

    def _set_watermark(self, value: datetime) -> None:
        self._set_config(WATERMARK_KEY, value.isoformat())

    def _get_config(self, key: str) -> Optional[str]:
        config = self.db.query(SystemConfig).filter(SystemConfig.key == key).first()
        return config.value if config else None

    def _set_config(self, key: str, value: str) -> None:
        config = self.db.query(SystemConfig).filter(SystemConfig.key == key).first()
        if config:
            config.value = value
        else:
            self.db.add(SystemConfig(key=key, value=value))
        self.db.commit()

    def _delete_config(self, key: str) -> None:
        self.db.query(SystemConfig).filter(SystemConfig.key == key).delete()
        self.db.commit()

    def _log_attempt(self, code: str, result: str, error_message: Optional[str], device_id: Optional[str] = None):
        self.db.add(LocalActivationAttempt(
            code=code,
            result=result,
            error_message=error_message,
            device_id=device_id or self.device_id
        ))
        self.db.commit()


def create_activation_engine(store: Optional[KeyStore] = None) -> ActivationEngine:
    """Engine wired to the local database and the admin service's store bridge."""
    db = get_local_session_factory()()
    return ActivationEngine(db, store or HTTPKeyStore())
