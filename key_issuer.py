import secrets
import string
from datetime import datetime
from typing import List, Optional

from activation import display_status
from config import settings
from exceptions import NotFoundError, ValidationError
from logger import get_logger
from models import ActivationKey, ClientInfo, KeyStatus, utcnow
from store import KeyStore

logger = get_logger("activation.issuer")

CODE_ALPHABET = string.ascii_uppercase + string.digits

LISTING_FILTERS = ("all", KeyStatus.UNUSED.value, KeyStatus.ACTIVATED.value, KeyStatus.EXPIRED.value)


class KeyIssuer:
    """Admin-side operations on activation keys."""

    def __init__(self, store: KeyStore):
        self.store = store

    def generate_code(self, now: Optional[datetime] = None) -> str:
        """
        Prefix, issuance time in epoch millis, and a short random suffix.

        Collisions need the same millisecond and the same suffix, so there is
        no uniqueness check against the store.
        """
        now = now or utcnow()
        millis = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
        suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(settings.CODE_SUFFIX_LENGTH))
        return f"{settings.CODE_PREFIX}-{millis}-{suffix}"

    async def issue(self, client: Optional[ClientInfo] = None, duration_days: Optional[int] = None) -> str:
        if duration_days is None:
            duration_days = settings.DEFAULT_DURATION_DAYS
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
            raise ValidationError(f"durationDays must be a positive integer, got {duration_days!r}")

        code = self.generate_code()
        key = ActivationKey(
            code=code,
            client=client or ClientInfo(),
            duration_days=duration_days,
            status=KeyStatus.UNUSED,
        )
        await self.store.set(key)

        logger.info(f"Issued {code} for {duration_days} days")
        return code

    async def reset(self, code: str) -> ActivationKey:
        """Return a key to ``unused`` so it can be bound to a new device."""
        existing = await self.store.get(code)
        if existing is None:
            raise NotFoundError("Activation code not found", code)

        changes = {
            "status": KeyStatus.UNUSED,
            "device_id": None,
            "activated_at": None,
            "expires_at": None,
        }
        if not await self.store.update(code, changes):
            raise NotFoundError("Activation code was deleted during reset", code)

        logger.info(f"Reset {code} (was {existing.status.value}, device {existing.device_id})")
        return existing.model_copy(update=changes)

    async def delete(self, code: str) -> None:
        await self.store.remove(code)
        logger.info(f"Deleted {code}")

    async def list_all(self, status: Optional[str] = None, now: Optional[datetime] = None) -> List[ActivationKey]:
        """
        Every key, newest first, with expiry folded into the displayed status.

        ``status`` filters on the displayed status; None or ``"all"`` keeps
        everything. For display only.
        """
        if status is not None and status not in LISTING_FILTERS:
            raise ValidationError(f"Unknown status filter: {status}")

        now = now or utcnow()
        keys = []
        for record in await self.store.list_all():
            shown = display_status(record, now)
            if status in (None, "all") or shown.value == status:
                keys.append(record.model_copy(update={"status": shown}))

        keys.sort(key=lambda k: (k.created_at or datetime.min, k.code), reverse=True)
        return keys
