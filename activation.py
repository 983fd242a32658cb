"""
Activation state machine.

Pure decisions over a key record and the device's clock watermark. Nothing
here touches the store or the local database.

    inactive --activate--> active --time--> expired
                             |
                             +--clock moved back--> tampered

``expired`` and ``tampered`` only heal through an admin reset, which brings the
record back to ``unused`` and the verdict back to ``inactive``.
"""
from datetime import datetime
from typing import Optional

from models import ActivationKey, KeyStatus, Verdict


def evaluate(
    record: Optional[ActivationKey],
    local_now: datetime,
    last_observed_now: Optional[datetime],
) -> Verdict:
    if record is None or record.status == KeyStatus.UNUSED:
        return Verdict.INACTIVE

    # Rollback check comes first: a rewound clock must not revive an expired key
    if last_observed_now is not None and local_now < last_observed_now:
        return Verdict.TAMPERED

    if record.expires_at is None or local_now > record.expires_at:
        return Verdict.EXPIRED

    return Verdict.ACTIVE


def advance_watermark(last_observed_now: Optional[datetime], local_now: datetime) -> datetime:
    if last_observed_now is None:
        return local_now
    return max(last_observed_now, local_now)


def display_status(record: ActivationKey, now: datetime) -> KeyStatus:
    """Status shown in listings: an activated key past its expiry reads as expired."""
    if record.status == KeyStatus.ACTIVATED and record.expires_at is not None and now > record.expires_at:
        return KeyStatus.EXPIRED
    return record.status


def overlay_status(record: ActivationKey, verdict: Verdict) -> ActivationKey:
    """Copy of ``record`` carrying the client-local view of its status."""
    overlay = {
        Verdict.EXPIRED: KeyStatus.EXPIRED,
        Verdict.TAMPERED: KeyStatus.TAMPERED,
    }.get(verdict)
    if overlay is None:
        return record
    return record.model_copy(update={"status": overlay})
