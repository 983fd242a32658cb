import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

BINDING_FIELDS = ("device_id", "activated_at", "expires_at")
UPDATABLE_FIELDS = ("status",) + BINDING_FIELDS


def utcnow() -> datetime:
    """Naive UTC now; every timestamp in a record is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyStatus(str, enum.Enum):
    UNUSED = "unused"
    ACTIVATED = "activated"
    EXPIRED = "expired"
    TAMPERED = "tampered"  # client-local overlay, never written to the store


class Verdict(str, enum.Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    EXPIRED = "expired"
    TAMPERED = "tampered"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClientInfo(CamelModel):
    name: str = ""
    phone: str = ""
    notes: str = ""


class ActivationKey(CamelModel):
    code: str
    client: ClientInfo = Field(default_factory=ClientInfo)
    duration_days: int
    status: KeyStatus = KeyStatus.UNUSED
    created_at: Optional[datetime] = None  # stamped by the store, ignored on write
    device_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_bound(self) -> bool:
        return all(getattr(self, field) is not None for field in BINDING_FIELDS)

    @property
    def binding_consistent(self) -> bool:
        """Binding fields are either all set or all null."""
        present = [getattr(self, field) is not None for field in BINDING_FIELDS]
        return all(present) or not any(present)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class KeyChange:
    """A change notification. ``record`` is None when the key was removed."""

    code: str
    record: Optional[ActivationKey]

    @property
    def removed(self) -> bool:
        return self.record is None


# Admin API models

class IssueKeyRequest(CamelModel):
    client_name: str = ""
    client_phone: str = ""
    client_notes: str = ""
    duration_days: int = 30


class IssueKeyResponse(CamelModel):
    code: str
    key: Optional[ActivationKey] = None


class KeyListResponse(CamelModel):
    count: int
    keys: List[ActivationKey]


class ResetKeyResponse(CamelModel):
    success: bool
    key: ActivationKey


class DeleteKeyResponse(CamelModel):
    success: bool
    code: str


class ErrorResponse(CamelModel):
    error: str
    message: str
    code: Optional[str] = None
    device_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


# Store bridge models (consumed by HTTPKeyStore)

class StoreUpdateRequest(CamelModel):
    changes: Dict[str, Any]
    expect: Optional[Dict[str, Any]] = None


class StoreUpdateResponse(CamelModel):
    matched: bool


class HealthCheckResponse(CamelModel):
    status: str
    service: str
    version: str
