from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class TenderStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    AWARDED = "awarded"
    ARCHIVED = "archived"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self is not BidStatus.PENDING


class Role(str, Enum):
    ADMIN = "admin"
    BUYER = "buyer"
    VENDOR = "vendor"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_datetime(value: Any) -> datetime | None:
    """Normalize driver output (aware datetime on PostgreSQL, ISO text on SQLite)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def as_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal value: {value!r}") from exc


def as_json(value: Any, *, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        if not value.strip():
            return default
        return json.loads(value)
    return value


def json_safe(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    if hasattr(value, "as_dict"):
        return json_safe(value.as_dict())
    return str(value)


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: Role = Role.VENDOR

    @property
    def is_privileged(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class Attachment:
    filename: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    url: str = ""

    @classmethod
    def from_value(cls, value: Any) -> "Attachment":
        if isinstance(value, Attachment):
            return value
        if not isinstance(value, dict):
            raise ValueError("attachment must be an object")
        filename = str(value.get("filename") or value.get("name") or "").strip()
        if not filename:
            raise ValueError("attachment filename is required")
        return cls(
            filename=filename,
            size=int(value.get("size") or 0),
            mime_type=str(value.get("mime_type") or value.get("mimeType") or value.get("type") or "application/octet-stream"),
            url=str(value.get("url") or ""),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _attachments(value: Any) -> list[Attachment]:
    items = as_json(value, default=[])
    if not isinstance(items, list):
        return []
    return [Attachment.from_value(x) for x in items]


@dataclass
class Tender:
    id: int
    title: str
    status: TenderStatus
    created_by: int
    deadline: datetime | None = None
    description: str = ""
    category_id: int | None = None
    budget_min: Decimal | None = None
    budget_max: Decimal | None = None
    requirements: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    updated_by: int | None = None
    view_count: int = 0
    published_at: datetime | None = None
    closing_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Tender":
        return cls(
            id=int(row["id"]),
            title=str(row["title"]),
            status=TenderStatus(row["status"]),
            created_by=int(row["created_by"]),
            deadline=as_datetime(row.get("deadline")),
            description=row.get("description") or "",
            category_id=int(row["category_id"]) if row.get("category_id") is not None else None,
            budget_min=as_decimal(row.get("budget_min")),
            budget_max=as_decimal(row.get("budget_max")),
            requirements=row.get("requirements"),
            attachments=_attachments(row.get("attachments")),
            updated_by=int(row["updated_by"]) if row.get("updated_by") is not None else None,
            view_count=int(row.get("view_count") or 0),
            published_at=as_datetime(row.get("published_at")),
            closing_date=as_datetime(row.get("closing_date")),
            created_at=as_datetime(row.get("created_at")),
            updated_at=as_datetime(row.get("updated_at")),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.deadline is None:
            return True
        return self.deadline <= (now or utcnow())

    def accepts_bids(self, now: datetime | None = None) -> bool:
        return self.status is TenderStatus.OPEN and not self.is_expired(now)

    def as_dict(self) -> dict[str, Any]:
        return json_safe(asdict(self))


@dataclass
class Bid:
    id: int
    tender_id: int
    vendor_id: int
    amount: Decimal
    status: BidStatus
    proposal: str = ""
    delivery_timeline: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    submitted_at: datetime | None = None
    updated_at: datetime | None = None
    evaluated_at: datetime | None = None
    evaluated_by: int | None = None
    evaluation_notes: str | None = None
    rejection_reason: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Bid":
        return cls(
            id=int(row["id"]),
            tender_id=int(row["tender_id"]),
            vendor_id=int(row["vendor_id"]),
            amount=as_decimal(row["amount"]) or Decimal("0"),
            status=BidStatus(row["status"]),
            proposal=row.get("proposal") or "",
            delivery_timeline=row.get("delivery_timeline"),
            attachments=_attachments(row.get("attachments")),
            submitted_at=as_datetime(row.get("submitted_at")),
            updated_at=as_datetime(row.get("updated_at")),
            evaluated_at=as_datetime(row.get("evaluated_at")),
            evaluated_by=int(row["evaluated_by"]) if row.get("evaluated_by") is not None else None,
            evaluation_notes=row.get("evaluation_notes"),
            rejection_reason=row.get("rejection_reason"),
        )

    def as_dict(self) -> dict[str, Any]:
        return json_safe(asdict(self))


@dataclass
class BidHistoryEntry:
    id: int
    bid_id: int
    action: str
    old_values: dict[str, Any]
    new_values: dict[str, Any]
    performed_by: int
    notes: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BidHistoryEntry":
        return cls(
            id=int(row["id"]),
            bid_id=int(row["bid_id"]),
            action=str(row["action"]),
            old_values=as_json(row.get("old_values"), default={}),
            new_values=as_json(row.get("new_values"), default={}),
            performed_by=int(row["performed_by"]),
            notes=row.get("notes"),
            created_at=as_datetime(row.get("created_at")),
        )

    def as_dict(self) -> dict[str, Any]:
        return json_safe(asdict(self))


@dataclass
class Category:
    id: int
    name: str
    description: str | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Category":
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
