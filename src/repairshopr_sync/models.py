"""
Pydantic models for RepairShopr API responses.

These models are the validation boundary between the loosely-typed RS JSON
payloads and the reconciler. A ticket that does not validate is reported as
malformed by the connector instead of leaking missing fields downstream.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_utc(dt: datetime | None) -> datetime | None:
    """RS sometimes returns naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class RSUser(BaseModel):
    """Technician/user embedded in a ticket."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    email: str | None = None
    full_name: str | None = None
    group: str | None = None


class RSComment(BaseModel):
    """Comment/update on a ticket."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    ticket_id: int | None = None
    subject: str | None = None
    body: str | None = None
    tech: str | None = None
    hidden: bool = False
    created_at: datetime | None = None

    @field_validator("hidden", mode="before")
    @classmethod
    def coerce_hidden(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("created_at", mode="after")
    @classmethod
    def utc_created(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def is_internal(self) -> bool:
        """Check if this is an internal/private comment."""
        return self.hidden

    @property
    def text(self) -> str:
        return (self.body or self.subject or "").strip()


class RSAsset(BaseModel):
    """Device attached to a ticket."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    asset_type_name: str | None = None
    manufacturer: str | None = None
    model: str | None = None

    @property
    def label(self) -> str:
        parts = [p for p in (self.manufacturer, self.model) if p]
        if parts:
            return " ".join(parts)
        return self.name or ""


class RSCustomField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str | None = None
    value: Any = None


class RSTicket(BaseModel):
    """RepairShopr ticket as returned by GET /tickets."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int
    number: int | str | None = None
    subject: str = ""
    status: str
    problem_type: str | None = None

    created_at: datetime
    updated_at: datetime | None = None
    resolved_at: datetime | None = None

    customer_business_then_name: str | None = None
    location_name: str | None = None
    user_id: int | None = None
    user: RSUser | None = None

    problem_description: str | None = Field(None, alias="problem_type_description")
    description: str | None = None

    comments: list[RSComment] = Field(default_factory=list)
    assets: list[RSAsset] = Field(default_factory=list)
    custom_fields: list[RSCustomField] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def require_status(cls, v: Any) -> str:
        # Kept verbatim; folding happens at lookup time in StatusNormalizer
        if v is None or not str(v).strip():
            raise ValueError("status is required")
        return str(v)

    @field_validator("subject", mode="before")
    @classmethod
    def default_subject(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def coerce_custom_fields(cls, v: Any) -> Any:
        # Some RS instances return properties as a {name: value} dict
        if isinstance(v, dict):
            return [{"name": k, "value": val} for k, val in v.items()]
        return v or []

    @field_validator("created_at", "updated_at", "resolved_at", mode="after")
    @classmethod
    def utc_timestamps(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def display_number(self) -> str:
        return str(self.number if self.number not in (None, "") else self.id)

    @property
    def last_updated(self) -> datetime:
        return self.updated_at or self.created_at

    @property
    def assignee_name(self) -> str | None:
        if self.user and self.user.full_name:
            return self.user.full_name.strip() or None
        return None

    @property
    def body_text(self) -> str:
        """Best available free-text description."""
        for candidate in (self.problem_description, self.description, self.subject):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""

    @property
    def claim_number(self) -> str | None:
        for cf in self.custom_fields:
            name = (cf.name or "").lower()
            if any(k in name for k in ("claim", "case", "reference")) and cf.value:
                return str(cf.value)
        return None


class RSTicketsPage(BaseModel):
    """
    One page of GET /tickets.

    Tickets are kept as raw dicts so each record can be validated on its own;
    one bad ticket must not reject the whole page. Pagination info arrives as
    either `meta.total_pages` or a top-level `total_pages`.
    """

    model_config = ConfigDict(extra="ignore")

    tickets: list[dict[str, Any]] = Field(default_factory=list)
    page: int = 1
    total_pages: int = 1
    total_entries: int = 0

    @model_validator(mode="before")
    @classmethod
    def lift_meta(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("meta"), dict):
            meta = data["meta"]
            data = dict(data)
            data.setdefault("total_pages", meta.get("total_pages", 1))
            data.setdefault("page", meta.get("page", 1))
            data.setdefault("total_entries", meta.get("total_entries", 0))
        return data

    @field_validator("tickets", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or []

    @field_validator("total_pages", "page", mode="before")
    @classmethod
    def at_least_one(cls, v: Any) -> int:
        try:
            return max(1, int(v or 1))
        except (TypeError, ValueError):
            return 1


class RSCommentsResponse(BaseModel):
    """Response from GET /tickets/:id/comments"""

    comments: list[RSComment] = Field(default_factory=list)
