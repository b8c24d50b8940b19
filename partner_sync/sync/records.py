"""
Normalized views of remote payloads.

PRM payloads use lower-camel keys (``partner_Tier__cf``, ``crmId``) and LMS
payloads JSON:API ``attributes``; everything downstream works with these
dataclasses instead of raw dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from partner_sync.utils.timeutils import parse_timestamp


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    """Return the first present key, trying each name as given and with a lower-case first letter."""
    for key in keys:
        for candidate in (key, key[:1].lower() + key[1:]):
            if candidate in payload and payload[candidate] not in (None, ""):
                return payload[candidate]
    return None


def _required_id(payload: Mapping[str, Any]) -> str:
    value = _clean(_pick(payload, "Id"))
    if value is None:
        raise KeyError("Id")
    return value


def _flag(value: Any) -> bool | None:
    """PRM flags arrive as booleans, 0/1 or strings such as ``"false"``."""
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "y"}:
        return True
    if text in {"false", "0", "no", "n"}:
        return False
    return None


def _reference_id(value: Any) -> str | None:
    """PRM references arrive either as a scalar id or as ``{"id": ...}``."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return _clean(value)


@dataclass(frozen=True)
class PrmAccount:
    id: str
    name: str | None
    tier: str | None = None
    status: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    partner_type: str | None = None
    website: str | None = None
    crm_id: str | None = None
    city: str | None = None
    country: str | None = None
    region: str | None = None
    parent_id: str | None = None
    updated_at: datetime | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PrmAccount":
        country = _clean(_pick(payload, "MailingCountry"))
        return cls(
            id=_required_id(payload),
            name=_clean(_pick(payload, "Name")),
            tier=_clean(_pick(payload, "Partner_Tier__cf")),
            status=_clean(_pick(payload, "Account_Status__cf")),
            owner_name=_clean(_pick(payload, "Account_Owner__cf")),
            owner_email=_clean(_pick(payload, "Account_Owner_Email__cf")),
            partner_type=_clean(_pick(payload, "Partner_Type__cf")),
            website=_clean(_pick(payload, "Website")),
            crm_id=_clean(_pick(payload, "CrmId")),
            city=_clean(_pick(payload, "MailingCity")),
            country=country,
            region=_clean(_pick(payload, "Region")) or country,
            parent_id=_reference_id(_pick(payload, "ParentAccountId")),
            updated_at=parse_timestamp(_pick(payload, "Updated")),
            raw=dict(payload),
        )

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class PrmUser:
    id: str
    email: str | None
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    phone: str | None = None
    account_id: str | None = None
    account_name: str | None = None
    status: str | None = None
    is_active: bool | None = None
    crm_id: str | None = None
    updated_at: datetime | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PrmUser":
        email = _clean(_pick(payload, "Email"))
        is_active = _pick(payload, "IsActive")
        return cls(
            id=_required_id(payload),
            email=email.lower() if email else None,
            first_name=_clean(_pick(payload, "FirstName")),
            last_name=_clean(_pick(payload, "LastName")),
            title=_clean(_pick(payload, "Title")),
            phone=_clean(_pick(payload, "Phone")),
            account_id=_reference_id(_pick(payload, "AccountId", "Account")),
            account_name=_clean(_pick(payload, "AccountName")),
            status=_clean(_pick(payload, "Contact_Status__cf")),
            is_active=_flag(is_active),
            crm_id=_clean(_pick(payload, "CrmId")),
            updated_at=parse_timestamp(_pick(payload, "Updated")),
            raw=dict(payload),
        )

    @property
    def label(self) -> str:
        return self.email or self.id


def _attributes(resource: Mapping[str, Any]) -> Mapping[str, Any]:
    return resource.get("attributes") or {}


@dataclass(frozen=True)
class LmsPerson:
    id: str
    email: str | None
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime | None = None
    last_active_at: datetime | None = None
    deactivated_at: datetime | None = None

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "LmsPerson":
        attrs = _attributes(resource)
        email = _clean(attrs.get("email"))
        return cls(
            id=str(resource["id"]),
            email=email.lower() if email else None,
            first_name=_clean(attrs.get("first_name")),
            last_name=_clean(attrs.get("last_name")),
            created_at=parse_timestamp(attrs.get("created_at")),
            last_active_at=parse_timestamp(attrs.get("last_active_at")),
            deactivated_at=parse_timestamp(attrs.get("deactivated_at")),
        )


@dataclass(frozen=True)
class LmsGroupRecord:
    id: str
    name: str
    description: str | None = None
    user_count: int = 0

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "LmsGroupRecord":
        attrs = _attributes(resource)
        return cls(
            id=str(resource["id"]),
            name=_clean(attrs.get("name")) or "",
            description=_clean(attrs.get("description")),
            user_count=int(attrs.get("user_count") or 0),
        )


@dataclass(frozen=True)
class LmsCourseRecord:
    id: str
    name: str
    description: str | None = None
    status: str | None = None

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "LmsCourseRecord":
        attrs = _attributes(resource)
        return cls(
            id=str(resource["id"]),
            name=_clean(attrs.get("name")) or _clean(attrs.get("title")) or "",
            description=_clean(attrs.get("description")),
            status=_clean(attrs.get("status")) or "active",
        )


@dataclass(frozen=True)
class TranscriptEntry:
    id: str
    course_id: str | None
    resource_type: str | None
    progress_status: str | None
    enrolled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    score: float | None = None

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "TranscriptEntry":
        attrs = _attributes(resource)
        score = attrs.get("score")
        return cls(
            id=str(resource["id"]),
            course_id=_clean(attrs.get("resource_id")),
            resource_type=_clean(attrs.get("resource_type")),
            progress_status=_clean(attrs.get("progress_status")),
            enrolled_at=parse_timestamp(attrs.get("enrolled_at")),
            started_at=parse_timestamp(attrs.get("started_at")),
            completed_at=parse_timestamp(attrs.get("completed_at")),
            expires_at=parse_timestamp(attrs.get("expires_at")),
            score=float(score) if score not in (None, "") else None,
        )

    @property
    def is_course(self) -> bool:
        return bool(self.course_id) and self.resource_type == "course"
