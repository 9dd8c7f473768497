"""Pydantic models for the campaign fulfillment pipeline.

This module defines the records exchanged between the pipeline stages and
persisted as JSON documents by :class:`postcard_fulfillment.persistence.Persistence`.

Models:
    - Brand / LogoVariant: visual identity consumed by the asset processor
    - Design: one generated artwork referenced by design assignments
    - Lead: canonical recipient produced by :meth:`Lead.from_record`
    - Campaign / DesignAssignment: the unit of mail-out work
    - MailpieceTracking / StatusHistoryEntry: per-lead delivery state
    - ProcessedImage, MailpieceStats, ProcessingResult, ReadinessReport: results

Documents written by other systems use camelCase keys; every model accepts
both camelCase and snake_case input and always dumps snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """Base model for stored documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        """Serialise to a JSON-compatible dict with snake_case keys."""
        return self.model_dump(mode="json")


class CampaignStatus(str, Enum):
    """Campaign lifecycle. Fulfillment only drives ``paid -> processing -> sent|failed``."""

    DRAFT = "draft"
    BRAND_SELECTED = "brand_selected"
    DESIGNING = "designing"
    REVIEW = "review"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PRINTING = "printing"
    SENT = "sent"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELED = "canceled"
    FAILED = "failed"


class MailpieceStatus(str, Enum):
    """Delivery states of a single mailpiece."""

    SUBMITTED = "submitted"
    PENDING = "pending"
    PRINTED = "printed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    RETURNED = "returned"
    FAILED = "failed"


MAILPIECE_STATUS_ORDER = {
    MailpieceStatus.SUBMITTED: 0,
    MailpieceStatus.PENDING: 1,
    MailpieceStatus.PRINTED: 2,
    MailpieceStatus.DISPATCHED: 3,
    MailpieceStatus.DELIVERED: 4,
    MailpieceStatus.RETURNED: 4,
}


# Brand / design ------------------------------------------------------------
class LogoVariant(Document):
    """One rendition of a brand logo."""

    url: str
    type: str = "png"
    width: int
    height: int

    @model_validator(mode="before")
    @classmethod
    def _flatten_size(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("size"), dict):
            data = dict(data)
            size = data.pop("size")
            data.setdefault("width", size.get("width"))
            data.setdefault("height", size.get("height"))
        return data

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 1.0


class Brand(Document):
    """Owning entity for visual identity. Read-only for the pipeline."""

    id: str
    name: Optional[str] = None
    primary_color: Optional[str] = None
    accent_color: Optional[str] = None
    logo_variants: List[LogoVariant] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_logo(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("logo"), dict) and not {"logo_variants", "logoVariants"} & data.keys():
            data = dict(data)
            data["logo_variants"] = data.pop("logo").get("variants") or []
        return data

    def print_logo(self) -> Optional[LogoVariant]:
        """Return the logo variant to composite, preferring raster renditions."""
        if not self.logo_variants:
            return None
        for variant in self.logo_variants:
            if variant.type.lower() != "svg":
                return variant
        return self.logo_variants[0]


class Design(Document):
    """A generated artwork; only its final image URL matters here."""

    id: str
    final_image_url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_generation(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("generation"), dict):
            data = dict(data)
            generation = data.pop("generation")
            data.setdefault("final_image_url", generation.get("finalImageUrl") or generation.get("final_image_url"))
        return data


# Leads ----------------------------------------------------------------------
def _first(raw: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


class Lead(Document):
    """Canonical mail recipient."""

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    business_type: Optional[str] = None
    address1: str = ""
    address2: Optional[str] = None
    address3: Optional[str] = None
    city: str = ""
    postal_code: str = ""
    country: Optional[str] = None

    @classmethod
    def from_record(cls, raw: Dict[str, Any]) -> "Lead":
        """Normalise a stored lead record into the canonical shape.

        Accepts flat or chunked lead documents, ``postalCode``/``postcode``
        spellings, a single ``name`` split into first/last and a nested
        ``mailingAddress`` block.

        Raises:
            ValueError: If the record carries no identifier.
        """
        lead_id = _first(raw, "id", "leadId", "lead_id", "placeId", "place_id")
        if not lead_id:
            raise ValueError("Lead record has no id")
        mailing = raw.get("mailingAddress") or raw.get("mailing_address") or {}

        first_name = _first(raw, "firstName", "first_name")
        last_name = _first(raw, "lastName", "last_name")
        name = _first(raw, "name")
        if name and not (first_name or last_name):
            parts = name.split()
            first_name = parts[0] if parts else None
            last_name = " ".join(parts[1:]) or None

        return cls(
            id=lead_id,
            first_name=first_name,
            last_name=last_name,
            company=_first(raw, "businessName", "business_name", "company"),
            business_type=_first(raw, "businessType", "business_type"),
            address1=_first(raw, "address1", "address", "street") or _first(mailing, "street", "address1") or "",
            address2=_first(raw, "address2"),
            address3=_first(raw, "address3"),
            city=_first(raw, "city") or _first(mailing, "city") or "",
            postal_code=(
                _first(raw, "postalCode", "postal_code", "postcode")
                or _first(mailing, "postalCode", "postal_code", "postcode")
                or ""
            ),
            country=_first(raw, "country") or _first(mailing, "country"),
        )


# Campaign -------------------------------------------------------------------
class DesignAssignment(Document):
    """Maps one design onto the business types it covers."""

    design_id: str
    business_types: List[str] = Field(default_factory=list)


class MailpieceStats(Document):
    """Aggregate delivery statistics for one campaign."""

    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    total_cost: float = 0.0
    avg_delivery_time: Optional[float] = None


class Campaign(Document):
    """A unit of mail-out work."""

    id: str
    owner_uid: Optional[str] = None
    brand_id: Optional[str] = None
    status: CampaignStatus = CampaignStatus.DRAFT
    design_assignments: List[DesignAssignment] = Field(default_factory=list)
    scheduled_send_date: Optional[datetime] = None
    processing_errors: List[str] = Field(default_factory=list)
    mailpiece_stats: Optional[MailpieceStats] = None
    total_cost: float = 0.0
    leads_sent: int = 0
    leads_failed: int = 0
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_failed_at: Optional[datetime] = None
    actual_send_date: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_scheduling(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("scheduling"), dict):
            data = dict(data)
            scheduling = data.pop("scheduling")
            scheduled = scheduling.get("scheduledSendDate") or scheduling.get("scheduled_send_date")
            if scheduled is not None:
                data.setdefault("scheduled_send_date", scheduled)
        return data

    def unique_design_ids(self) -> List[str]:
        """Return the distinct design ids referenced by assignments, in order."""
        return list(dict.fromkeys(a.design_id for a in self.design_assignments))


# Tracking -------------------------------------------------------------------
class StatusHistoryEntry(Document):
    status: MailpieceStatus
    timestamp: datetime = Field(default_factory=utc_now)
    details: Optional[str] = None


class MailpieceTracking(Document):
    """Delivery state of one (campaign, lead) pair, keyed by ``lead_id``."""

    campaign_id: str
    lead_id: str
    design_id: str
    provider_id: Optional[str] = None
    status: MailpieceStatus = MailpieceStatus.SUBMITTED
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    cost: float = 0.0
    submitted_at: Optional[datetime] = None
    printed_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    tracking_url: Optional[str] = None
    error: Optional[str] = None


# Results --------------------------------------------------------------------
class ProcessedImage(Document):
    """Descriptor of an uploaded print-ready asset."""

    url: str
    width: int
    height: int
    size: int


class ProcessingResult(Document):
    """Outcome of one orchestrator run."""

    success: bool
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    stats: Optional[MailpieceStats] = None


class ReadinessReport(Document):
    ready: bool
    issues: List[str] = Field(default_factory=list)
