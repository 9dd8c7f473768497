"""Per-lead mailpiece delivery state.

A tracking document exists for every (campaign, lead) pair that reached the
provider, or failed trying. Status moves along::

    submitted -> pending -> printed -> dispatched -> delivered | returned

and ``failed`` can be entered from any state. Provider callbacks may arrive
out of order; they are applied as received and a regression is logged.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from .errors import InvalidStatusError, NotFoundError
from .logger import get_logger
from .models import (
    MAILPIECE_STATUS_ORDER,
    MailpieceStats,
    MailpieceStatus,
    MailpieceTracking,
    StatusHistoryEntry,
    utc_now,
)
from .persistence import Persistence
from .stannp import ProviderFailure, ProviderSuccess, StannpClient

WEBHOOK_EVENT_STATUS = {
    "postcard.created": MailpieceStatus.SUBMITTED,
    "postcard.rendered": MailpieceStatus.PENDING,
    "postcard.printed": MailpieceStatus.PRINTED,
    "postcard.dispatched": MailpieceStatus.DISPATCHED,
    "postcard.delivered": MailpieceStatus.DELIVERED,
    "postcard.returned": MailpieceStatus.RETURNED,
    "postcard.failed": MailpieceStatus.FAILED,
    "postcard.cancelled": MailpieceStatus.FAILED,
}

# Status names reported by ``postcards/get``.
PROVIDER_STATUS = {
    "test": MailpieceStatus.PENDING,
    "received": MailpieceStatus.PENDING,
    "producing": MailpieceStatus.PRINTED,
    "handed_over": MailpieceStatus.DISPATCHED,
    "local_delivery": MailpieceStatus.DISPATCHED,
    "cancelled": MailpieceStatus.FAILED,
}

MILESTONE_FIELDS = {
    MailpieceStatus.PRINTED: "printed_at",
    MailpieceStatus.DISPATCHED: "dispatched_at",
    MailpieceStatus.DELIVERED: "delivered_at",
    MailpieceStatus.RETURNED: "returned_at",
}

Details = Union[Dict[str, Any], str, None]


def parse_status(value: Union[str, MailpieceStatus]) -> MailpieceStatus:
    """Return the :class:`MailpieceStatus` named by ``value``."""
    if isinstance(value, MailpieceStatus):
        return value
    try:
        return MailpieceStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatusError(f"Unknown mailpiece status: {value}") from None


def _details_text(details: Details) -> Optional[str]:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return json.dumps(details, default=str, sort_keys=True)


class MailpieceTracker:
    """Owns tracking documents and their state transitions."""

    def __init__(self, persistence: Persistence, *, client: Optional[StannpClient] = None, logger=None):
        self.persistence = persistence
        self.client = client
        self.logger = logger or get_logger()

    async def _save(self, record: MailpieceTracking) -> MailpieceTracking:
        await self.persistence.save_mailpiece(record.to_document())
        return record

    async def record_submission(
        self,
        campaign_id: str,
        lead_id: str,
        design_id: str,
        result: ProviderSuccess,
    ) -> MailpieceTracking:
        """Persist the ``submitted`` record of a freshly created mailpiece."""
        now = utc_now()
        record = MailpieceTracking(
            campaign_id=campaign_id,
            lead_id=lead_id,
            design_id=design_id,
            provider_id=result.id,
            status=MailpieceStatus.SUBMITTED,
            status_history=[
                StatusHistoryEntry(
                    status=MailpieceStatus.SUBMITTED,
                    timestamp=now,
                    details=f"Created with Stannp ID: {result.id}",
                )
            ],
            cost=result.cost,
            submitted_at=now,
            tracking_url=result.tracking_url,
        )
        return await self._save(record)

    async def record_failure(self, campaign_id: str, lead_id: str, design_id: str, error: str) -> MailpieceTracking:
        """Persist a ``failed`` record for a lead whose dispatch was exhausted."""
        record = MailpieceTracking(
            campaign_id=campaign_id,
            lead_id=lead_id,
            design_id=design_id,
            status=MailpieceStatus.FAILED,
            status_history=[StatusHistoryEntry(status=MailpieceStatus.FAILED, details=error)],
            error=error,
        )
        return await self._save(record)

    async def update_mailpiece_status(
        self,
        provider_id: str,
        new_status: Union[str, MailpieceStatus],
        details: Details = None,
    ) -> MailpieceTracking:
        """Apply a status transition reported for ``provider_id``.

        Raises:
            InvalidStatusError: ``new_status`` is not a mailpiece status.
            NotFoundError: no tracking document carries ``provider_id``.
        """
        status = parse_status(new_status)
        document = await self.persistence.find_mailpiece_by_provider_id(provider_id)
        if document is None:
            raise NotFoundError(f"Mailpiece {provider_id} not found in database")
        record = MailpieceTracking.model_validate(document)

        previous = record.status
        if (
            previous in MAILPIECE_STATUS_ORDER
            and status in MAILPIECE_STATUS_ORDER
            and MAILPIECE_STATUS_ORDER[status] < MAILPIECE_STATUS_ORDER[previous]
        ):
            self.logger.warning(
                "Mailpiece %s moves backwards from %s to %s", provider_id, previous.value, status.value
            )

        now = utc_now()
        record.status = status
        record.status_history.append(StatusHistoryEntry(status=status, timestamp=now, details=_details_text(details)))
        milestone = MILESTONE_FIELDS.get(status)
        if milestone:
            setattr(record, milestone, now)
        if status == MailpieceStatus.DISPATCHED and isinstance(details, dict) and details.get("tracking_url"):
            record.tracking_url = str(details["tracking_url"])
        if status == MailpieceStatus.FAILED and details:
            record.error = _details_text(details)

        await self._save(record)
        self.logger.info(
            "Mailpiece %s (campaign %s, lead %s): %s -> %s",
            provider_id,
            record.campaign_id,
            record.lead_id,
            previous.value,
            status.value,
        )
        return record

    async def list_mailpieces(
        self, campaign_id: str, status: Union[str, MailpieceStatus, None] = None
    ) -> List[MailpieceTracking]:
        wanted = parse_status(status).value if status is not None else None
        documents = await self.persistence.list_mailpieces(campaign_id, status=wanted)
        return [MailpieceTracking.model_validate(doc) for doc in documents]

    async def get_campaign_mailpiece_stats(self, campaign_id: str) -> MailpieceStats:
        """Aggregate count, cost and mean delivery time in days for a campaign."""
        stats = MailpieceStats()
        delivery_days: List[float] = []
        for record in await self.list_mailpieces(campaign_id):
            stats.total += 1
            stats.total_cost += record.cost or 0.0
            stats.by_status[record.status.value] = stats.by_status.get(record.status.value, 0) + 1
            if record.delivered_at and record.dispatched_at:
                delta = record.delivered_at - record.dispatched_at
                delivery_days.append(delta.total_seconds() / 86400)
        if delivery_days:
            stats.avg_delivery_time = sum(delivery_days) / len(delivery_days)
        return stats

    async def sync_mailpiece_status(self, provider_id: str) -> Optional[MailpieceTracking]:
        """Pull the provider's view of ``provider_id`` and apply it if it changed.

        Returns the stored record (updated or not), or ``None`` when the
        provider could not be queried or reported an unknown status.
        """
        if self.client is None:
            raise RuntimeError("MailpieceTracker has no provider client")
        document = await self.persistence.find_mailpiece_by_provider_id(provider_id)
        if document is None:
            raise NotFoundError(f"Mailpiece {provider_id} not found in database")
        record = MailpieceTracking.model_validate(document)

        result = await self.client.get_postcard(provider_id)
        if isinstance(result, ProviderFailure):
            self.logger.warning("Cannot sync mailpiece %s: %s", provider_id, result.error)
            return None
        raw_status = (result.status or "").strip().lower()
        status = PROVIDER_STATUS.get(raw_status)
        if status is None:
            try:
                status = MailpieceStatus(raw_status)
            except ValueError:
                self.logger.warning("Mailpiece %s has unrecognised provider status %r", provider_id, result.status)
                return None
        if status == record.status:
            return record
        details: Dict[str, Any] = {"source": "sync", "provider_status": raw_status}
        if result.tracking_url:
            details["tracking_url"] = result.tracking_url
        return await self.update_mailpiece_status(provider_id, status, details)
