"""Campaign fulfillment: from a paid campaign to dispatched postcards.

One run walks a campaign through::

    paid -> processing -> sent | failed

loading its brand, processing every distinct design once, matching leads to
designs and dispatching them. Problems that only affect part of a campaign
(a missing design, an unmatched lead, a dispatch that ran out of attempts)
are collected on the run context and stored in ``processing_errors``; the
campaign only fails as a whole when nothing was dispatched or an unexpected
exception escapes.

A run claims its campaign with a conditional status write, so overlapping
runs of one campaign cannot both dispatch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import chain
from typing import Any, Dict, List, Optional, Sequence, Set

from .assets import AssetProcessor
from .batcher import DispatchBatcher
from .errors import (
    CampaignNotFoundError,
    CampaignStateError,
    DownloadError,
    FulfillmentError,
    NotFoundError,
    UploadError,
)
from .logger import get_logger
from .matcher import count_by_design, match_recipients
from .models import (
    Brand,
    Campaign,
    CampaignStatus,
    Design,
    Lead,
    MailpieceStatus,
    ProcessedImage,
    ProcessingResult,
    ReadinessReport,
    utc_now,
)
from .persistence import Persistence
from .retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, SleepCallable, retry_with_backoff
from .tracker import MailpieceTracker

RETRYABLE_STATUSES = (CampaignStatus.FAILED, CampaignStatus.PROCESSING, CampaignStatus.SENT)


def _expected(statuses: Optional[Sequence[CampaignStatus]]) -> str:
    if not statuses:
        return CampaignStatus.PAID.value
    return ", ".join(status.value for status in statuses)


@dataclass
class RunContext:
    """State of one fulfillment run, handed from stage to stage."""

    campaign: Campaign
    is_test: bool = False
    errors: List[str] = field(default_factory=list)
    processed: Dict[str, ProcessedImage] = field(default_factory=dict)
    skipped: int = 0

    @property
    def campaign_id(self) -> str:
        return self.campaign.id


class CampaignOrchestrator:
    """Drive asset processing, matching and dispatch for campaigns."""

    def __init__(
        self,
        persistence: Persistence,
        assets: AssetProcessor,
        tracker: MailpieceTracker,
        batcher: DispatchBatcher,
        *,
        design_concurrency: int = 4,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        sleep: SleepCallable = asyncio.sleep,
        metrics=None,
        logger=None,
    ):
        self.persistence = persistence
        self.assets = assets
        self.tracker = tracker
        self.batcher = batcher
        self.design_concurrency = max(1, int(design_concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay = float(retry_base_delay)
        self._sleep = sleep
        self.metrics = metrics
        self.logger = logger or get_logger()
        self._running: Set[str] = set()

    # Entry points -------------------------------------------------------------
    async def process_paid_campaign(self, campaign_id: str, is_test: bool = False) -> ProcessingResult:
        """Fulfil a ``paid`` campaign.

        ``is_test`` skips the status check and submits postcards in the
        provider's test mode.

        Raises:
            CampaignNotFoundError: the campaign does not exist.
            CampaignStateError: the campaign is not ``paid`` and ``is_test`` is
                false, or another run claimed it first.
        """
        campaign = await self._load_campaign(campaign_id)
        if campaign.status != CampaignStatus.PAID and not is_test:
            raise CampaignStateError(campaign_id, campaign.status.value)
        # Test runs start from whatever status the campaign is in.
        from_statuses = None if is_test else (CampaignStatus.PAID,)
        return await self._run(RunContext(campaign=campaign, is_test=is_test), from_statuses)

    async def retry_campaign(self, campaign_id: str) -> ProcessingResult:
        """Re-run fulfillment of a failed, stuck or partially sent campaign.

        Leads that already hold a live tracking document are left alone.
        """
        campaign = await self._load_campaign(campaign_id)
        if campaign.status not in RETRYABLE_STATUSES:
            raise CampaignStateError(campaign_id, campaign.status.value, expected=_expected(RETRYABLE_STATUSES))
        self.logger.info("Retrying campaign %s from status %s", campaign_id, campaign.status.value)
        return await self._run(
            RunContext(campaign=campaign), RETRYABLE_STATUSES, {"last_retry_at": utc_now().isoformat()}
        )

    async def is_campaign_ready_for_processing(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> ReadinessReport:
        """Check, without side effects, whether a campaign can be fulfilled now."""
        document = await self.persistence.get_campaign(campaign_id)
        if document is None:
            return ReadinessReport(ready=False, issues=["Campaign not found"])
        campaign = Campaign.model_validate(document)
        issues: List[str] = []
        if campaign.status != CampaignStatus.PAID:
            issues.append(f"Campaign status is {campaign.status.value}, expected 'paid'")
        if not campaign.brand_id:
            issues.append("No brand selected")
        if not campaign.design_assignments:
            issues.append("No design assignments")
        scheduled = campaign.scheduled_send_date
        if scheduled is not None:
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            if scheduled > (now or utc_now()):
                issues.append(f"Scheduled for {scheduled:%Y-%m-%d}, not ready yet")
        return ReadinessReport(ready=not issues, issues=issues)

    async def process_ready_campaigns(self) -> Dict[str, List[str]]:
        """Fulfil every ``paid`` campaign that passes the readiness check."""
        summary: Dict[str, List[str]] = {"processed": [], "skipped": [], "failed": []}
        for document in await self.persistence.list_campaigns(status=CampaignStatus.PAID.value):
            campaign_id = document["id"]
            report = await self.is_campaign_ready_for_processing(campaign_id)
            if not report.ready:
                self.logger.info("Skipping campaign %s: %s", campaign_id, ", ".join(report.issues))
                summary["skipped"].append(campaign_id)
                continue
            try:
                result = await self.process_paid_campaign(campaign_id)
            except FulfillmentError as exc:
                self.logger.warning("Campaign %s could not be processed: %s", campaign_id, exc)
                summary["failed"].append(campaign_id)
                continue
            summary["processed" if result.success else "failed"].append(campaign_id)
        return summary

    # Stages -------------------------------------------------------------------
    async def _load_campaign(self, campaign_id: str) -> Campaign:
        document = await self.persistence.get_campaign(campaign_id)
        if document is None:
            raise CampaignNotFoundError(campaign_id)
        return Campaign.model_validate(document)

    async def _run(
        self,
        ctx: RunContext,
        from_statuses: Optional[Sequence[CampaignStatus]],
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> ProcessingResult:
        campaign_id = ctx.campaign_id
        if campaign_id in self._running:
            raise CampaignStateError(
                campaign_id, CampaignStatus.PROCESSING.value, expected=_expected(from_statuses)
            )
        self._running.add(campaign_id)
        try:
            await self._claim(ctx, from_statuses, extra_fields)
            return await self._execute(ctx)
        finally:
            self._running.discard(campaign_id)

    async def _claim(
        self,
        ctx: RunContext,
        from_statuses: Optional[Sequence[CampaignStatus]],
        extra_fields: Optional[Dict[str, Any]],
    ) -> None:
        """Move the campaign to ``processing``, failing if another run got there first."""
        campaign_id = ctx.campaign_id
        fields: Dict[str, Any] = {
            "status": CampaignStatus.PROCESSING.value,
            "processing_started_at": utc_now().isoformat(),
        }
        fields.update(extra_fields or {})
        if from_statuses is None:
            await self.persistence.update_campaign(campaign_id, fields)
            return
        claimed = await self.persistence.transition_campaign(
            campaign_id, [status.value for status in from_statuses], fields
        )
        if not claimed:
            current = await self.persistence.get_campaign(campaign_id) or {}
            self.logger.warning("Campaign %s was claimed by another run", campaign_id)
            raise CampaignStateError(campaign_id, str(current.get("status")), expected=_expected(from_statuses))

    async def _execute(self, ctx: RunContext) -> ProcessingResult:
        campaign_id = ctx.campaign_id
        self.logger.info("Starting campaign processing for %s (test: %s)", campaign_id, ctx.is_test)
        if self.metrics is not None:
            self.metrics.processing_started()
        try:
            return await self._fulfil(ctx)
        except Exception as exc:
            ctx.errors.append(str(exc) or exc.__class__.__name__)
            self.logger.exception("Campaign %s processing failed", campaign_id)
            await self.persistence.update_campaign(campaign_id, self._failed_fields(ctx))
            if self.metrics is not None:
                self.metrics.inc_campaign(CampaignStatus.FAILED.value)
            return ProcessingResult(success=False, errors=ctx.errors)
        except BaseException:
            # Cancelled mid-run: the final status may or may not have been written.
            ctx.errors.append("Processing interrupted")
            self.logger.warning("Campaign %s processing interrupted", campaign_id)
            interrupted = await self.persistence.transition_campaign(
                campaign_id, (CampaignStatus.PROCESSING.value,), self._failed_fields(ctx)
            )
            if interrupted and self.metrics is not None:
                self.metrics.inc_campaign(CampaignStatus.FAILED.value)
            raise
        finally:
            if self.metrics is not None:
                self.metrics.processing_finished()

    @staticmethod
    def _failed_fields(ctx: RunContext) -> Dict[str, Any]:
        return {
            "status": CampaignStatus.FAILED.value,
            "processing_errors": ctx.errors,
            "processing_failed_at": utc_now().isoformat(),
        }

    async def _fulfil(self, ctx: RunContext) -> ProcessingResult:
        campaign = ctx.campaign
        brand = await self._load_brand(campaign)
        await self._process_designs(ctx, brand)

        leads = await self.load_leads(campaign.id, ctx)
        live = await self.persistence.tracked_lead_ids(campaign.id, exclude_status=(MailpieceStatus.FAILED.value,))
        pending = [lead for lead in leads if lead.id not in live]
        ctx.skipped = len(leads) - len(pending)
        if ctx.skipped:
            self.logger.info("Campaign %s: %d leads already dispatched, skipping them", campaign.id, ctx.skipped)
        self.logger.info("Found %d leads to process for campaign %s", len(pending), campaign.id)

        match = match_recipients(pending, campaign.design_assignments, ctx.processed)
        ctx.errors.extend(match.errors)
        for design_id, count in count_by_design(match.matched).items():
            self.logger.debug("Campaign %s: design %s serves %d leads", campaign.id, design_id, count)

        outcome = await self.batcher.dispatch(campaign.id, match.matched, test=ctx.is_test)
        ctx.errors.extend(f"Lead {item.lead.id}: {item.error}" for item in outcome.failed)

        dispatched = await self.persistence.tracked_lead_ids(
            campaign.id, exclude_status=(MailpieceStatus.FAILED.value,)
        )
        final_status = CampaignStatus.SENT if dispatched else CampaignStatus.FAILED
        stats = await self.tracker.get_campaign_mailpiece_stats(campaign.id)
        now = utc_now().isoformat()
        await self.persistence.update_campaign(
            campaign.id,
            {
                "status": final_status.value,
                "processing_completed_at": now,
                "actual_send_date": now,
                "leads_sent": len(outcome.successful),
                "leads_failed": len(outcome.failed),
                "processing_errors": ctx.errors,
                "mailpiece_stats": stats.to_document(),
                "total_cost": stats.total_cost,
            },
        )
        if self.metrics is not None:
            self.metrics.inc_campaign(final_status.value)
        self.logger.info(
            "Campaign %s processing complete (%s). Sent: %d, Failed: %d, Errors: %d",
            campaign.id,
            final_status.value,
            len(outcome.successful),
            len(outcome.failed),
            len(ctx.errors),
        )
        return ProcessingResult(
            success=final_status == CampaignStatus.SENT,
            processed=len(outcome.successful),
            failed=len(outcome.failed),
            skipped=ctx.skipped,
            errors=ctx.errors,
            stats=stats,
        )

    async def _load_brand(self, campaign: Campaign) -> Brand:
        if not campaign.owner_uid or not campaign.brand_id:
            raise FulfillmentError("Campaign missing owner UID or brand ID")
        document = await self.persistence.get_brand(campaign.owner_uid, campaign.brand_id)
        if document is None:
            raise NotFoundError(f"Brand {campaign.brand_id} not found")
        document.setdefault("id", campaign.brand_id)
        return Brand.model_validate(document)

    async def _process_designs(self, ctx: RunContext, brand: Brand) -> None:
        campaign = ctx.campaign
        semaphore = asyncio.Semaphore(self.design_concurrency)

        async def process(design_id: str) -> None:
            async with semaphore:
                document = await self.persistence.get_design(campaign.owner_uid, design_id)
                if document is None:
                    ctx.errors.append(f"Design {design_id} not found")
                    return
                document.setdefault("id", design_id)
                design = Design.model_validate(document)
                try:
                    if not design.final_image_url:
                        raise FulfillmentError(f"No front image URL for design {design_id}")
                    ctx.processed[design_id] = await retry_with_backoff(
                        lambda: self.assets.process_design(design.final_image_url, brand, campaign.id, design_id),
                        max_attempts=self.max_attempts,
                        base_delay=self.retry_base_delay,
                        retry_on=(DownloadError, UploadError),
                        sleep=self._sleep,
                        on_retry=lambda attempt, exc, delay: self.logger.warning(
                            "Design %s attempt %d failed: %s (retrying in %.1fs)", design_id, attempt, exc, delay
                        ),
                    )
                except Exception as exc:
                    message = f"Failed to process design {design_id}: {exc}"
                    ctx.errors.append(message)
                    self.logger.error(message)
                    if self.metrics is not None:
                        self.metrics.inc_design("error")
                    return
                if self.metrics is not None:
                    self.metrics.inc_design("ok")

        await asyncio.gather(*(process(design_id) for design_id in campaign.unique_design_ids()))

    async def load_leads(self, campaign_id: str, ctx: Optional[RunContext] = None) -> List[Lead]:
        """Merge chunked and flat lead storage into one list, unique by lead id."""
        chunks = await self.persistence.list_lead_chunks(campaign_id)
        flat = await self.persistence.list_leads(campaign_id)
        leads: Dict[str, Lead] = {}
        for raw in chain(chain.from_iterable(chunks), flat):
            try:
                lead = Lead.from_record(raw)
            except ValueError as exc:
                if ctx is not None:
                    ctx.errors.append(f"Invalid lead record skipped: {exc}")
                self.logger.warning("Campaign %s: invalid lead record skipped: %s", campaign_id, exc)
                continue
            leads.setdefault(lead.id, lead)
        return list(leads.values())
