"""Service facade wiring the pipeline components and the scheduler loop."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Optional

from .assets import AssetProcessor
from .batcher import DispatchBatcher
from .errors import FulfillmentError
from .logger import get_logger
from .orchestrator import CampaignOrchestrator
from .persistence import Persistence
from .prometheus import FulfillmentMetrics
from .retry import SleepCallable
from .stannp import ProviderFailure, StannpClient
from .storage import ObjectStorage, build_storage
from .tracker import WEBHOOK_EVENT_STATUS, MailpieceTracker


class FulfillmentCore:
    """Own the collaborators of the pipeline and expose them as commands."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/fulfillment.db",
        logger=None,
        metrics: FulfillmentMetrics | None = None,
        storage: ObjectStorage | None = None,
        client: StannpClient | None = None,
        settings: Optional[Dict[str, Any]] = None,
        start_active: bool = False,
        scheduler_interval: float = 300.0,
        sleep: SleepCallable = asyncio.sleep,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        settings = dict(settings or {})
        self.logger = logger or get_logger()
        self.metrics = metrics or FulfillmentMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.storage = storage or build_storage(settings)
        self.client = client or StannpClient(
            settings.get("stannp_api_key"),
            region=settings.get("stannp_region") or "US",
            base_url=settings.get("stannp_base_url"),
            timeout=settings.get("stannp_timeout") or 30.0,
            default_country=settings.get("default_country") or "CA",
            postcard_size=settings.get("postcard_size") or "A6",
            logger=self.logger,
        )
        self.assets = AssetProcessor(
            self.storage,
            download_timeout=settings.get("download_timeout") or 30.0,
            logo_max_width=settings.get("logo_max_width") or 1.5,
            logo_max_height=settings.get("logo_max_height") or 1.0,
            logger=self.logger,
        )
        self.tracker = MailpieceTracker(self.persistence, client=self.client, logger=self.logger)
        max_attempts = settings.get("max_attempts") or 3
        base_delay = settings.get("retry_base_delay")
        base_delay = 1.0 if base_delay is None else base_delay
        inter_batch_delay = settings.get("inter_batch_delay")
        self.batcher = DispatchBatcher(
            self.client,
            self.tracker,
            batch_size=settings.get("batch_size") or 50,
            max_attempts=max_attempts,
            base_delay=base_delay,
            inter_batch_delay=2.0 if inter_batch_delay is None else inter_batch_delay,
            sleep=sleep,
            metrics=self.metrics,
            log_activity=bool(settings.get("log_dispatch_activity")),
            logger=self.logger,
        )
        self.orchestrator = CampaignOrchestrator(
            self.persistence,
            self.assets,
            self.tracker,
            self.batcher,
            design_concurrency=settings.get("design_concurrency") or 4,
            max_attempts=max_attempts,
            retry_base_delay=base_delay,
            sleep=sleep,
            metrics=self.metrics,
            logger=self.logger,
        )

        self._active = bool(start_active)
        self._scheduler_interval = max(1.0, float(scheduler_interval))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_scheduler: Optional[asyncio.Task] = None

    async def init(self) -> None:
        """Create the database schema."""
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialise storage and start the scheduler loop."""
        await self.init()
        self._stop.clear()
        self._task_scheduler = asyncio.create_task(self._scheduler_loop(), name="ready-campaigns-loop")

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        self._wake_event.set()
        if self._task_scheduler:
            await asyncio.gather(self._task_scheduler, return_exceptions=True)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands.

        Pipeline errors are reported as ``{"ok": False, "error": ..., "code": ...}``.
        """
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except FulfillmentError as exc:
            self.logger.warning("Command %s failed: %s", cmd, exc)
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self._wake_event.set()
            return {"ok": True}
        if cmd == "suspend":
            self._active = False
            return {"ok": True, "active": False}
        if cmd == "activate":
            self._active = True
            self._wake_event.set()
            return {"ok": True, "active": True}
        if cmd == "processReady":
            summary = await self.orchestrator.process_ready_campaigns()
            return {"ok": True, **summary}

        if cmd in {"webhook", "updateMailpieceStatus", "syncMailpiece", "cancelMailpiece"}:
            return await self._handle_mailpiece_command(cmd, payload)

        campaign_id = payload.get("campaign_id")
        if not campaign_id:
            return {"ok": False, "error": "missing 'campaign_id'"}
        if cmd == "processCampaign":
            result = await self.orchestrator.process_paid_campaign(campaign_id, bool(payload.get("is_test")))
            return {"ok": True, "result": result.to_document()}
        if cmd == "retryCampaign":
            result = await self.orchestrator.retry_campaign(campaign_id)
            return {"ok": True, "result": result.to_document()}
        if cmd == "checkReadiness":
            report = await self.orchestrator.is_campaign_ready_for_processing(campaign_id)
            return {"ok": True, **report.to_document()}
        if cmd == "campaignStats":
            stats = await self.tracker.get_campaign_mailpiece_stats(campaign_id)
            return {"ok": True, "stats": stats.to_document()}
        if cmd == "listMailpieces":
            records = await self.tracker.list_mailpieces(campaign_id, payload.get("status"))
            return {"ok": True, "mailpieces": [record.to_document() for record in records]}
        if cmd == "listProviderMailpieces":
            page = await self.client.list_postcards(campaign_id, int(payload.get("page") or 1))
            if isinstance(page, ProviderFailure):
                return {"ok": False, "error": page.error}
            return {
                "ok": True,
                "total": page.total,
                "page": page.page,
                "mailpieces": [item.raw for item in page.items],
            }
        return {"ok": False, "error": "unknown command"}

    async def _handle_mailpiece_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "webhook":
            return await self._handle_webhook(payload)
        provider_id = payload.get("provider_id")
        if not provider_id:
            return {"ok": False, "error": "missing 'provider_id'"}
        if cmd == "updateMailpieceStatus":
            record = await self.tracker.update_mailpiece_status(provider_id, payload.get("status"), payload.get("details"))
            return {"ok": True, "mailpiece": record.to_document()}
        if cmd == "syncMailpiece":
            record = await self.tracker.sync_mailpiece_status(provider_id)
            if record is None:
                return {"ok": False, "error": f"Cannot sync mailpiece {provider_id}"}
            return {"ok": True, "mailpiece": record.to_document()}
        # cancelMailpiece
        result = await self.client.cancel_postcard(provider_id)
        if isinstance(result, ProviderFailure):
            return {"ok": False, "error": result.error}
        record = await self.tracker.update_mailpiece_status(provider_id, "failed", "cancelled")
        return {"ok": True, "mailpiece": record.to_document()}

    async def _handle_webhook(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        status = WEBHOOK_EVENT_STATUS.get(event_type or "")
        if status is None:
            self.logger.warning("Unknown Stannp event type: %s", event_type)
            self.metrics.inc_webhook("ignored")
            return {"ok": True, "handled": False, "message": "Event type not handled"}
        provider_id = data.get("mailpiece_id") or data.get("id")
        if not provider_id:
            return {"ok": False, "error": "missing 'data.mailpiece_id'"}
        await self.tracker.update_mailpiece_status(str(provider_id), status, data)
        self.metrics.inc_webhook(status.value)
        return {"ok": True, "handled": True, "status": status.value}

    # ----------------------------------------------------------------- scheduler
    async def _scheduler_loop(self) -> None:
        """Periodically fulfil campaigns that became ready."""
        while not self._stop.is_set():
            if self._active:
                try:
                    summary = await self.orchestrator.process_ready_campaigns()
                    self.logger.info(
                        "Ready campaigns cycle: processed=%d skipped=%d failed=%d",
                        len(summary["processed"]),
                        len(summary["skipped"]),
                        len(summary["failed"]),
                    )
                except Exception as exc:  # pragma: no cover
                    self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            interval = self._scheduler_interval if self._active else math.inf
            await self._wait_for_wakeup(interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Sleep until ``timeout`` elapses or someone sets the wake event."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
