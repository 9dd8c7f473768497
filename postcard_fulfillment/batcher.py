"""Batched postcard dispatch with per-item retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, TypeVar, Union

from .errors import ProviderConfigurationError
from .logger import get_logger
from .matcher import MatchedRecipient
from .models import Lead, MailpieceTracking
from .retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, SleepCallable, retry_with_backoff
from .stannp import ProviderFailure, ProviderSuccess, StannpClient
from .tracker import MailpieceTracker

DEFAULT_BATCH_SIZE = 50
DEFAULT_INTER_BATCH_DELAY = 2.0

T = TypeVar("T")


class DispatchAttemptError(RuntimeError):
    """One failed ``create_postcard`` attempt."""


@dataclass
class FailedDispatch:
    lead: Lead
    design_id: str
    error: str
    provider_id: Optional[str] = None


@dataclass
class DispatchOutcome:
    successful: List[MailpieceTracking] = field(default_factory=list)
    failed: List[FailedDispatch] = field(default_factory=list)
    batch_sizes: List[int] = field(default_factory=list)


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``."""
    size = max(1, int(size))
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class DispatchBatcher:
    """Send matched recipients to the provider in fixed-size concurrent batches.

    Every attempted item ends up with a tracking document: ``submitted`` on
    success, ``failed`` once its attempts are exhausted. An item whose tracking
    write fails is reported in ``failed`` with its provider id instead of
    aborting the batch. Batches run one after the other with
    ``inter_batch_delay`` seconds between them.
    """

    def __init__(
        self,
        client: StannpClient,
        tracker: MailpieceTracker,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
        sleep: SleepCallable = asyncio.sleep,
        metrics=None,
        log_activity: bool = False,
        logger=None,
    ):
        self.client = client
        self.tracker = tracker
        self.batch_size = max(1, int(batch_size))
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = float(base_delay)
        self.inter_batch_delay = float(inter_batch_delay)
        self._sleep = sleep
        self.metrics = metrics
        self.log_activity = log_activity
        self.logger = logger or get_logger()

    def _log_activity(self, msg: str, *args) -> None:
        if self.log_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    async def dispatch(
        self,
        campaign_id: str,
        items: Sequence[MatchedRecipient],
        test: bool = False,
    ) -> DispatchOutcome:
        """Create one postcard per item and persist its tracking document."""
        outcome = DispatchOutcome()
        batches = partition(items, self.batch_size)
        for index, batch in enumerate(batches):
            if index > 0 and self.inter_batch_delay > 0:
                await self._sleep(self.inter_batch_delay)
            self.logger.info(
                "Campaign %s: dispatching batch %d/%d (%d items)", campaign_id, index + 1, len(batches), len(batch)
            )
            outcome.batch_sizes.append(len(batch))
            results = await asyncio.gather(
                *(self._dispatch_one(campaign_id, item, test) for item in batch), return_exceptions=True
            )
            config_error = None
            for item, result in zip(batch, results):
                if isinstance(result, ProviderConfigurationError):
                    config_error = config_error or result
                elif isinstance(result, Exception):
                    error = str(result) or result.__class__.__name__
                    self.logger.error("Lead %s dispatch crashed: %s", item.lead.id, error)
                    outcome.failed.append(FailedDispatch(lead=item.lead, design_id=item.design_id, error=error))
                elif isinstance(result, BaseException):
                    raise result
                elif isinstance(result, FailedDispatch):
                    outcome.failed.append(result)
                else:
                    outcome.successful.append(result)
            # Raised only once every sibling in the batch has settled.
            if config_error is not None:
                raise config_error
        return outcome

    async def _dispatch_one(
        self, campaign_id: str, item: MatchedRecipient, test: bool
    ) -> Union[MailpieceTracking, FailedDispatch]:
        lead = item.lead
        request = self.client.build_request(lead, item.front_url, tags=campaign_id, test=test)

        async def attempt() -> ProviderSuccess:
            try:
                result = await self.client.create_postcard(request)
            except ProviderConfigurationError:
                raise
            except Exception as exc:
                raise DispatchAttemptError(str(exc) or exc.__class__.__name__) from exc
            if isinstance(result, ProviderFailure):
                raise DispatchAttemptError(result.error)
            return result

        def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            if self.metrics is not None:
                self.metrics.inc_retry()
            self.logger.warning(
                "Lead %s attempt %d/%d failed: %s (retrying in %.1fs)",
                lead.id,
                attempt_no,
                self.max_attempts,
                exc,
                delay,
            )

        try:
            result = await retry_with_backoff(
                attempt,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                retry_on=(DispatchAttemptError,),
                sleep=self._sleep,
                on_retry=on_retry,
            )
        except DispatchAttemptError as exc:
            error = str(exc)
            if self.metrics is not None:
                self.metrics.inc_dispatch_failure()
            self._log_activity("Lead %s failed permanently: %s", lead.id, error)
            try:
                await self.tracker.record_failure(campaign_id, lead.id, item.design_id, error)
            except Exception as write_exc:
                self.logger.error("Lead %s: failure could not be tracked: %s", lead.id, write_exc)
                error = f"{error} (not tracked: {write_exc})"
            return FailedDispatch(lead=lead, design_id=item.design_id, error=error)

        if self.metrics is not None:
            self.metrics.inc_submitted()
        try:
            record = await self.tracker.record_submission(campaign_id, lead.id, item.design_id, result)
        except Exception as exc:
            # The postcard exists at the provider; keep its id for reconciliation.
            error = f"Submitted as {result.id} but tracking failed: {str(exc) or exc.__class__.__name__}"
            self.logger.error("Lead %s: %s", lead.id, error)
            return FailedDispatch(lead=lead, design_id=item.design_id, error=error, provider_id=result.id)
        self._log_activity("Lead %s submitted as %s (cost %.2f)", lead.id, result.id, result.cost)
        return record
