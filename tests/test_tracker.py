from datetime import timedelta

import pytest

from helpers import FakeStannp
from postcard_fulfillment.errors import InvalidStatusError, NotFoundError
from postcard_fulfillment.models import MailpieceStatus, MailpieceTracking, utc_now
from postcard_fulfillment.persistence import Persistence
from postcard_fulfillment.stannp import ProviderSuccess
from postcard_fulfillment.tracker import MailpieceTracker, parse_status


class WatchedPersistence(Persistence):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.writes = 0

    async def save_mailpiece(self, record):
        self.writes += 1
        await super().save_mailpiece(record)


async def _tracker(tmp_path, client=None):
    p = WatchedPersistence(str(tmp_path / "track.db"))
    await p.init_db()
    return p, MailpieceTracker(p, client=client)


def test_parse_status():
    assert parse_status("Delivered") is MailpieceStatus.DELIVERED
    assert parse_status(MailpieceStatus.FAILED) is MailpieceStatus.FAILED
    with pytest.raises(InvalidStatusError):
        parse_status("lost")


@pytest.mark.asyncio
async def test_record_submission(tmp_path):
    p, tracker = await _tracker(tmp_path)
    record = await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1", cost=0.62, tracking_url="https://t/1"))

    stored = MailpieceTracking.model_validate(await p.get_mailpiece("c1", "L1"))
    assert stored == record
    assert stored.status is MailpieceStatus.SUBMITTED
    assert stored.cost == 0.62
    assert stored.submitted_at is not None
    assert [(h.status, h.details) for h in stored.status_history] == [
        (MailpieceStatus.SUBMITTED, "Created with Stannp ID: sp-1")
    ]


@pytest.mark.asyncio
async def test_update_appends_history_and_milestones(tmp_path):
    p, tracker = await _tracker(tmp_path)
    await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1"))

    await tracker.update_mailpiece_status("sp-1", "printed")
    record = await tracker.update_mailpiece_status("sp-1", "dispatched", {"tracking_url": "https://track/sp-1"})
    assert record.status is MailpieceStatus.DISPATCHED
    assert record.printed_at is not None
    assert record.dispatched_at is not None
    assert record.tracking_url == "https://track/sp-1"
    assert [h.status.value for h in record.status_history] == ["submitted", "printed", "dispatched"]

    record = await tracker.update_mailpiece_status("sp-1", "failed", "Returned to sender")
    assert record.error == "Returned to sender"
    assert record.status_history[-1].details == "Returned to sender"


@pytest.mark.asyncio
async def test_unknown_provider_id_writes_nothing(tmp_path):
    p, tracker = await _tracker(tmp_path)
    with pytest.raises(NotFoundError, match="Mailpiece sp-x not found in database"):
        await tracker.update_mailpiece_status("sp-x", "delivered")
    assert p.writes == 0


@pytest.mark.asyncio
async def test_invalid_status_writes_nothing(tmp_path):
    p, tracker = await _tracker(tmp_path)
    await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1"))
    writes = p.writes
    with pytest.raises(InvalidStatusError):
        await tracker.update_mailpiece_status("sp-1", "teleported")
    assert p.writes == writes


@pytest.mark.asyncio
async def test_out_of_order_update_is_applied(tmp_path):
    warnings = []

    class Logger:
        def warning(self, msg, *args):
            warnings.append(msg % args)

        def info(self, *args):
            pass

    p = Persistence(str(tmp_path / "order.db"))
    await p.init_db()
    tracker = MailpieceTracker(p, logger=Logger())
    await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1"))
    await tracker.update_mailpiece_status("sp-1", "delivered")
    record = await tracker.update_mailpiece_status("sp-1", "printed")
    assert record.status is MailpieceStatus.PRINTED
    assert warnings == ["Mailpiece sp-1 moves backwards from delivered to printed"]


@pytest.mark.asyncio
async def test_campaign_stats(tmp_path):
    p, tracker = await _tracker(tmp_path)
    dispatched = utc_now() - timedelta(days=10)
    for index, days in enumerate((2, 3, 4)):
        record = MailpieceTracking(
            campaign_id="c1",
            lead_id=f"D{index}",
            design_id="d1",
            provider_id=f"sp-d{index}",
            status=MailpieceStatus.DELIVERED,
            cost=1.0,
            dispatched_at=dispatched,
            delivered_at=dispatched + timedelta(days=days),
        )
        await p.save_mailpiece(record.to_document())
    for index in range(2):
        await tracker.record_submission("c1", f"P{index}", "d1", ProviderSuccess(id=f"sp-p{index}", cost=0.5))
    await tracker.update_mailpiece_status("sp-p0", "pending")
    await tracker.update_mailpiece_status("sp-p1", "pending")

    stats = await tracker.get_campaign_mailpiece_stats("c1")
    assert stats.total == 5
    assert stats.by_status == {"delivered": 3, "pending": 2}
    assert stats.total_cost == pytest.approx(4.0)
    assert stats.avg_delivery_time == pytest.approx(3.0)

    empty = await tracker.get_campaign_mailpiece_stats("other")
    assert empty.total == 0
    assert empty.avg_delivery_time is None

    pending = await tracker.list_mailpieces("c1", status="pending")
    assert sorted(r.lead_id for r in pending) == ["P0", "P1"]


@pytest.mark.asyncio
async def test_sync_applies_provider_status(tmp_path):
    client = FakeStannp()
    p, tracker = await _tracker(tmp_path, client)
    await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1"))

    client.statuses["sp-1"] = ProviderSuccess(id="sp-1", status="handed_over", tracking_url="https://t/sp-1")
    record = await tracker.sync_mailpiece_status("sp-1")
    assert record.status is MailpieceStatus.DISPATCHED
    assert record.tracking_url == "https://t/sp-1"

    writes = p.writes
    unchanged = await tracker.sync_mailpiece_status("sp-1")
    assert unchanged.status is MailpieceStatus.DISPATCHED
    assert p.writes == writes

    client.statuses["sp-1"] = ProviderSuccess(id="sp-1", status="teleported")
    assert await tracker.sync_mailpiece_status("sp-1") is None


@pytest.mark.asyncio
async def test_sync_handles_provider_failure_and_missing_record(tmp_path):
    client = FakeStannp()
    p, tracker = await _tracker(tmp_path, client)
    await tracker.record_submission("c1", "L1", "d1", ProviderSuccess(id="sp-1"))
    assert await tracker.sync_mailpiece_status("sp-1") is None
    with pytest.raises(NotFoundError):
        await tracker.sync_mailpiece_status("sp-2")

    _, bare = await _tracker(tmp_path)
    with pytest.raises(RuntimeError):
        await bare.sync_mailpiece_status("sp-1")
