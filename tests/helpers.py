"""Fakes and sample records shared by the test modules."""

import io
from typing import Any, Dict, List, Optional

from PIL import Image

from postcard_fulfillment.errors import UploadError
from postcard_fulfillment.models import ProcessedImage
from postcard_fulfillment.stannp import PostcardRequest, ProviderFailure, ProviderPage, ProviderSuccess, Recipient


def make_image(width: int, height: int, fmt: str = "JPEG", color=(200, 30, 30)) -> bytes:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    if mode == "RGBA" and len(color) == 3:
        color = (*color, 255)
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, fmt)
    return buffer.getvalue()


class FakeStorage:
    def __init__(self, fail_times: int = 0):
        self.uploads: List[Dict[str, Any]] = []
        self.fail_times = fail_times

    async def upload(self, path, data, content_type, metadata=None):
        if self.fail_times:
            self.fail_times -= 1
            raise UploadError(path, "storage unavailable")
        self.uploads.append({"path": path, "data": data, "content_type": content_type, "metadata": metadata})
        return f"https://cdn.example.com/{path}"


class FakeStannp:
    """Scriptable stand-in for :class:`StannpClient`.

    ``script`` maps a lead id to the results returned (or raised) by its
    successive ``create_postcard`` attempts.
    """

    def __init__(self, script: Optional[Dict[str, List[Any]]] = None):
        self.script = script or {}
        self.requests: List[PostcardRequest] = []
        self.cancelled: List[str] = []
        self.statuses: Dict[str, Any] = {}

    def build_request(self, lead, front_url, *, tags=None, test=False, back_url=None):
        request = PostcardRequest(front=front_url, recipient=Recipient.from_lead(lead), tags=tags, test=test)
        request.lead_id = lead.id
        return request

    async def create_postcard(self, request):
        self.requests.append(request)
        queue = self.script.get(request.lead_id)
        if queue:
            result = queue.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ProviderSuccess(id=f"sp-{request.lead_id}", cost=0.5, status="received")

    async def get_postcard(self, mailpiece_id):
        result = self.statuses.get(mailpiece_id)
        if result is None:
            return ProviderFailure(status=404, error="not found")
        return result

    async def cancel_postcard(self, mailpiece_id):
        self.cancelled.append(mailpiece_id)
        return ProviderSuccess(id=mailpiece_id)

    async def list_postcards(self, tag, page=1, per_page=100):
        return ProviderPage(items=[ProviderSuccess(id="sp-1", raw={"id": "sp-1", "tags": tag})], total=1, page=page)


class FakeAssets:
    """Asset processor returning fixed URLs; ``failures`` maps design ids to exceptions to raise first."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def process_design(self, source_url, brand, campaign_id, design_id):
        self.calls.append((design_id, brand.id))
        pending = self.failures.get(design_id)
        if pending:
            raise pending.pop(0)
        return ProcessedImage(url=f"https://cdn/{campaign_id}/{design_id}.jpg", width=1871, height=1271, size=100)


CAMPAIGN = {
    "id": "c1",
    "ownerUid": "u1",
    "brandId": "b1",
    "status": "paid",
    "designAssignments": [
        {"designId": "d1", "businessTypes": ["bakery"]},
        {"designId": "d2", "businessTypes": ["cafe"]},
    ],
}

LEADS = [
    {"id": "L1", "name": "Ada Lovelace", "businessType": "bakery", "address1": "1 Main", "city": "T", "postalCode": "1"},
    {"id": "L2", "name": "Alan Turing", "businessType": "cafe", "address1": "2 Main", "city": "T", "postalCode": "2"},
    {"id": "L3", "name": "Grace Hopper", "businessType": "bakery", "address1": "3 Main", "city": "T", "postalCode": "3"},
]


async def seed_campaign(persistence, campaign=None, leads=LEADS):
    """Store a paid campaign ``c1`` with its brand, two designs and leads."""
    await persistence.put_campaign(dict(campaign or CAMPAIGN))
    await persistence.put_brand("u1", {"id": "b1", "name": "Acme"})
    await persistence.put_design("u1", {"id": "d1", "generation": {"finalImageUrl": "https://img/d1.png"}})
    await persistence.put_design("u1", {"id": "d2", "finalImageUrl": "https://img/d2.png"})
    await persistence.insert_leads("c1", leads)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
