import asyncio

import pytest

from postcard_fulfillment.errors import ProviderConfigurationError
from postcard_fulfillment.models import Lead
from postcard_fulfillment.stannp import (
    PostcardRequest,
    ProviderFailure,
    ProviderPage,
    ProviderSuccess,
    Recipient,
    StannpClient,
    encode_postcard_form,
)


class DummyResponse:
    def __init__(self, status, body):
        self.status = status
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type="application/json"):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class DummySession:
    def __init__(self, status=200, body=None, error=None):
        self.status = status
        self.body = body
        self.error = error
        self.calls = []
        self.kwargs = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def request(self, method, url, params=None, data=None):
        self.calls.append({"method": method, "url": url, "params": params, "data": data})
        if self.error is not None:
            raise self.error
        return DummyResponse(self.status, self.body)


def _patch(monkeypatch, session):
    def factory(**kwargs):
        session.kwargs = kwargs
        return session

    monkeypatch.setattr("postcard_fulfillment.stannp.aiohttp.ClientSession", factory)
    return session


def _lead(**overrides):
    values = dict(id="L1", first_name="Ada", last_name="Lovelace", address1="1 Main St", city="Toronto", postal_code="M5V")
    values.update(overrides)
    return Lead(**values)


def test_recipient_defaults():
    recipient = Recipient.from_lead(Lead(id="L1", address1="1 St", city="X", postal_code="0"))
    assert (recipient.firstname, recipient.lastname, recipient.country) == ("Valued", "Customer", "CA")
    assert Recipient.from_lead(_lead(country="US")).country == "US"


def test_encode_postcard_form():
    client = StannpClient("key", default_country="GB", postcard_size="4x6")
    request = client.build_request(_lead(company="Engines"), "https://cdn/front.jpg", tags="c1", test=True)
    form = encode_postcard_form(request)
    assert form[:3] == [("test", "1"), ("size", "4x6"), ("front", "https://cdn/front.jpg")]
    assert ("recipient[company]", "Engines") in form
    assert ("recipient[country]", "GB") in form
    assert ("recipient[address2]", "") not in form
    assert form[-1] == ("tags", "c1")


def test_encode_message_only_without_back():
    request = PostcardRequest(
        front="f", recipient=Recipient.from_lead(_lead()), back="b", message="hello", addons="first_class"
    )
    form = dict(encode_postcard_form(request))
    assert form["back"] == "b"
    assert "message" not in form
    assert form["addons"] == "first_class"


def test_region_selects_base_url():
    assert StannpClient("k", region="eu").base_url == "https://api-eu1.stannp.com/v1"
    assert StannpClient("k").base_url == "https://api-us1.stannp.com/v1"
    assert StannpClient("k", base_url="http://localhost:9/v1/").base_url == "http://localhost:9/v1"
    assert StannpClient(None).configured is False


@pytest.mark.asyncio
async def test_create_postcard_success(monkeypatch):
    body = {
        "success": True,
        "data": {"id": "12345", "created": "2024-01-01 10:00:00", "format": "4x6", "cost": "0.62", "status": "received", "pdf": "https://p"},
    }
    session = _patch(monkeypatch, DummySession(body=body))
    client = StannpClient("secret")

    result = await client.create_postcard(client.build_request(_lead(), "https://cdn/front.jpg", tags="c1"))
    assert isinstance(result, ProviderSuccess)
    assert result.ok is True
    assert (result.id, result.cost, result.status, result.pdf) == ("12345", 0.62, "received", "https://p")
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api-us1.stannp.com/v1/postcards/create"
    assert ("recipient[firstname]", "Ada") in call["data"]
    assert session.kwargs["auth"].login == "secret"
    assert session.kwargs["auth"].password == ""


@pytest.mark.asyncio
async def test_create_postcard_http_error(monkeypatch):
    _patch(monkeypatch, DummySession(status=400, body={"success": False, "error": "Invalid postcode"}))
    result = await StannpClient("k").create_postcard(StannpClient("k").build_request(_lead(), "f"))
    assert isinstance(result, ProviderFailure)
    assert result.ok is False
    assert (result.status, result.error) == (400, "Invalid postcode")


@pytest.mark.asyncio
async def test_create_postcard_error_without_body(monkeypatch):
    _patch(monkeypatch, DummySession(status=502, body=ValueError("not json")))
    client = StannpClient("k")
    result = await client.create_postcard(client.build_request(_lead(), "f"))
    assert result.error == "Stannp API error: 502"


@pytest.mark.asyncio
async def test_rejected_and_incomplete_answers(monkeypatch):
    client = StannpClient("k")
    _patch(monkeypatch, DummySession(body={"success": False, "error": "Insufficient balance"}))
    result = await client.create_postcard(client.build_request(_lead(), "f"))
    assert result.error == "Insufficient balance"

    _patch(monkeypatch, DummySession(body={"success": True, "data": {}}))
    result = await client.create_postcard(client.build_request(_lead(), "f"))
    assert result.error == "Stannp response carries no mailpiece id"


@pytest.mark.asyncio
async def test_transport_errors_become_failures(monkeypatch):
    client = StannpClient("k")
    _patch(monkeypatch, DummySession(error=asyncio.TimeoutError()))
    result = await client.get_postcard("1")
    assert isinstance(result, ProviderFailure)
    assert result.status is None
    assert result.error == "TimeoutError"


@pytest.mark.asyncio
async def test_missing_api_key_raises(monkeypatch):
    session = _patch(monkeypatch, DummySession())
    client = StannpClient("")
    with pytest.raises(ProviderConfigurationError):
        await client.create_postcard(client.build_request(_lead(), "f"))
    assert session.calls == []


@pytest.mark.asyncio
async def test_get_list_and_cancel(monkeypatch):
    client = StannpClient("k")
    session = _patch(monkeypatch, DummySession(body={"success": True, "data": {"status": "producing"}}))
    result = await client.get_postcard("77")
    assert (result.id, result.status) == ("77", "producing")
    assert session.calls[0]["url"].endswith("/postcards/get/77")

    session = _patch(
        monkeypatch,
        DummySession(body={"success": True, "data": [{"id": "1"}, {"id": "2"}], "total": 5}),
    )
    page = await client.list_postcards("c1", page=2, per_page=2)
    assert isinstance(page, ProviderPage)
    assert [item.id for item in page.items] == ["1", "2"]
    assert (page.total, page.page, page.per_page) == (5, 2, 2)
    assert session.calls[0]["params"] == {"tags": "c1", "page": "2", "per_page": "2"}

    session = _patch(monkeypatch, DummySession(body={"success": True}))
    result = await client.cancel_postcard("77")
    assert result.id == "77"
    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["data"] == [("id", "77")]
