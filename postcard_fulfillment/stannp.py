"""Stateless client for the Stannp print and mail API.

Every call resolves to a :class:`ProviderSuccess` (or :class:`ProviderPage`
for listings) or to a :class:`ProviderFailure`. Transport errors, timeouts
and non-2xx answers never escape as exceptions; only a missing API key does,
since no request can succeed without it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp

from .errors import ProviderConfigurationError
from .logger import get_logger
from .models import Lead

REGION_BASE_URLS = {
    "US": "https://api-us1.stannp.com/v1",
    "EU": "https://api-eu1.stannp.com/v1",
}
DEFAULT_COUNTRY = "CA"
DEFAULT_SIZE = "A6"


@dataclass
class Recipient:
    """Addressee in the shape expected by ``recipient[...]`` form fields."""

    firstname: str
    lastname: str
    address1: str
    city: str
    postcode: str
    country: str
    company: Optional[str] = None
    address2: Optional[str] = None
    address3: Optional[str] = None

    @classmethod
    def from_lead(cls, lead: Lead, default_country: str = DEFAULT_COUNTRY) -> "Recipient":
        return cls(
            firstname=lead.first_name or "Valued",
            lastname=lead.last_name or "Customer",
            company=lead.company,
            address1=lead.address1,
            address2=lead.address2,
            address3=lead.address3,
            city=lead.city,
            postcode=lead.postal_code,
            country=lead.country or default_country,
        )

    def form_fields(self) -> List[Tuple[str, str]]:
        fields = (
            "firstname",
            "lastname",
            "company",
            "address1",
            "address2",
            "address3",
            "city",
            "postcode",
            "country",
        )
        return [(f"recipient[{name}]", str(getattr(self, name))) for name in fields if getattr(self, name)]


@dataclass
class PostcardRequest:
    front: str
    recipient: Recipient
    size: str = DEFAULT_SIZE
    test: bool = False
    back: Optional[str] = None
    message: Optional[str] = None
    tags: Optional[str] = None
    addons: Optional[str] = None


def encode_postcard_form(request: PostcardRequest) -> List[Tuple[str, str]]:
    """Flatten a postcard request into url-encoded form pairs."""
    form = [
        ("test", "1" if request.test else "0"),
        ("size", request.size),
        ("front", request.front),
    ]
    if request.back:
        form.append(("back", request.back))
    elif request.message:
        form.append(("message", request.message))
    form.extend(request.recipient.form_fields())
    if request.tags:
        form.append(("tags", request.tags))
    if request.addons:
        form.append(("addons", request.addons))
    return form


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class ProviderSuccess:
    id: str
    created: Optional[str] = None
    format: Optional[str] = None
    cost: float = 0.0
    status: Optional[str] = None
    pdf: Optional[str] = None
    tracking_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    ok = True

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ProviderSuccess":
        return cls(
            id=str(data.get("id", "")),
            created=data.get("created"),
            format=data.get("format"),
            cost=_to_float(data.get("cost")),
            status=data.get("status"),
            pdf=data.get("pdf"),
            tracking_url=data.get("tracking_url"),
            raw=data,
        )


@dataclass
class ProviderPage:
    items: List[ProviderSuccess]
    total: int = 0
    page: int = 1
    per_page: int = 100
    ok = True


@dataclass
class ProviderFailure:
    status: Optional[int]
    error: str
    ok = False


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class StannpClient:
    """Thin adapter over the Stannp postcard endpoints."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        region: str = "US",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        default_country: str = DEFAULT_COUNTRY,
        postcard_size: str = DEFAULT_SIZE,
        logger=None,
    ):
        self.api_key = api_key
        region = (region or "US").upper()
        self.base_url = (base_url or REGION_BASE_URLS.get(region, REGION_BASE_URLS["US"])).rstrip("/")
        self.timeout = float(timeout)
        self.default_country = default_country or DEFAULT_COUNTRY
        self.postcard_size = postcard_size or DEFAULT_SIZE
        self.logger = logger or get_logger()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_request(
        self,
        lead: Lead,
        front_url: str,
        *,
        tags: Optional[str] = None,
        test: bool = False,
        back_url: Optional[str] = None,
    ) -> PostcardRequest:
        return PostcardRequest(
            front=front_url,
            back=back_url,
            recipient=Recipient.from_lead(lead, self.default_country),
            size=self.postcard_size,
            test=test,
            tags=tags,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[List[Tuple[str, str]]] = None,
    ) -> Tuple[Optional[int], Any]:
        if not self.api_key:
            raise ProviderConfigurationError()
        url = f"{self.base_url}/{path.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        auth = aiohttp.BasicAuth(self.api_key, "")
        async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
            async with session.request(method, url, params=params, data=data) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                return resp.status, body

    async def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Union[Tuple[int, Any], ProviderFailure]:
        try:
            status, body = await self._request(method, path, **kwargs)
        except ProviderConfigurationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            self.logger.warning("Stannp %s transport error: %s", operation, exc)
            return ProviderFailure(status=None, error=str(exc) or exc.__class__.__name__)
        if status is None or status < 200 or status >= 300:
            error = body.get("error") if isinstance(body, dict) else None
            error = error or f"Stannp API error: {status}"
            self.logger.warning("Stannp %s failed: %s", operation, error)
            return ProviderFailure(status=status, error=str(error))
        if isinstance(body, dict) and body.get("success") is False:
            return ProviderFailure(status=status, error=str(body.get("error") or "Stannp request rejected"))
        return status, body

    async def create_postcard(self, request: PostcardRequest) -> ProviderResult:
        """Submit one postcard."""
        outcome = await self._call("create", "POST", "postcards/create", data=encode_postcard_form(request))
        if isinstance(outcome, ProviderFailure):
            return outcome
        status, body = outcome
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data.get("id"):
            return ProviderFailure(status=status, error="Stannp response carries no mailpiece id")
        return ProviderSuccess.from_data(data)

    async def get_postcard(self, mailpiece_id: str) -> ProviderResult:
        """Fetch the current state of one postcard."""
        outcome = await self._call("get", "GET", f"postcards/get/{mailpiece_id}")
        if isinstance(outcome, ProviderFailure):
            return outcome
        status, body = outcome
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return ProviderFailure(status=status, error="Stannp response carries no data")
        data.setdefault("id", mailpiece_id)
        return ProviderSuccess.from_data(data)

    async def list_postcards(self, tag: str, page: int = 1, per_page: int = 100) -> Union[ProviderPage, ProviderFailure]:
        """List postcards carrying ``tag`` (the campaign id)."""
        params = {"tags": tag, "page": str(page), "per_page": str(per_page)}
        outcome = await self._call("list", "GET", "postcards/list", params=params)
        if isinstance(outcome, ProviderFailure):
            return outcome
        _, body = outcome
        body = body if isinstance(body, dict) else {}
        items = body.get("data") if isinstance(body.get("data"), list) else []
        return ProviderPage(
            items=[ProviderSuccess.from_data(item) for item in items if isinstance(item, dict)],
            total=int(body.get("total") or len(items)),
            page=int(body.get("page") or page),
            per_page=int(body.get("per_page") or per_page),
        )

    async def cancel_postcard(self, mailpiece_id: str) -> ProviderResult:
        """Cancel a postcard that has not been printed yet."""
        outcome = await self._call("cancel", "POST", "postcards/cancel", data=[("id", mailpiece_id)])
        if isinstance(outcome, ProviderFailure):
            return outcome
        _, body = outcome
        return ProviderSuccess(id=mailpiece_id, raw=body if isinstance(body, dict) else {})
