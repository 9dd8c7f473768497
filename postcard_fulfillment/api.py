"""
FastAPI application factory and HTTP schemas for the fulfillment service.

The module exposes a `create_app` function that builds the REST API used to
trigger campaign processing, inspect mailpieces and receive Stannp webhooks.
Operator endpoints are protected by a configurable API token carried in the
``X-API-Token`` header; the webhook and the scheduled trigger have their own
secrets so they can be called by third parties.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Header, Query, status
from fastapi.responses import PlainTextResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import FulfillmentCore

app = FastAPI(title="Postcard Fulfillment Service")
service: FulfillmentCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None
app.state.webhook_token = None
app.state.cron_secret = None

NOT_FOUND_CODES = {"not_found", "campaign_not_found"}
CONFLICT_CODES = {"campaign_not_processable"}


def _check_token(api_token: str | None) -> None:
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    _check_token(api_token)


async def require_cron_secret(
    authorization: str | None = Header(default=None),
    api_token: str | None = Depends(api_key_scheme),
) -> None:
    """Accept ``Authorization: Bearer <cron_secret>`` or a valid API token."""
    secret = getattr(app.state, "cron_secret", None)
    if secret and authorization == f"Bearer {secret}":
        return
    if secret and getattr(app.state, "api_token", None) is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing cron secret")
    _check_token(api_token)


async def require_webhook_token(webhook_token: str | None = Query(default=None)) -> None:
    """Validate the ``webhook_token`` query parameter when one is configured."""
    expected = getattr(app.state, "webhook_token", None)
    if expected is None:
        return
    if webhook_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid webhook token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None
    code: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class CampaignPayload(BaseModel):
    """Identifies the campaign a command applies to."""
    campaign_id: str
    is_test: bool = False


class MailpieceStatsPayload(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    total_cost: float = 0.0
    avg_delivery_time: Optional[float] = None


class ProcessingResultPayload(BaseModel):
    """Outcome of one fulfillment run."""
    success: bool
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    stats: Optional[MailpieceStatsPayload] = None


class ProcessingResponse(CommandStatus):
    result: ProcessingResultPayload


class ReadinessResponse(CommandStatus):
    ready: bool
    issues: List[str] = Field(default_factory=list)


class ProcessReadyResponse(CommandStatus):
    """Campaign ids grouped by what the scheduled run did with them."""
    processed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class StatsResponse(CommandStatus):
    stats: MailpieceStatsPayload


class MailpieceRecord(BaseModel):
    """Tracking document of one (campaign, lead) mailpiece."""
    campaign_id: str
    lead_id: str
    design_id: str
    provider_id: Optional[str] = None
    status: str
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    cost: float = 0.0
    submitted_at: Optional[str] = None
    printed_at: Optional[str] = None
    dispatched_at: Optional[str] = None
    delivered_at: Optional[str] = None
    returned_at: Optional[str] = None
    tracking_url: Optional[str] = None
    error: Optional[str] = None


class MailpiecesResponse(CommandStatus):
    mailpieces: List[MailpieceRecord]


class MailpieceResponse(CommandStatus):
    mailpiece: MailpieceRecord


class ProviderMailpiecesResponse(CommandStatus):
    total: int = 0
    page: int = 1
    mailpieces: List[Dict[str, Any]] = Field(default_factory=list)


class StatusUpdatePayload(BaseModel):
    """Manual status transition of a mailpiece."""
    status: str
    details: Optional[Dict[str, Any]] = None


class WebhookEvent(BaseModel):
    """Event delivered by Stannp."""
    id: Optional[str] = None
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookResponse(CommandStatus):
    handled: bool = False
    status: Optional[str] = None
    message: Optional[str] = None


def _require_service() -> FulfillmentCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _raise_for(result: Dict[str, Any]) -> None:
    """Translate a failed command result into an HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return
    code = result.get("code") if isinstance(result, dict) else None
    detail = {"error": result.get("error") if isinstance(result, dict) else None, "code": code}
    if code in NOT_FOUND_CODES:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail)
    if code in CONFLICT_CODES:
        raise HTTPException(status.HTTP_409_CONFLICT, detail)
    raise HTTPException(status.HTTP_400_BAD_REQUEST, detail)


def create_app(
    svc: FulfillmentCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    webhook_token: str | None = None,
    cron_secret: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`postcard_fulfillment.core.FulfillmentCore` that
        implements the business logic for each command.
    api_token:
        Optional secret required in the ``X-API-Token`` header of operator
        endpoints.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    webhook_token:
        Optional secret expected as ``?webhook_token=`` on Stannp callbacks.
    cron_secret:
        Optional ``Bearer`` secret accepted by ``/commands/process-ready``.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Postcard Fulfillment Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    api.state.webhook_token = webhook_token
    api.state.cron_secret = cron_secret
    app.state.api_token = api_token
    app.state.webhook_token = webhook_token
    app.state.cron_secret = cron_secret
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the ready-campaigns loop."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        result = await _require_service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        result = await _require_service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/process-campaign", response_model=ProcessingResponse, response_model_exclude_none=True)
    async def process_campaign(payload: CampaignPayload):
        """Fulfil one paid campaign (any status when ``is_test`` is set)."""
        result = await _require_service().handle_command("processCampaign", payload.model_dump())
        _raise_for(result)
        return ProcessingResponse.model_validate(result)

    @router.post("/retry-campaign", response_model=ProcessingResponse, response_model_exclude_none=True)
    async def retry_campaign(payload: CampaignPayload):
        """Re-run a failed, stuck or partially sent campaign."""
        result = await _require_service().handle_command("retryCampaign", {"campaign_id": payload.campaign_id})
        _raise_for(result)
        return ProcessingResponse.model_validate(result)

    @api.post(
        "/commands/process-ready",
        response_model=ProcessReadyResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_cron_secret)],
    )
    async def process_ready():
        """Fulfil every paid campaign whose send date has come."""
        result = await _require_service().handle_command("processReady", {})
        _raise_for(result)
        return ProcessReadyResponse.model_validate(result)

    @api.get("/campaigns/{campaign_id}/readiness", response_model=ReadinessResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def readiness(campaign_id: str):
        result = await _require_service().handle_command("checkReadiness", {"campaign_id": campaign_id})
        _raise_for(result)
        return ReadinessResponse.model_validate(result)

    @api.get("/campaigns/{campaign_id}/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def campaign_stats(campaign_id: str):
        """Aggregate mailpiece statistics of a campaign."""
        result = await _require_service().handle_command("campaignStats", {"campaign_id": campaign_id})
        _raise_for(result)
        return StatsResponse.model_validate(result)

    @api.get("/campaigns/{campaign_id}/mailpieces", response_model=MailpiecesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def campaign_mailpieces(campaign_id: str, status_filter: Optional[str] = Query(default=None, alias="status")):
        data: Dict[str, Any] = {"campaign_id": campaign_id}
        if status_filter:
            data["status"] = status_filter
        result = await _require_service().handle_command("listMailpieces", data)
        _raise_for(result)
        return MailpiecesResponse.model_validate(result)

    @api.get("/campaigns/{campaign_id}/provider-mailpieces", response_model=ProviderMailpiecesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def provider_mailpieces(campaign_id: str, page: int = 1):
        """List what Stannp holds for the campaign tag."""
        result = await _require_service().handle_command(
            "listProviderMailpieces", {"campaign_id": campaign_id, "page": page}
        )
        _raise_for(result)
        return ProviderMailpiecesResponse.model_validate(result)

    @api.post("/mailpieces/{provider_id}/status", response_model=MailpieceResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def update_mailpiece(provider_id: str, payload: StatusUpdatePayload):
        result = await _require_service().handle_command(
            "updateMailpieceStatus",
            {"provider_id": provider_id, "status": payload.status, "details": payload.details},
        )
        _raise_for(result)
        return MailpieceResponse.model_validate(result)

    @api.post("/mailpieces/{provider_id}/sync", response_model=MailpieceResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def sync_mailpiece(provider_id: str):
        """Reconcile one mailpiece with the provider."""
        result = await _require_service().handle_command("syncMailpiece", {"provider_id": provider_id})
        _raise_for(result)
        return MailpieceResponse.model_validate(result)

    @api.post("/mailpieces/{provider_id}/cancel", response_model=MailpieceResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_mailpiece(provider_id: str):
        result = await _require_service().handle_command("cancelMailpiece", {"provider_id": provider_id})
        _raise_for(result)
        return MailpieceResponse.model_validate(result)

    @api.post(
        "/webhooks/stannp",
        response_model=WebhookResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_webhook_token)],
    )
    async def stannp_webhook(event: WebhookEvent):
        """Apply a Stannp delivery event to the matching mailpiece."""
        result = await _require_service().handle_command("webhook", event.model_dump())
        _raise_for(result)
        return WebhookResponse.model_validate(result)

    @api.get("/webhooks/stannp", dependencies=[Depends(require_webhook_token)])
    async def stannp_webhook_verify(challenge: Optional[str] = None):
        """Echo the verification challenge, or report that the endpoint is live."""
        if challenge:
            return PlainTextResponse(challenge)
        return {"status": "ok", "webhook": "stannp", "message": "Webhook endpoint is active"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
