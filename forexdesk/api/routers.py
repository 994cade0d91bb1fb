"""Internal API routers — /oanda, /signals, /signal-orders, /settings endpoints.

No SQL, no HTTP to OANDA here. Delegates to the credential resolver, the
OANDA client, the workspace aggregator and the reconciler.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from forexdesk.broker.credentials import get_oanda_client
from forexdesk.broker.errors import (
    ActiveLinkExistsError,
    BrokerError,
    InvalidRequestError,
    MissingCredentialsError,
    SignalNotFoundError,
    UpstreamBrokerError,
    UserNotFoundError,
)
from forexdesk.broker.oanda_client import OandaClient
from forexdesk.broker.payloads import (
    build_order_body,
    build_risk_payload,
    parse_order_ticket,
    parse_risk_update,
    require_id,
)
from forexdesk.broker.workspace import build_workspace
from forexdesk.config import Config

logger = logging.getLogger("forexdesk")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_user_repo = None   # Set via configure_routers()
_reconciler = None  # Set via configure_routers()
_config: Config = Config()
_session_lookup: Optional[Callable[[Request], Optional[str]]] = None

_MASK = "••••••••••"


def configure_routers(
    user_repo,
    reconciler,
    config: Optional[Config] = None,
    session_lookup: Optional[Callable[[Request], Optional[str]]] = None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        user_repo: A ``UserRepo`` instance (or duck-type for tests).
        reconciler: A ``SignalOrderReconciler`` instance.
        config: Application ``Config``; defaults are used when omitted.
        session_lookup: Callable returning the caller's user id for a
            request, or ``None`` when unauthenticated.  Without one, the
            ``X-User-Id`` header is trusted only when
            ``config.trust_user_header`` is set; otherwise every request
            is unauthenticated.
    """
    global _user_repo, _reconciler, _config, _session_lookup  # noqa: PLW0603
    _user_repo = user_repo
    _reconciler = reconciler
    _config = config or Config()
    _session_lookup = session_lookup


# ── Helpers ──────────────────────────────────────────────────────────────


def _caller_id(request: Request) -> Optional[str]:
    if _session_lookup is not None:
        return _session_lookup(request)
    if not _config.trust_user_header:
        return None
    user_id = request.headers.get("X-User-Id", "").strip()
    return user_id or None


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def _client_for(user_id: str) -> OandaClient:
    if _user_repo is None:
        raise RuntimeError("Routers not configured: call configure_routers() first")
    return get_oanda_client(_user_repo, user_id, _config)


def _error_response(exc: BrokerError, failure_message: str) -> JSONResponse:
    """Map a broker-layer error onto an HTTP response."""
    if isinstance(exc, InvalidRequestError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, MissingCredentialsError):
        return JSONResponse(
            {"error": "Missing API Keys", "code": "missing_credentials",
             "environment": exc.environment},
            status_code=403,
        )
    if isinstance(exc, (UserNotFoundError, SignalNotFoundError)):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, ActiveLinkExistsError):
        return JSONResponse({"error": str(exc)}, status_code=409)
    if isinstance(exc, UpstreamBrokerError):
        return JSONResponse(
            {"error": failure_message, "details": exc.payload},
            status_code=exc.status_code or 500,
        )
    logger.error("%s: %s", failure_message, exc)
    return JSONResponse({"error": failure_message}, status_code=500)


def _mask_token(token: Optional[str]) -> str:
    if not token:
        return ""
    return f"{token[:4]}{_MASK}{token[-4:]}"


# ── Broker reads ─────────────────────────────────────────────────────────


@router.get("/oanda/workspace")
async def get_workspace(request: Request):
    """Account, open trades, pending orders, positions and recent activity."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        snapshot = await build_workspace(_client_for(user_id))
    except BrokerError as exc:
        return _error_response(exc, "Failed to fetch workspace data")
    return snapshot.as_dict()


@router.get("/oanda/account")
async def get_account(request: Request):
    """Return the OANDA account summary for the caller."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        return await _client_for(user_id).get_account_summary()
    except BrokerError as exc:
        return _error_response(exc, "Failed to fetch account data")


@router.get("/oanda/candles")
async def get_candles(
    request: Request,
    instrument: Optional[str] = Query(default=None),
    granularity: Optional[str] = Query(default=None),
    count: Optional[str] = Query(default=None),
):
    """Candles passthrough; OANDA validates the parameters."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        client = _client_for(user_id)
        return await client.get_candles(
            instrument or _config.default_instrument,
            granularity or _config.default_granularity,
            count or _config.default_candle_count,
        )
    except BrokerError as exc:
        return _error_response(exc, "Failed to fetch candle data")


@router.get("/oanda/pricing")
async def get_pricing(
    request: Request,
    instruments: Optional[str] = Query(default=None),
):
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        client = _client_for(user_id)
        return await client.get_pricing(instruments or _config.default_instrument)
    except BrokerError as exc:
        return _error_response(exc, "Failed to fetch pricing data")


@router.get("/oanda/orders")
async def get_open_trades(request: Request):
    """Return open (filled, not yet closed) trades."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        return await _client_for(user_id).list_open_trades()
    except BrokerError as exc:
        return _error_response(exc, "Failed to fetch orders")


# ── Broker mutations ─────────────────────────────────────────────────────


@router.post("/oanda/orders/place")
async def place_order(request: Request, body: dict):
    """Place an order; when ``signalId`` is given, link it to that signal."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        ticket = parse_order_ticket(body)
        if ticket.signal_id:
            _reconciler.ensure_can_submit(user_id, ticket.signal_id)
        client = _client_for(user_id)
        result = await client.place_order(build_order_body(ticket))
    except BrokerError as exc:
        return _error_response(exc, "Failed to place order")

    link = None
    if ticket.signal_id:
        link = _reconciler.record_submission(user_id, ticket, result)
    return {"success": True, "result": result, "link": link}


@router.post("/oanda/orders/cancel")
async def cancel_order(request: Request, body: dict):
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        order_id = require_id(body.get("orderId"), "orderId")
        result = await _client_for(user_id).cancel_order(order_id)
    except BrokerError as exc:
        return _error_response(exc, "Failed to cancel order")
    return {"success": True, "result": result}


@router.post("/oanda/positions/close")
async def close_position(request: Request, body: dict):
    """Close both sides of the instrument's position."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        instrument = require_id(body.get("instrument"), "instrument")
        result = await _client_for(user_id).close_position(instrument)
    except BrokerError as exc:
        return _error_response(exc, "Failed to close position")
    return {"success": True, "result": result}


@router.post("/oanda/trades/close")
async def close_trade(request: Request, body: dict):
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        trade_id = require_id(body.get("tradeId"), "tradeId")
        result = await _client_for(user_id).close_trade(trade_id)
    except BrokerError as exc:
        return _error_response(exc, "Failed to close trade")
    return {"success": True, "result": result}


@router.post("/oanda/trades/risk")
async def update_trade_risk(request: Request, body: dict):
    """Set or cancel a trade's stop-loss, take-profit and trailing stop.

    A field that is omitted is sent to OANDA as ``null`` exactly like an
    explicit ``null``, i.e. it cancels that protective order.
    """
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        update = parse_risk_update(body)
        client = _client_for(user_id)
        result = await client.update_trade_orders(
            update.trade_id, build_risk_payload(update),
        )
    except BrokerError as exc:
        return _error_response(exc, "Failed to update trade risk orders")
    return {"success": True, "result": result}


# ── Signals ──────────────────────────────────────────────────────────────


@router.get("/signals")
async def get_signals(request: Request, id: Optional[str] = Query(default=None)):
    """All of the caller's signals (newest first), or one by ``id``."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    if id:
        try:
            return {"signal": _reconciler.get_signal(user_id, id)}
        except BrokerError as exc:
            return _error_response(exc, "Failed to fetch signal")
    return {"signals": _reconciler.list_signals(user_id)}


@router.post("/signals")
async def create_signal(request: Request, body: dict):
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        signal = _reconciler.create_signal(user_id, body)
    except BrokerError as exc:
        return _error_response(exc, "Failed to create signal")
    return JSONResponse({"signal": signal}, status_code=201)


@router.patch("/signals")
async def update_signal_status(request: Request, body: dict):
    """Body: ``{"id": ..., "status": "closed" | "cancelled"}``."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        signal_id = require_id(body.get("id"), "id")
        updated = _reconciler.set_signal_status(user_id, signal_id, body.get("status"))
    except BrokerError as exc:
        return _error_response(exc, "Failed to update signal")
    return {"updated": updated}


@router.get("/signal-orders")
async def get_signal_orders(
    request: Request,
    signalId: Optional[str] = Query(default=None),  # noqa: N803
):
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    return {"links": _reconciler.links_for(user_id, signalId)}


@router.post("/signal-orders/status")
async def update_signal_order_status(request: Request, body: dict):
    """Body: ``{"linkId", "status", "oandaOrderId"?, "oandaTradeId"?}``.

    Updating another user's link affects zero rows and is not an error.
    """
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    try:
        link_id = str(body.get("linkId") or "").strip()
        status = str(body.get("status") or "").strip()
        if not link_id or not status:
            raise InvalidRequestError("linkId and status are required")
        updated = _reconciler.advance_link(
            user_id,
            link_id,
            status,
            oanda_order_id=body.get("oandaOrderId"),
            oanda_trade_id=body.get("oandaTradeId"),
        )
    except BrokerError as exc:
        return _error_response(exc, "Failed to update link status")
    return {"updated": updated}


# ── Credential settings ──────────────────────────────────────────────────


@router.get("/settings/api-keys")
async def get_api_keys(request: Request):
    """Return the caller's broker settings with tokens masked."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()
    settings = _user_repo.get_broker_settings(user_id)
    if settings is None:
        return _error_response(UserNotFoundError(user_id), "Failed to fetch settings")
    return {
        "settings": {
            "oandaEnvironment": settings.environment.value,
            "oandaPracticeAccountId": settings.practice.account_id or "",
            "oandaPracticeToken": _mask_token(settings.practice.api_token),
            "oandaLiveAccountId": settings.live.account_id or "",
            "oandaLiveToken": _mask_token(settings.live.api_token),
        },
        "hasPracticeKeys": settings.practice.complete,
        "hasLiveKeys": settings.live.complete,
    }


@router.post("/settings/api-keys")
async def post_api_keys(request: Request, body: dict):
    """Update broker settings; masked token echoes are ignored."""
    user_id = _caller_id(request)
    if user_id is None:
        return _unauthorized()

    fields: dict = {}
    if body.get("oandaEnvironment"):
        fields["oandaEnvironment"] = body["oandaEnvironment"]
    for key in ("oandaPracticeAccountId", "oandaLiveAccountId"):
        if key in body:
            fields[key] = body[key]
    for key in ("oandaPracticeToken", "oandaLiveToken"):
        token = str(body.get(key) or "")
        if token and "••••" not in token:
            fields[key] = token

    updated = _user_repo.update_broker_settings(user_id, fields)
    if fields and not updated:
        return _error_response(UserNotFoundError(user_id), "Failed to update settings")
    logger.info("Broker settings updated for %s: %s", user_id, sorted(fields))
    return {"success": True, "updated": updated}
