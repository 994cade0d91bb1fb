"""OANDA v20 REST API async client.

One instance per inbound request, bound to a single user's credential set.
Every call returns the broker's decoded JSON untouched; failures surface as
``UpstreamBrokerError`` with the broker's own error body attached.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from forexdesk.broker.errors import MissingCredentialsError, UpstreamBrokerError
from forexdesk.broker.models import CredentialSet

logger = logging.getLogger("forexdesk.broker")

DEFAULT_TIMEOUT_SECONDS = 15.0


def _error_payload(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text or None


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class OandaClient:
    """Async client wrapping OANDA v20 REST API for one account."""

    def __init__(
        self,
        credentials: CredentialSet,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        account_id = (credentials.account_id or "").strip()
        token = (credentials.api_token or "").strip()
        if not account_id or not token:
            raise MissingCredentialsError(credentials.environment.value)

        self._environment = credentials.environment
        self._base_url = credentials.environment.base_url
        self._account_id = account_id
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept-Datetime-Format": "RFC3339",
        }

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_live(self) -> bool:
        return self._environment.value == "live"

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Issue one request and decode the JSON body.

        No retries: a non-2xx answer, transport error or timeout is raised
        to the caller as ``UpstreamBrokerError``.
        """
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient() as client:
                resp = await getattr(client, method)(
                    url,
                    headers=self._headers,
                    timeout=self._timeout,
                    **kwargs,
                )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            payload = _error_payload(exc.response)
            logger.error(
                "OANDA %s %s returned %d: %s", method.upper(), path, status, payload,
            )
            raise UpstreamBrokerError(
                f"OANDA {method.upper()} {path} failed with status {status}",
                status_code=status,
                payload=payload,
            ) from exc
        except httpx.TransportError as exc:
            logger.error("OANDA %s %s transport error: %s", method.upper(), path, exc)
            raise UpstreamBrokerError(
                f"OANDA {method.upper()} {path} transport error: {exc}",
                payload=str(exc) or type(exc).__name__,
            ) from exc

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamBrokerError(
                f"OANDA {method.upper()} {path} returned a non-JSON body",
                status_code=resp.status_code,
                payload=resp.text,
            ) from exc

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        return await self._request("get", path, params=params)

    async def _put(self, path: str, body: dict) -> dict:
        return await self._request("put", path, json=body)

    async def _post(self, path: str, body: dict) -> dict:
        return await self._request("post", path, json=body)

    @property
    def _account_path(self) -> str:
        return f"/v3/accounts/{_segment(self._account_id)}"

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_account_summary(self) -> dict:
        """Account summary: balance, NAV, margin, ``lastTransactionID``."""
        return await self._get(f"{self._account_path}/summary")

    async def get_candles(
        self,
        instrument: str,
        granularity: str,
        count: int | str,
    ) -> dict:
        """Fetch mid/bid/ask candles.

        Args:
            instrument: e.g. ``"EUR_USD"``
            granularity: e.g. ``"M15"``, ``"H1"``
            count: number of candles; OANDA validates the range.
        """
        params = {
            "granularity": granularity,
            "count": str(count),
            "price": "MBA",
        }
        return await self._get(
            f"/v3/instruments/{_segment(instrument)}/candles", params=params,
        )

    async def get_pricing(self, instruments: str) -> dict:
        """Current prices for a comma-separated instrument list."""
        return await self._get(
            f"{self._account_path}/pricing", params={"instruments": instruments},
        )

    async def list_open_trades(self) -> dict:
        return await self._get(f"{self._account_path}/openTrades")

    async def list_pending_orders(self) -> dict:
        return await self._get(f"{self._account_path}/pendingOrders")

    async def list_open_positions(self) -> dict:
        return await self._get(f"{self._account_path}/openPositions")

    async def get_transactions_range(self, from_id: int, to_id: int) -> dict:
        """Transactions with ids in ``[from_id, to_id]``, oldest first."""
        return await self._get(
            f"{self._account_path}/transactions/idrange",
            params={"from": str(from_id), "to": str(to_id)},
        )

    # ── Mutations ────────────────────────────────────────────────────────

    async def place_order(self, order_body: dict) -> dict:
        """Submit an order; *order_body* is the inner ``order`` object."""
        return await self._post(f"{self._account_path}/orders", {"order": order_body})

    async def cancel_order(self, order_id: str) -> dict:
        return await self._put(
            f"{self._account_path}/orders/{_segment(order_id)}/cancel", {},
        )

    async def close_position(self, instrument: str) -> dict:
        """Close all units of both sides of a position.

        OANDA treats a side with no open units as a no-op, so one-sided
        positions close cleanly too.
        """
        body = {"longUnits": "ALL", "shortUnits": "ALL"}
        return await self._put(
            f"{self._account_path}/positions/{_segment(instrument)}/close", body,
        )

    async def close_trade(self, trade_id: str) -> dict:
        return await self._put(
            f"{self._account_path}/trades/{_segment(trade_id)}/close", {},
        )

    async def update_trade_orders(self, trade_id: str, payload: dict) -> dict:
        """Create, replace or cancel a trade's dependent SL/TP/trailing orders."""
        return await self._put(
            f"{self._account_path}/trades/{_segment(trade_id)}/orders", payload,
        )
