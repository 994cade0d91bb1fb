"""Input validation and OANDA request bodies for order/trade mutations.

Everything here runs before a client is built, so invalid input never
reaches the broker.
"""

import math
from decimal import Decimal
from typing import Any, Optional

from forexdesk.broker.errors import InvalidRequestError
from forexdesk.broker.models import OrderTicket, RiskUpdate

ORDER_SIDES = ("BUY", "SELL")
ORDER_TYPES = ("MARKET", "LIMIT", "STOP")


def format_price(value: float) -> str:
    """Shortest plain decimal string that round-trips *value*.

    ``2.0`` → ``"2"``, ``0.00005`` → ``"0.00005"``; never exponent notation.
    """
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return format(Decimal(repr(value)), "f")


def require_id(value: Any, name: str) -> str:
    """Return *value* as a stripped, non-empty string."""
    text = "" if value is None else str(value).strip()
    if not text:
        raise InvalidRequestError(f"{name} is required")
    return text


def _to_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def parse_risk_value(raw: Any, name: str) -> Optional[float]:
    """``None`` stays ``None``; anything else must be a positive finite number."""
    if raw is None:
        return None
    value = _to_float(raw)
    if value is None or value <= 0:
        raise InvalidRequestError(
            f"{name} must be a positive number or null"
        )
    return value


def parse_risk_update(body: dict) -> RiskUpdate:
    """Validate a trade-risk request body.

    A missing key and an explicit ``null`` are indistinguishable here:
    both become ``None`` and therefore cancel that protective order.
    """
    return RiskUpdate(
        trade_id=require_id(body.get("tradeId"), "tradeId"),
        stop_loss=parse_risk_value(body.get("stopLoss"), "stopLoss"),
        take_profit=parse_risk_value(body.get("takeProfit"), "takeProfit"),
        trailing_stop_distance=parse_risk_value(
            body.get("trailingStopDistance"), "trailingStopDistance",
        ),
    )


def build_risk_payload(update: RiskUpdate) -> dict:
    """OANDA trade-orders body: an object sets/replaces, ``None`` cancels.

    All three keys are always present.
    """
    def _price(value):
        return None if value is None else {"price": format_price(value)}

    return {
        "stopLoss": _price(update.stop_loss),
        "takeProfit": _price(update.take_profit),
        "trailingStopLoss": (
            None
            if update.trailing_stop_distance is None
            else {"distance": format_price(update.trailing_stop_distance)}
        ),
    }


# ── Order placement ──────────────────────────────────────────────────────


def parse_optional_price(raw: Any, name: str) -> Optional[float]:
    """Empty, zero or missing means "not set"; anything else must be positive."""
    if raw in (None, "", 0, "0"):
        return None
    value = _to_float(raw)
    if value is None or value <= 0:
        raise InvalidRequestError(f"{name} must be a positive number")
    return value


def parse_order_ticket(body: dict) -> OrderTicket:
    """Validate an order placement body into an ``OrderTicket``."""
    instrument = str(body.get("instrument") or "").strip().upper()
    side = str(body.get("side") or "").strip().upper()
    order_type = str(body.get("orderType") or "").strip().upper()

    if not instrument or side not in ORDER_SIDES:
        raise InvalidRequestError("Invalid instrument or side")
    if order_type not in ORDER_TYPES:
        raise InvalidRequestError("Invalid orderType")

    units = _to_float(body.get("units"))
    if units is None or units <= 0:
        raise InvalidRequestError("Units must be a positive number")

    entry = parse_optional_price(body.get("entryPrice"), "entryPrice")
    stop_loss = parse_optional_price(body.get("stopLoss"), "stopLoss")
    take_profit = parse_optional_price(body.get("takeProfit"), "takeProfit")

    if order_type in ("LIMIT", "STOP") and entry is None:
        raise InvalidRequestError("entryPrice is required for LIMIT/STOP order")

    if entry is not None and stop_loss is not None:
        if side == "BUY" and stop_loss >= entry:
            raise InvalidRequestError("For BUY, stopLoss must be below entryPrice")
        if side == "SELL" and stop_loss <= entry:
            raise InvalidRequestError("For SELL, stopLoss must be above entryPrice")

    if entry is not None and take_profit is not None:
        if side == "BUY" and take_profit <= entry:
            raise InvalidRequestError("For BUY, takeProfit must be above entryPrice")
        if side == "SELL" and take_profit >= entry:
            raise InvalidRequestError("For SELL, takeProfit must be below entryPrice")

    signal_id = str(body.get("signalId") or "").strip()
    return OrderTicket(
        instrument=instrument,
        side=side,
        order_type=order_type,
        units=units,
        entry_price=entry,
        stop_loss=stop_loss,
        take_profit=take_profit,
        signal_id=signal_id or None,
    )


def build_order_body(ticket: OrderTicket) -> dict:
    """The inner ``order`` object for OANDA's create-order endpoint."""
    order = {
        "type": ticket.order_type,
        "instrument": ticket.instrument,
        "units": format_price(ticket.signed_units),
        "positionFill": "DEFAULT",
    }
    if ticket.order_type == "MARKET":
        order["timeInForce"] = "FOK"
    else:
        order["timeInForce"] = "GTC"
        order["price"] = format_price(ticket.entry_price)

    if ticket.stop_loss is not None:
        order["stopLossOnFill"] = {"price": format_price(ticket.stop_loss)}
    if ticket.take_profit is not None:
        order["takeProfitOnFill"] = {"price": format_price(ticket.take_profit)}
    return order
