"""Signal-order reconciliation.

Tracks which broker order/trade each trade signal produced and how that
attempt's status evolves.  Transitions are driven by callers (the order
placement route and the status route); every read and write is scoped to
the owning user.
"""

import enum
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from forexdesk.broker.errors import (
    ActiveLinkExistsError,
    InvalidRequestError,
    SignalNotFoundError,
)
from forexdesk.broker.models import OrderTicket
from forexdesk.broker.payloads import parse_optional_price

logger = logging.getLogger("forexdesk.reconciler")


class LinkStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    CANCELLED = "cancelled"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_LINK_STATUSES = frozenset(
    {LinkStatus.CANCELLED, LinkStatus.CLOSED, LinkStatus.FAILED}
)
ACTIVE_LINK_STATUSES = tuple(
    s.value for s in LinkStatus if s not in TERMINAL_LINK_STATUSES
)


class SignalStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


SIGNAL_ACTIONS = ("BUY", "SELL", "WAIT")


@dataclass(frozen=True)
class OrderOutcome:
    """What an order-create response says about the new order."""

    order_id: Optional[str]
    trade_id: Optional[str]
    status: LinkStatus


def _first_id(response: dict, paths: tuple[tuple[str, ...], ...]) -> Optional[str]:
    for path in paths:
        node = response
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if node not in (None, ""):
            return str(node)
    return None


_ORDER_ID_PATHS = (
    ("orderCreateTransaction", "id"),
    ("orderCreateTransaction", "orderID"),
    ("orderFillTransaction", "orderID"),
    ("orderCancelTransaction", "orderID"),
)
_TRADE_ID_PATHS = (
    ("orderFillTransaction", "tradeOpened", "tradeID"),
    ("orderFillTransaction", "tradeReduced", "tradeID"),
    ("orderFillTransaction", "tradeClosed", "tradeID"),
)


def parse_order_outcome(response: dict) -> OrderOutcome:
    """Extract broker ids and the resulting link status from an order response."""
    response = response or {}
    if response.get("orderCancelTransaction"):
        status = LinkStatus.CANCELLED
    elif response.get("orderRejectTransaction"):
        status = LinkStatus.FAILED
    elif response.get("orderFillTransaction"):
        status = LinkStatus.FILLED
    else:
        status = LinkStatus.SUBMITTED
    return OrderOutcome(
        order_id=_first_id(response, _ORDER_ID_PATHS),
        trade_id=_first_id(response, _TRADE_ID_PATHS),
        status=status,
    )


def _parse_enum(enum_cls, value, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in enum_cls)
        raise InvalidRequestError(f"{name} must be one of: {allowed}") from None


class SignalOrderReconciler:
    """Signal and signal-order link operations for one store.

    Args:
        signal_repo: A ``SignalRepo`` (or duck-type).
        link_repo: A ``SignalOrderLinkRepo`` (or duck-type).
    """

    def __init__(self, signal_repo, link_repo) -> None:
        self._signals = signal_repo
        self._links = link_repo

    # ── Signals ──────────────────────────────────────────────────────────

    def create_signal(self, user_id: str, body: dict) -> dict:
        """Record a new ``open`` signal from a recommendation payload."""
        instrument = str(body.get("instrument") or "").strip().upper()
        action = str(body.get("action") or "").strip().upper()
        rationale = str(body.get("rationale") or "").strip()
        if not instrument or not action or not rationale:
            raise InvalidRequestError("Missing required fields")
        if action not in SIGNAL_ACTIONS:
            raise InvalidRequestError("action must be one of: BUY, SELL, WAIT")

        signal = self._signals.insert_signal(
            user_id=user_id,
            instrument=instrument,
            action=action,
            rationale=rationale,
            timeframe=str(body.get("timeframe") or "M15"),
            entry_price=parse_optional_price(body.get("entryPrice"), "entryPrice"),
            stop_loss=parse_optional_price(body.get("stopLoss"), "stopLoss"),
            take_profit=parse_optional_price(body.get("takeProfit"), "takeProfit"),
            status=SignalStatus.OPEN.value,
        )
        logger.info("Signal %s created for %s (%s)", signal["id"], instrument, action)
        return signal

    def get_signal(self, user_id: str, signal_id: str) -> dict:
        signal = self._signals.get_signal(user_id, signal_id)
        if signal is None:
            raise SignalNotFoundError(signal_id)
        return signal

    def list_signals(self, user_id: str) -> list[dict]:
        return self._signals.list_signals(user_id)

    def set_signal_status(self, user_id: str, signal_id: str, status) -> int:
        """Move a signal to ``closed`` or ``cancelled``.

        Returns rows affected; 0 when the signal is unknown or not owned.
        """
        target = _parse_enum(SignalStatus, status, "status")
        if target is SignalStatus.OPEN:
            raise InvalidRequestError("A signal cannot be reopened")
        updated = self._signals.update_status(user_id, signal_id, target.value)
        logger.info("Signal %s → %s (%d row(s))", signal_id, target.value, updated)
        return updated

    # ── Links ────────────────────────────────────────────────────────────

    def ensure_can_submit(self, user_id: str, signal_id: str) -> dict:
        """Check an order may be placed for *signal_id*; return the signal.

        Raises:
            SignalNotFoundError: unknown signal or another user's signal.
            ActiveLinkExistsError: an earlier attempt is still in flight.
        """
        signal = self.get_signal(user_id, signal_id)
        if self._links.active_link(signal_id) is not None:
            raise ActiveLinkExistsError(signal_id)
        return signal

    def record_submission(
        self,
        user_id: str,
        ticket: OrderTicket,
        response: dict,
    ) -> Optional[dict]:
        """Create the link for an order already accepted by the broker.

        Returns ``None`` (and logs) if a concurrent attempt claimed the
        signal in the meantime or the link could not be stored; the broker
        order stands either way.
        """
        outcome = parse_order_outcome(response)
        try:
            link = self._links.insert_link(
                user_id=user_id,
                signal_id=ticket.signal_id,
                instrument=ticket.instrument,
                side=ticket.side,
                order_type=ticket.order_type,
                status=outcome.status.value,
                oanda_order_id=outcome.order_id,
                oanda_trade_id=outcome.trade_id,
                details={"response": response},
            )
        except ActiveLinkExistsError:
            logger.error(
                "Order %s placed for signal %s but another attempt is active; "
                "link not recorded",
                outcome.order_id, ticket.signal_id,
            )
            return None
        except sqlite3.Error:
            logger.exception(
                "Order %s placed for signal %s but the link could not be stored",
                outcome.order_id, ticket.signal_id,
            )
            return None
        logger.info(
            "Signal %s linked to order %s (trade %s, %s)",
            ticket.signal_id, outcome.order_id, outcome.trade_id, outcome.status.value,
        )
        return link

    def advance_link(
        self,
        user_id: str,
        link_id: str,
        status,
        oanda_order_id: Optional[str] = None,
        oanda_trade_id: Optional[str] = None,
    ) -> int:
        """Set a link's status and attach broker ids as they become known.

        Empty ids leave the stored ones untouched.  Returns rows affected:
        0 when the link does not exist or belongs to another user.
        """
        target = _parse_enum(LinkStatus, status, "status")
        updated = self._links.update_status(
            user_id,
            link_id,
            target.value,
            oanda_order_id=str(oanda_order_id) if oanda_order_id else None,
            oanda_trade_id=str(oanda_trade_id) if oanda_trade_id else None,
        )
        logger.info("Link %s → %s (%d row(s))", link_id, target.value, updated)
        return updated

    def links_for(self, user_id: str, signal_id: Optional[str] = None) -> list[dict]:
        return self._links.list_links(user_id, signal_id)
