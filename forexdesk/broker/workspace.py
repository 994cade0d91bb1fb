"""Workspace aggregation — one snapshot of account, trades, orders, positions
and recent activity.

The account summary is on the critical path: it is fetched first and its
failure fails the whole call.  The four remaining resources are fetched
concurrently and settle independently; a failed one degrades to ``[]``
without cancelling or failing its siblings.
"""

import asyncio
import logging
from typing import Optional

from forexdesk.broker.models import WorkspaceSnapshot

logger = logging.getLogger("forexdesk.workspace")

TRANSACTION_WINDOW = 200
ACTIVITY_LIMIT = 30

# Field names under which OANDA has reported an order's related trade id,
# checked in this order.
RELATED_TRADE_ID_FIELDS = ("tradeID", "tradeId", "relatedTradeID", "trade_id")


def transaction_window(last_transaction_id) -> tuple[int, int]:
    """Return the ``(from, to)`` id range ending at *last_transaction_id*."""
    try:
        last = int(last_transaction_id or 1)
    except (TypeError, ValueError):
        last = 1
    last = max(1, last)
    return max(1, last - TRANSACTION_WINDOW), last


def related_trade_id(order: dict) -> Optional[str]:
    """First non-empty related-trade id on *order*, or ``None``."""
    for name in RELATED_TRADE_ID_FIELDS:
        value = order.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def backfill_order_instruments(orders: list[dict], trades: list[dict]) -> list[dict]:
    """Fill in ``instrument`` on orders that only reference their trade.

    Orders that already carry an instrument, or whose trade is unknown, are
    returned as fetched.  Backfilled orders are copies.
    """
    instrument_by_trade = {
        str(t["id"]): t["instrument"]
        for t in trades
        if t.get("id") is not None and t.get("instrument")
    }

    result = []
    for order in orders:
        if not order.get("instrument"):
            trade_id = related_trade_id(order)
            instrument = instrument_by_trade.get(trade_id) if trade_id else None
            if instrument:
                order = {**order, "instrument": instrument}
        result.append(order)
    return result


def recent_activity(transactions: list[dict]) -> list[dict]:
    """The most recent ``ACTIVITY_LIMIT`` transactions, newest first."""
    return list(reversed(transactions[-ACTIVITY_LIMIT:]))


def _settled_list(name: str, outcome, key: str, degraded: list[str]) -> list[dict]:
    if isinstance(outcome, BaseException):
        logger.warning("Workspace %s fetch failed, returning []: %s", name, outcome)
        degraded.append(name)
        return []
    return (outcome or {}).get(key) or []


async def build_workspace(client) -> WorkspaceSnapshot:
    """Fetch and merge a workspace snapshot through *client*.

    Args:
        client: An ``OandaClient`` (or duck-type) for one account.

    Raises:
        UpstreamBrokerError: the account summary could not be fetched.
    """
    summary = await client.get_account_summary()
    account = (summary or {}).get("account")
    from_id, to_id = transaction_window((account or {}).get("lastTransactionID"))

    outcomes = await asyncio.gather(
        client.list_open_trades(),
        client.list_pending_orders(),
        client.list_open_positions(),
        client.get_transactions_range(from_id, to_id),
        return_exceptions=True,
    )
    trades_out, orders_out, positions_out, activity_out = outcomes

    degraded: list[str] = []
    trades = _settled_list("trades", trades_out, "trades", degraded)
    orders = _settled_list("orders", orders_out, "orders", degraded)
    positions = _settled_list("positions", positions_out, "positions", degraded)
    transactions = _settled_list("activity", activity_out, "transactions", degraded)

    return WorkspaceSnapshot(
        account=account,
        trades=trades,
        orders=backfill_order_instruments(orders, trades),
        positions=positions,
        activity=recent_activity(transactions),
        degraded=tuple(degraded),
    )
