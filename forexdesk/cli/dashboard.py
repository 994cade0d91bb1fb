"""CLI dashboard — prints a workspace snapshot to the console."""

from forexdesk.broker.models import WorkspaceSnapshot


def _money(value, currency: str) -> str:
    if value in (None, ""):
        return "N/A"
    return f"{float(value):,.2f} {currency}".strip()


def print_workspace(snapshot: WorkspaceSnapshot) -> str:
    """Format and print a workspace snapshot.

    Returns:
        The formatted string (also printed to stdout).
    """
    account = snapshot.account or {}
    currency = account.get("currency", "")

    lines = [
        "─────────────── ForexDesk Workspace ───────────────",
        f"  Account:         {account.get('id', 'N/A')}",
        f"  Balance:         {_money(account.get('balance'), currency)}",
        f"  NAV:             {_money(account.get('NAV'), currency)}",
        f"  Unrealized P&L:  {_money(account.get('unrealizedPL'), currency)}",
        f"  Open trades:     {len(snapshot.trades)}",
        f"  Pending orders:  {len(snapshot.orders)}",
        f"  Positions:       {len(snapshot.positions)}",
    ]
    for trade in snapshot.trades:
        lines.append(
            f"    #{trade.get('id')} {trade.get('instrument')} "
            f"{trade.get('currentUnits')} @ {trade.get('price')} "
            f"P&L {trade.get('unrealizedPL', '0')}"
        )
    for order in snapshot.orders:
        lines.append(
            f"    order #{order.get('id')} {order.get('type', '')} "
            f"{order.get('instrument') or 'UNKNOWN'}"
        )
    if snapshot.activity:
        latest = snapshot.activity[0]
        lines.append(
            f"  Last activity:   #{latest.get('id')} {latest.get('type', '')} "
            f"{latest.get('time', '')}".rstrip()
        )
    if snapshot.degraded:
        lines.append(f"  Unavailable:     {', '.join(snapshot.degraded)}")
    lines.append("───────────────────────────────────────────────────")

    output = "\n".join(lines)
    print(output)
    return output
