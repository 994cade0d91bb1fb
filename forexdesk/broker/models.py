"""Broker data models — credentials, request shapes and the workspace snapshot.

Broker resources themselves (trades, orders, positions, transactions) are
passed through as the raw OANDA v20 JSON dicts.
"""

import enum
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Union

from forexdesk.config import LIVE_BASE_URL, PRACTICE_BASE_URL


class Environment(str, enum.Enum):
    """OANDA deployment target."""

    PRACTICE = "practice"
    LIVE = "live"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Environment":
        """Map a stored selector to an environment; anything but ``"live"`` is practice."""
        if value is not None and value.strip().lower() == cls.LIVE.value:
            return cls.LIVE
        return cls.PRACTICE

    @property
    def base_url(self) -> str:
        if self is Environment.LIVE:
            return LIVE_BASE_URL
        return PRACTICE_BASE_URL


@dataclass(frozen=True)
class PracticeCredentials:
    """Account id + token for the practice (paper) environment."""

    environment: ClassVar[Environment] = Environment.PRACTICE

    account_id: Optional[str] = None
    api_token: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool((self.account_id or "").strip() and (self.api_token or "").strip())


@dataclass(frozen=True)
class LiveCredentials:
    """Account id + token for the live (real funds) environment."""

    environment: ClassVar[Environment] = Environment.LIVE

    account_id: Optional[str] = None
    api_token: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool((self.account_id or "").strip() and (self.api_token or "").strip())


CredentialSet = Union[PracticeCredentials, LiveCredentials]


@dataclass(frozen=True)
class BrokerSettings:
    """A user's stored broker settings: the selector plus both credential sets."""

    user_id: str
    environment: Environment
    practice: PracticeCredentials
    live: LiveCredentials

    def selected(self) -> CredentialSet:
        """Return the credential set the environment selector points at."""
        if self.environment is Environment.LIVE:
            return self.live
        return self.practice


@dataclass(frozen=True)
class RiskUpdate:
    """Protective-order update for one open trade.

    ``None`` means cancel; omitted fields arrive here as ``None`` too.
    """

    trade_id: str
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop_distance: Optional[float] = None


@dataclass(frozen=True)
class OrderTicket:
    """A validated order placement request."""

    instrument: str
    side: str  # "BUY" or "SELL"
    order_type: str  # "MARKET", "LIMIT" or "STOP"
    units: float
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    signal_id: Optional[str] = None

    @property
    def signed_units(self) -> float:
        return self.units if self.side == "BUY" else -self.units


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """Merged view of one account at one point in time."""

    account: Optional[dict]
    trades: list[dict] = field(default_factory=list)
    orders: list[dict] = field(default_factory=list)
    positions: list[dict] = field(default_factory=list)
    activity: list[dict] = field(default_factory=list)
    degraded: tuple[str, ...] = ()  # fields that fell back to [] after a failed fetch

    def as_dict(self) -> dict:
        return {
            "account": self.account,
            "trades": self.trades,
            "orders": self.orders,
            "positions": self.positions,
            "activity": self.activity,
        }
