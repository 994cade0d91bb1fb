"""Broker integration exceptions for ForexDesk."""

from typing import Any, Optional


class BrokerError(Exception):
    """Base error for the broker integration layer."""


class MissingCredentialsError(BrokerError):
    """The selected environment has no account id or no API token."""

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(f"Missing {environment} OANDA credentials")


class UserNotFoundError(BrokerError):
    """No credential record exists for the user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class UpstreamBrokerError(BrokerError):
    """OANDA answered non-2xx, or the request never completed.

    ``status_code`` is ``None`` for transport failures and timeouts.
    ``payload`` is the broker's error body, untouched.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class InvalidRequestError(BrokerError):
    """Caller input failed a precondition; raised before any broker call."""


class SignalNotFoundError(BrokerError):
    """The signal does not exist or belongs to another user."""

    def __init__(self, signal_id: str) -> None:
        self.signal_id = signal_id
        super().__init__(f"Signal not found: {signal_id}")


class ActiveLinkExistsError(BrokerError):
    """The signal already has an order attempt in a non-terminal status."""

    def __init__(self, signal_id: str) -> None:
        self.signal_id = signal_id
        super().__init__(f"Signal {signal_id} already has an active order link")
