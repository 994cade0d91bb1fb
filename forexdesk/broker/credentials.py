"""Credential resolution and broker client construction.

Credentials are read fresh on every call; a client is never shared between
users or requests because tokens can be edited between calls.
"""

import logging

from forexdesk.broker.errors import MissingCredentialsError, UserNotFoundError
from forexdesk.broker.models import CredentialSet
from forexdesk.broker.oanda_client import OandaClient
from forexdesk.config import Config

logger = logging.getLogger("forexdesk.broker")


def resolve_credentials(user_repo, user_id: str) -> CredentialSet:
    """Return the user's credential set for their selected environment.

    Raises:
        UserNotFoundError: no settings record for *user_id*.
        MissingCredentialsError: the selected set lacks an account id or token.
    """
    settings = user_repo.get_broker_settings(user_id)
    if settings is None:
        raise UserNotFoundError(user_id)

    credentials = settings.selected()
    if not credentials.complete:
        logger.info(
            "User %s has incomplete %s credentials",
            user_id, credentials.environment.value,
        )
        raise MissingCredentialsError(credentials.environment.value)
    return credentials


def build_client(credentials: CredentialSet, config: Config) -> OandaClient:
    """Build a single-use ``OandaClient`` for *credentials*."""
    return OandaClient(credentials, timeout=config.request_timeout_seconds)


def get_oanda_client(user_repo, user_id: str, config: Config) -> OandaClient:
    """Resolve *user_id*'s credentials and return a fresh client."""
    return build_client(resolve_credentials(user_repo, user_id), config)
