"""
Message client factory for multi-session crawling.

Channels name the Telegram session that reads them (``default`` or a
channel-specific account). The factory builds one client per session and
hands the same instance to every channel of that session.
"""

from freight_ingest.adapters.telegram_client import TelegramClient
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.protocols import MessageClientProtocol

logger = get_logger(__name__)


def get_message_client(settings: Settings, session: str) -> MessageClientProtocol:
    """Build a Telegram client for a configured session.

    Args:
        settings: Application settings with API credentials and session paths
        session: Session name from channel configuration

    Returns:
        MessageClientProtocol: Telegram client bound to the session file

    Raises:
        ValueError: If credentials are missing or the session is not configured

    Example:
        >>> client = get_message_client(settings, "default")
    """
    if not settings.telegram_api_id or not settings.telegram_api_hash:
        raise ValueError(
            "Telegram API_ID and API_HASH must be configured in .env. "
            "See scripts/telegram_auth.py for setup instructions."
        )

    return TelegramClient(
        api_id=settings.telegram_api_id,
        api_hash=settings.telegram_api_hash.get_secret_value(),
        session_name=settings.get_session_path(session),
        flood_wait_max_seconds=settings.telegram_flood_wait_max_seconds,
    )


class MessageClientPool:
    """Lazily created clients keyed by session name."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._clients: dict[str, MessageClientProtocol] = {}

    def get(self, session: str) -> MessageClientProtocol:
        client = self._clients.get(session)
        if client is None:
            client = get_message_client(self._settings, session)
            self._clients[session] = client
            logger.info("message_client_created", session=session)
        return client

    async def close(self) -> None:
        for session, client in list(self._clients.items()):
            await client.close()
            logger.debug("message_client_closed", session=session)
        self._clients.clear()
