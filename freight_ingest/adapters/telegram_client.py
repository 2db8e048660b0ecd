"""Telegram client adapter using Telethon library."""

import asyncio
import types
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Final, TypeVar

import pytz
from telethon import TelegramClient as TelegramClientLib  # type: ignore[import-untyped]
from telethon.errors import FloodWaitError, RPCError  # type: ignore[import-untyped]
from telethon.tl.types import User  # type: ignore[import-untyped]

from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.exceptions import RateLimitError, TelegramAPIError
from freight_ingest.domain.models import DELETED_ACCOUNT_NAME, Sender, TelegramMessage

T = TypeVar("T")

logger = get_logger(__name__)

DEFAULT_FLOOD_WAIT_MAX_SECONDS: Final[int] = 300
"""Longest flood wait slept through before giving up with RateLimitError."""

DEFAULT_TELEGRAM_MAX_RETRIES: Final[int] = 3

POST_URL_TEMPLATE: Final[str] = "https://t.me/{channel}/{message_id}"


def build_post_url(channel: str, message_id: int) -> str:
    """Public link of a channel post.

    Example:
        >>> build_post_url("yuk_markazi", 1042)
        'https://t.me/yuk_markazi/1042'
    """
    return POST_URL_TEMPLATE.format(channel=channel.lstrip("@"), message_id=message_id)


class TelegramClient:
    """Telegram client adapter using Telethon (user client).

    One instance wraps one authenticated session file. Sessions are created
    interactively with ``scripts/telegram_auth.py``; this adapter only
    connects to an already authorized session.

    Example:
        >>> async with TelegramClient(12345, "abc123", "data/default.session") as client:
        ...     messages = await client.fetch_messages("yuk_markazi", min_id=1000, limit=100)
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_name: str,
        *,
        flood_wait_max_seconds: int = DEFAULT_FLOOD_WAIT_MAX_SECONDS,
        max_retries: int = DEFAULT_TELEGRAM_MAX_RETRIES,
        client: Any | None = None,
    ) -> None:
        """``client`` replaces the lazily built Telethon client (tests)."""
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_name = session_name
        self._client = client
        self._is_connected = False
        self._flood_wait_max_seconds = max(flood_wait_max_seconds, 0)
        self._max_retries = max(max_retries, 1)
        self._connect_lock = asyncio.Lock()

    def _get_client(self) -> TelegramClientLib:
        if self._client is None:
            self._client = TelegramClientLib(
                self.session_name, self.api_id, self.api_hash
            )
        return self._client

    async def connect(self) -> None:
        """Connect to Telegram API.

        Raises:
            TelegramAPIError: If connection fails or the session is not authorized
        """
        async with self._connect_lock:
            if self._is_connected:
                return

            client = self._get_client()
            try:
                await client.connect()
                authorized = await client.is_user_authorized()
            except (RPCError, OSError) as exc:
                raise TelegramAPIError(
                    f"Failed to connect session {self.session_name}: {exc}"
                ) from exc

            if not authorized:
                raise TelegramAPIError(
                    f"Session {self.session_name} is not authorized. "
                    "Run scripts/telegram_auth.py first."
                )

            self._is_connected = True
            logger.info("telegram_client_connected", session=self.session_name)

    async def disconnect(self) -> None:
        """Disconnect from Telegram API."""
        if not self._is_connected or self._client is None:
            return

        await self._client.disconnect()
        self._is_connected = False
        logger.info("telegram_client_disconnected", session=self.session_name)

    def is_connected(self) -> bool:
        return self._is_connected

    async def close(self) -> None:
        await self.disconnect()
        self._client = None

    async def __aenter__(self) -> "TelegramClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def _call(
        self, operation: str, channel: str, request: Callable[[], Awaitable[T]]
    ) -> T:
        """Run a request, sleeping through short flood waits.

        Raises:
            RateLimitError: Flood wait too long or retries exhausted
            TelegramAPIError: Any other Telegram failure
        """
        await self.connect()

        retry_count = 0
        while True:
            try:
                return await request()
            except FloodWaitError as error:
                retry_count += 1
                wait_seconds = int(getattr(error, "seconds", 10))
                logger.warning(
                    "telegram_flood_wait",
                    operation=operation,
                    channel=channel,
                    wait_seconds=wait_seconds,
                    retry_count=retry_count,
                    max_retries=self._max_retries,
                )
                if (
                    wait_seconds > self._flood_wait_max_seconds
                    or retry_count >= self._max_retries
                ):
                    logger.error(
                        "telegram_flood_wait_exhausted",
                        operation=operation,
                        channel=channel,
                        wait_seconds=wait_seconds,
                    )
                    raise RateLimitError(retry_after=wait_seconds) from error
                await asyncio.sleep(wait_seconds)
            except (RPCError, ValueError) as exc:
                # Telethon raises ValueError for unknown usernames and entities
                logger.error(
                    "telegram_request_failed",
                    operation=operation,
                    channel=channel,
                    error=str(exc),
                )
                raise TelegramAPIError(f"Failed to {operation} for {channel}: {exc}") from exc

    def _convert_message(self, message: Any, channel: str) -> TelegramMessage:
        """Convert a Telethon Message object to the domain model."""
        message_date = message.date
        if message_date and message_date.tzinfo is None:
            message_date = message_date.replace(tzinfo=pytz.UTC)

        forward_from = None
        fwd_from = getattr(message, "fwd_from", None)
        if fwd_from is not None and getattr(fwd_from, "from_id", None) is not None:
            forward_from = str(fwd_from.from_id)

        return TelegramMessage(
            message_id=int(message.id),
            channel=channel,
            date=message_date,
            sender_id=int(message.sender_id) if message.sender_id else None,
            text=message.message or message.text or "",
            forward_from=forward_from,
            post_url=build_post_url(channel, message.id),
        )

    async def fetch_messages(
        self, channel: str, min_id: int | None = None, limit: int = 100
    ) -> list[TelegramMessage]:
        """Fetch up to ``limit`` messages newer than ``min_id``, newest first."""
        client = self._get_client()

        async def _request() -> list[TelegramMessage]:
            messages: list[TelegramMessage] = []
            async for message in client.iter_messages(
                channel, limit=limit, min_id=min_id or 0
            ):
                messages.append(self._convert_message(message, channel))
            return messages

        messages = await self._call("fetch messages", channel, _request)
        logger.debug(
            "telegram_messages_fetched",
            channel=channel,
            min_id=min_id,
            count=len(messages),
        )
        return messages

    async def get_messages_by_ids(
        self, channel: str, message_ids: Sequence[int]
    ) -> list[TelegramMessage]:
        """Fetch specific messages; ids that no longer exist are omitted."""
        if not message_ids:
            return []
        client = self._get_client()

        async def _request() -> list[Any]:
            result = await client.get_messages(channel, ids=list(message_ids))
            return list(result or [])

        raw_messages = await self._call("get messages by id", channel, _request)
        return [
            self._convert_message(message, channel)
            for message in raw_messages
            if message is not None
        ]

    async def get_channel_title(self, channel: str) -> str | None:
        client = self._get_client()

        async def _request() -> Any:
            return await client.get_entity(channel)

        entity = await self._call("get channel", channel, _request)
        return getattr(entity, "title", None)

    async def get_sender(self, sender_id: int, channel: str | None = None) -> Sender | None:
        """Resolve an upstream user entity; bots and non-users yield None."""
        client = self._get_client()

        async def _request() -> Any:
            return await client.get_entity(sender_id)

        try:
            entity = await self._call("get sender", channel or str(sender_id), _request)
        except TelegramAPIError:
            logger.warning("telegram_sender_unresolved", sender_id=sender_id, channel=channel)
            return None

        if not isinstance(entity, User) or entity.bot:
            return None

        first_name = entity.first_name
        if getattr(entity, "deleted", False) and not first_name:
            first_name = DELETED_ACCOUNT_NAME

        return Sender(
            telegram_id=int(entity.id),
            username=entity.username,
            first_name=first_name,
            last_name=entity.last_name,
            phone=entity.phone,
            is_bot=False,
        )
