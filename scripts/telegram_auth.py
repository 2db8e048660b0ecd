"""Interactive Telegram authentication script.

Creates the Telethon session file of every configured crawl session.
Run this once per session before starting the pipeline.

Usage:
    python scripts/telegram_auth.py            # all sessions
    python scripts/telegram_auth.py default    # one session

Requirements:
    - TELEGRAM_API_ID and TELEGRAM_API_HASH in .env
    - Phone number of the account behind each session
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from telethon import TelegramClient

from freight_ingest.config.logging_config import get_logger, setup_logging
from freight_ingest.config.settings import Settings, get_settings

load_dotenv()

logger = get_logger(__name__)


async def authenticate(settings: Settings, session: str) -> None:
    """Run the interactive login flow for one session."""
    if not settings.telegram_api_id or not settings.telegram_api_hash:
        raise ValueError("TELEGRAM_API_ID and TELEGRAM_API_HASH must be set in .env")

    session_path = settings.get_session_path(session)
    Path(session_path).parent.mkdir(parents=True, exist_ok=True)

    client = TelegramClient(
        session_path,
        settings.telegram_api_id,
        settings.telegram_api_hash.get_secret_value(),
    )
    try:
        # Prompts for phone and code on stdin
        await client.start()
        me = await client.get_me()
        logger.info(
            "telegram_session_authorized",
            session=session,
            session_path=session_path,
            user_id=me.id,
            username=me.username,
        )
    finally:
        await client.disconnect()


def main() -> int:
    setup_logging()
    settings = get_settings()
    sessions = sys.argv[1:] or sorted({channel.session for channel in settings.channels})

    for session in sessions:
        try:
            asyncio.run(authenticate(settings, session))
        except KeyboardInterrupt:
            logger.warning("telegram_auth_cancelled", session=session)
            return 1
        except Exception as e:
            logger.error("telegram_auth_failed", session=session, error=str(e))
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
