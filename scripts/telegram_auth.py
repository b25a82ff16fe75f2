"""Interactive Telegram login.

Signs the scraper account in once and stores the session, either as the
Telethon session file or, with --string-session, as a StringSession to
paste into TELEGRAM_SESSION in .env.

Usage:
    python scripts/telegram_auth.py [--string-session]

Requirements:
    - TELEGRAM_API_ID and TELEGRAM_API_HASH in .env
    - The account's phone number and access to the login code
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from telethon import TelegramClient
from telethon.sessions import StringSession

load_dotenv()

DEFAULT_SESSION_PATH = "data/telegram_session"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authorize the scraper account")
    parser.add_argument(
        "--string-session",
        action="store_true",
        help="Print a StringSession for TELEGRAM_SESSION instead of writing a file",
    )
    parser.add_argument(
        "--session-path",
        default=DEFAULT_SESSION_PATH,
        help="Session file path (without the .session suffix)",
    )
    return parser.parse_args(argv)


def read_credentials() -> tuple[int, str]:
    api_id_str = os.getenv("TELEGRAM_API_ID")
    api_hash = os.getenv("TELEGRAM_API_HASH")

    if not api_id_str or not api_hash:
        print("Error: TELEGRAM_API_ID and TELEGRAM_API_HASH must be set in .env")
        print("Create an application at https://my.telegram.org to get them.")
        sys.exit(1)

    try:
        return int(api_id_str), api_hash
    except ValueError:
        print(f"Error: TELEGRAM_API_ID must be an integer, got: {api_id_str}")
        sys.exit(1)


async def authenticate(args: argparse.Namespace) -> None:
    """Run the interactive login and persist the session."""
    api_id, api_hash = read_credentials()

    if args.string_session:
        client = TelegramClient(StringSession(), api_id, api_hash)
    else:
        Path(args.session_path).parent.mkdir(parents=True, exist_ok=True)
        client = TelegramClient(args.session_path, api_id, api_hash)

    try:
        await client.start()
        me = await client.get_me()
        username = f"@{me.username}" if me.username else "(no username)"
        print(f"Signed in as {me.first_name} {username} (id {me.id})")

        if args.string_session:
            print()
            print("Add this line to .env:")
            print(f"TELEGRAM_SESSION={client.session.save()}")
        else:
            print(f"Session saved to {args.session_path}.session")
        print("Next: python scripts/run_telegram_scraper.py")
    finally:
        await client.disconnect()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(authenticate(args))
    except KeyboardInterrupt:
        print("\nAuthentication cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
