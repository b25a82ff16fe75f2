"""Telegram client adapter using Telethon library."""

import asyncio
import threading
import types
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, Final, TypeVar

import pytz
from telethon import TelegramClient as TelegramClientLib
from telethon import types as tl_types
from telethon import utils as telethon_utils
from telethon.errors import FileReferenceExpiredError, FloodWaitError
from telethon.sessions import StringSession

from src.config.logging_config import get_logger
from src.domain.correlation_constants import FETCH_BATCH_LIMIT
from src.domain.exceptions import (
    FatalSourceError,
    MediaDownloadError,
    RateLimitError,
    TelegramAPIError,
)
from src.domain.models import (
    AnnotationType,
    AuthorInfo,
    MediaKind,
    RawMessage,
    SourceEntity,
    StyleAnnotation,
)

T = TypeVar("T")

logger = get_logger(__name__)

DEFAULT_TELEGRAM_MAX_RETRIES: Final[int] = 3
DEFAULT_OPERATION_TIMEOUT_SECONDS: Final[float] = 120.0
FILE_REFERENCE_EXPIRED: Final[str] = "FILE_REFERENCE_EXPIRED"

_ENTITY_TYPES: Final[dict[type, AnnotationType]] = {
    tl_types.MessageEntityBold: AnnotationType.BOLD,
    tl_types.MessageEntityItalic: AnnotationType.ITALIC,
    tl_types.MessageEntityUnderline: AnnotationType.UNDERLINE,
    tl_types.MessageEntityStrike: AnnotationType.STRIKETHROUGH,
    tl_types.MessageEntityCode: AnnotationType.CODE,
    tl_types.MessageEntityPre: AnnotationType.PRE,
    tl_types.MessageEntityTextUrl: AnnotationType.TEXT_LINK,
    tl_types.MessageEntityMentionName: AnnotationType.TEXT_MENTION,
    tl_types.MessageEntityMention: AnnotationType.MENTION,
    tl_types.MessageEntityHashtag: AnnotationType.HASHTAG,
    tl_types.MessageEntityCashtag: AnnotationType.CASHTAG,
    tl_types.MessageEntityBotCommand: AnnotationType.BOT_COMMAND,
    tl_types.MessageEntityUrl: AnnotationType.URL,
    tl_types.MessageEntityEmail: AnnotationType.EMAIL,
    tl_types.MessageEntityPhone: AnnotationType.PHONE_NUMBER,
    tl_types.MessageEntitySpoiler: AnnotationType.SPOILER,
    tl_types.MessageEntityBlockquote: AnnotationType.BLOCKQUOTE,
}


def peer_marked_id(peer: Any) -> str | None:
    """Marked id of a peer: users positive, chats and channels negative.

    Telethon resolves a marked id back to the right peer type, so channel
    authors stay distinguishable from users with the same bare id.
    """
    if peer is None:
        return None
    try:
        return str(telethon_utils.get_peer_id(peer))
    except TypeError:
        return None


def original_author_id(message: Any) -> str | None:
    """Author of a message: forward origin, else sender, else chat peer."""
    fwd_from = getattr(message, "fwd_from", None)
    forwarded_from = getattr(fwd_from, "from_id", None) if fwd_from else None
    if forwarded_from is not None:
        return peer_marked_id(forwarded_from)
    from_id = getattr(message, "from_id", None)
    if from_id is not None:
        return peer_marked_id(from_id)
    return peer_marked_id(getattr(message, "peer_id", None))


def hidden_forward_name(message: Any) -> str | None:
    """Name shown for a forward whose original sender hid their account."""
    fwd_from = getattr(message, "fwd_from", None)
    if fwd_from is None or getattr(fwd_from, "from_id", None) is not None:
        return None
    return getattr(fwd_from, "from_name", None) or None


def convert_entity(entity: Any) -> StyleAnnotation:
    """Map a Telethon message entity onto a style annotation."""
    return StyleAnnotation(
        type=_ENTITY_TYPES.get(type(entity), AnnotationType.UNKNOWN),
        offset=entity.offset,
        length=entity.length,
        url=getattr(entity, "url", None),
        user_id=getattr(entity, "user_id", None),
    )


def _media_kind(media: Any) -> tuple[MediaKind, str | None]:
    if media is None:
        return MediaKind.NONE, None
    if isinstance(media, tl_types.MessageMediaPhoto):
        return MediaKind.PHOTO, None
    if isinstance(media, tl_types.MessageMediaDocument):
        document = getattr(media, "document", None)
        return MediaKind.DOCUMENT, getattr(document, "mime_type", None)
    return MediaKind.OTHER, None


def _topic_id(message: Any) -> int | None:
    reply_to = getattr(message, "reply_to", None)
    if reply_to is None:
        return None
    top_id = getattr(reply_to, "reply_to_top_id", None)
    if top_id:
        return int(top_id)
    if getattr(reply_to, "forum_topic", False):
        return getattr(reply_to, "reply_to_msg_id", None)
    return None


def convert_message(message: Any, room_id: str) -> RawMessage:
    """Convert a Telethon Message into a RawMessage."""
    message_date: datetime = message.date
    if message_date.tzinfo is None:
        message_date = message_date.replace(tzinfo=pytz.UTC)
    media_kind, mime_type = _media_kind(getattr(message, "media", None))
    return RawMessage(
        message_id=message.id,
        room_id=room_id,
        author_id=original_author_id(message),
        date=message_date.astimezone(pytz.UTC),
        text=message.message or "",
        annotations=[convert_entity(entity) for entity in message.entities or []],
        media_kind=media_kind,
        mime_type=mime_type,
        topic_id=_topic_id(message),
        forwarded_from_name=hidden_forward_name(message),
    )


def entity_display_name(entity: Any) -> str:
    title = getattr(entity, "title", None)
    if title:
        return str(title)
    parts = [getattr(entity, "first_name", None), getattr(entity, "last_name", None)]
    name = " ".join(part for part in parts if part)
    return name or getattr(entity, "username", None) or str(getattr(entity, "id", ""))


def _peer_argument(room_id: str) -> int | str:
    try:
        return int(room_id)
    except ValueError:
        return room_id


class TelegramClient:
    """Telegram client adapter using Telethon (user client).

    Wraps the async Telethon library in a synchronous interface. All
    coroutines run on one background event loop, so the adapter can be
    shared by several worker threads.

    Args:
        api_id: Telegram API ID (from my.telegram.org)
        api_hash: Telegram API hash (from my.telegram.org)
        session_string: Exported StringSession; a session file is used when empty
        session_name: Path of the session file (e.g. 'data/telegram_session')

    Example:
        >>> client = TelegramClient(api_id=12345, api_hash="abc123...")
        >>> messages = client.fetch_messages("-1001234567890", min_id=420)
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_string: str | None = None,
        session_name: str = "data/telegram_session",
        *,
        max_retries: int = DEFAULT_TELEGRAM_MAX_RETRIES,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_string = session_string
        self.session_name = session_name
        self._client: TelegramClientLib | None = None
        self._is_connected = False
        self._max_retries = max(max_retries, 1)
        self._operation_timeout = operation_timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._loop_ready = threading.Event()
        self._loop_lock = threading.Lock()
        # Telethon messages by (room_id, message_id), needed for media download
        self._native_messages: dict[tuple[str, int], Any] = {}
        self._native_lock = threading.Lock()

    def _get_client(self) -> TelegramClientLib:
        if self._client is None:
            session: StringSession | str = (
                StringSession(self.session_string)
                if self.session_string
                else self.session_name
            )
            self._client = TelegramClientLib(session, self.api_id, self.api_hash)
        return self._client

    async def connect(self) -> None:
        """Connect to Telegram API using the stored session."""
        if self._is_connected:
            return

        client = self._get_client()
        await client.connect()
        if not await client.is_user_authorized():
            raise TelegramAPIError(
                "Telegram session is not authorized; run scripts/telegram_auth.py"
            )
        self._is_connected = True
        logger.info("telegram_client_connected")

    async def disconnect(self) -> None:
        if not self._is_connected or self._client is None:
            return

        await self._client.disconnect()
        self._is_connected = False
        logger.info("telegram_client_disconnected")

    def close(self) -> None:
        """Disconnect and stop the background event loop."""
        loop = self._loop
        if loop is not None and loop.is_running():
            self._run_in_loop(self.disconnect())
            loop.call_soon_threadsafe(loop.stop)
        self._client = None
        with self._native_lock:
            self._native_messages.clear()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def _loop_runner(self) -> None:
        """Background thread that owns the asyncio event loop."""

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        with self._loop_lock:
            self._loop = loop
            self._loop_ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            with self._loop_lock:
                self._loop = None
                self._loop_thread = None
                self._loop_ready.clear()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._loop_lock:
            if self._loop and self._loop.is_running():
                return self._loop

            self._loop_ready.clear()
            self._loop_thread = threading.Thread(
                target=self._loop_runner,
                name="TelegramClientLoop",
                daemon=True,
            )
            self._loop_thread.start()

        if not self._loop_ready.wait(timeout=10.0):
            raise TimeoutError("Telegram event loop failed to start within 10 seconds")
        assert self._loop is not None
        return self._loop

    def _run_in_loop(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run coroutine on the background loop and wait for its result."""

        loop = self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        return future.result(timeout=self._operation_timeout)

    async def _with_flood_retry(self, room_id: str, call: Any) -> Any:
        retry_count = 0
        while True:
            try:
                return await call()
            except FloodWaitError as error:
                retry_count += 1
                wait_seconds = int(getattr(error, "seconds", 10))
                logger.warning(
                    "telegram_flood_wait",
                    room_id=room_id,
                    wait_seconds=wait_seconds,
                    retry_count=retry_count,
                    max_retries=self._max_retries,
                )
                if retry_count >= self._max_retries:
                    raise RateLimitError(retry_after=wait_seconds) from error
                await asyncio.sleep(wait_seconds)

    async def _get_source_entity_async(self, room_id: str) -> SourceEntity:
        await self.connect()
        client = self._get_client()
        try:
            entity = await self._with_flood_retry(
                room_id, lambda: client.get_entity(_peer_argument(room_id))
            )
        except (ValueError, TypeError) as exc:
            logger.error("telegram_get_entity_failed", room_id=room_id, error=str(exc))
            raise TelegramAPIError(f"Cannot resolve room {room_id}: {exc}") from exc
        return SourceEntity(
            room_id=room_id,
            name=entity_display_name(entity),
            is_forum=bool(getattr(entity, "forum", False)),
        )

    def get_source_entity(self, room_id: str) -> SourceEntity:
        """Resolve a room id to its name and forum flag."""
        return self._run_in_loop(self._get_source_entity_async(room_id))

    async def _find_dialog_id_async(self, name: str) -> str | None:
        await self.connect()
        client = self._get_client()
        async for dialog in client.iter_dialogs():
            if dialog.name == name:
                return str(dialog.id)
        return None

    def find_dialog_id_by_name(self, name: str) -> str | None:
        """Look up a chat id among the account's dialogs by exact title."""
        return self._run_in_loop(self._find_dialog_id_async(name))

    async def _fetch_messages_async(
        self,
        room_id: str,
        min_id: int | None,
        limit: int,
        topic_id: int | None,
    ) -> list[RawMessage]:
        await self.connect()
        client = self._get_client()
        kwargs: dict[str, Any] = {"limit": limit}
        if min_id:
            kwargs["min_id"] = min_id
        if topic_id is not None:
            kwargs["reply_to"] = topic_id

        native = await self._with_flood_retry(
            room_id, lambda: client.get_messages(_peer_argument(room_id), **kwargs)
        )
        messages = [m for m in native if isinstance(m, tl_types.Message)]
        with self._native_lock:
            for message in messages:
                self._native_messages[(room_id, message.id)] = message
        logger.debug(
            "telegram_messages_fetched",
            room_id=room_id,
            topic_id=topic_id,
            count=len(messages),
        )
        return [convert_message(message, room_id) for message in messages]

    def fetch_messages(
        self,
        room_id: str,
        min_id: int | None = None,
        limit: int = FETCH_BATCH_LIMIT,
        topic_id: int | None = None,
    ) -> list[RawMessage]:
        """Fetch up to ``limit`` messages newer than ``min_id``.

        Args:
            room_id: Chat id
            min_id: Exclusive lower bound for message ids
            limit: Maximum messages to fetch
            topic_id: Forum topic to restrict the fetch to

        Returns:
            RawMessage list, newest first
        """
        return self._run_in_loop(
            self._fetch_messages_async(room_id, min_id, limit, topic_id)
        )

    async def _download_media_async(self, message: RawMessage) -> bytes | None:
        await self.connect()
        client = self._get_client()
        with self._native_lock:
            native = self._native_messages.get((message.room_id, message.message_id))
        if native is None:
            native = await client.get_messages(
                _peer_argument(message.room_id), ids=message.message_id
            )
        if native is None:
            return None
        try:
            data = await client.download_media(native, file=bytes)
        except FileReferenceExpiredError as exc:
            raise FatalSourceError(
                message.room_id, "telegram file reference expired"
            ) from exc
        except Exception as exc:
            if FILE_REFERENCE_EXPIRED in str(exc):
                raise FatalSourceError(
                    message.room_id, "telegram file reference expired"
                ) from exc
            raise MediaDownloadError(
                f"Download of message {message.message_id} failed: {exc}"
            ) from exc
        return data if isinstance(data, bytes) else None

    def download_media(self, message: RawMessage) -> bytes | None:
        """Download the attachment of a fetched message as bytes.

        Raises:
            FatalSourceError: When the platform reports an expired file reference
            MediaDownloadError: On any other download failure
        """
        return self._run_in_loop(self._download_media_async(message))

    async def _get_author_info_async(self, message: RawMessage) -> AuthorInfo | None:
        if message.forwarded_from_name:
            return AuthorInfo(first_name=message.forwarded_from_name)
        if not message.author_id:
            return None
        await self.connect()
        client = self._get_client()
        try:
            entity = await client.get_entity(int(message.author_id))
        except (ValueError, TypeError) as exc:
            logger.warning(
                "telegram_author_unresolved",
                room_id=message.room_id,
                author_id=message.author_id,
                error=str(exc),
            )
            return None
        return AuthorInfo(
            first_name=getattr(entity, "first_name", None),
            last_name=getattr(entity, "last_name", None),
            username=getattr(entity, "username", None),
            title=getattr(entity, "title", None),
        )

    def get_author_info(self, message: RawMessage) -> AuthorInfo | None:
        """Profile of the message's original author, None when unresolvable."""
        return self._run_in_loop(self._get_author_info_async(message))

    def forget_room(self, room_id: str) -> None:
        """Drop cached native messages of a room once it has been processed."""
        with self._native_lock:
            for key in [key for key in self._native_messages if key[0] == room_id]:
                del self._native_messages[key]
