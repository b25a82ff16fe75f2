"""SQLite repository adapter for local storage.

Implements RepositoryProtocol with SQLite backend: the event store, the
scraping target checkpoints and the geocode cache.
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Final

import pytz

from src.config.logging_config import get_logger
from src.domain.exceptions import MergeConflictError, RepositoryError
from src.domain.models import (
    EventCandidate,
    EventRecord,
    PersistedEvent,
    ScrapingTarget,
)
from src.services.slug import generate_slug

logger = get_logger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

# Columns written on insert and overwritten by an upsert on the same slug
_EVENT_DATA_COLUMNS: Final[tuple[str, ...]] = (
    "name",
    "start_at",
    "end_at",
    "description",
    "description_original",
    "summary",
    "address",
    "latitude",
    "longitude",
    "price",
    "contact",
    "host",
    "host_link",
    "source_url",
    "message_sender_id",
    "tags",
    "image_urls",
    "telegram_room_ids",
    "source",
)
_EVENT_JSON_COLUMNS: Final[frozenset[str]] = frozenset(
    {"address", "tags", "image_urls", "telegram_room_ids"}
)
_TARGET_COLUMNS: Final[frozenset[str]] = frozenset(
    {
        "room_id",
        "name",
        "last_message_id",
        "last_message_time",
        "messages_consumed",
        "scraped_events",
        "last_error",
        "last_run_finished_at",
        "default_address",
        "topic_ids",
    }
)
_TARGET_JSON_COLUMNS: Final[frozenset[str]] = frozenset({"default_address", "topic_ids"})


def _now() -> datetime:
    return datetime.now(tz=pytz.UTC)


def _dt_to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC).isoformat()


def _dt_from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return [item.strip() if isinstance(item, str) else item for item in value]
    return value


def _to_db_value(column: str, value: Any, json_columns: frozenset[str]) -> Any:
    if column in json_columns:
        return json.dumps(value or [])
    if isinstance(value, datetime):
        return _dt_to_db(value)
    return value


class SQLiteRepository:
    """SQLite-based repository for events, checkpoints and geocodes."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Open a connection; each call gets its own so threads never share one."""
        conn = sqlite3.connect(self.db_path, timeout=DEFAULT_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    start_at TEXT NOT NULL,
                    end_at TEXT,
                    description TEXT,
                    description_original TEXT,
                    summary TEXT,
                    address TEXT NOT NULL DEFAULT '[]',
                    latitude REAL,
                    longitude REAL,
                    price TEXT,
                    contact TEXT,
                    host TEXT,
                    host_link TEXT,
                    source_url TEXT,
                    message_sender_id TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    image_urls TEXT NOT NULL DEFAULT '[]',
                    telegram_room_ids TEXT NOT NULL DEFAULT '[]',
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_start_at ON events(start_at)"
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS scraping_targets (
                    room_id TEXT PRIMARY KEY,
                    name TEXT,
                    last_message_id INTEGER,
                    last_message_time TEXT,
                    messages_consumed INTEGER NOT NULL DEFAULT 0,
                    scraped_events INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_run_finished_at TEXT,
                    default_address TEXT NOT NULL DEFAULT '[]',
                    topic_ids TEXT NOT NULL DEFAULT '[]'
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS geocode_cache (
                    address TEXT PRIMARY KEY,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    cached_at TEXT NOT NULL
                )
            """
            )
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create schema: {e}") from e
        finally:
            conn.close()

    # Scraping targets

    def get_scraping_targets(self) -> list[ScrapingTarget]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM scraping_targets ORDER BY room_id"
            ).fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to load scraping targets: {e}") from e
        finally:
            conn.close()
        return [self._row_to_target(row) for row in rows]

    def get_scraping_target(self, room_id: str) -> ScrapingTarget | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM scraping_targets WHERE room_id = ?", (room_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to load scraping target: {e}") from e
        finally:
            conn.close()
        return self._row_to_target(row) if row else None

    def save_scraping_target(self, target: ScrapingTarget) -> None:
        """Insert a scraping target, replacing any existing one with that room id."""
        values = target.model_dump()
        columns = sorted(_TARGET_COLUMNS)
        conn = self._get_connection()
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO scraping_targets ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [_to_db_value(c, values[c], _TARGET_JSON_COLUMNS) for c in columns],
            )
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to save scraping target: {e}") from e
        finally:
            conn.close()

    def update_scraping_target(self, room_id: str, updates: dict[str, Any]) -> None:
        """Apply checkpoint updates to the target stored under ``room_id``.

        Args:
            room_id: Current room id of the target
            updates: ScrapingTarget field names mapped to new values;
                ``room_id`` itself may be updated to a resolved id

        Raises:
            RepositoryError: On unknown fields or storage errors
        """
        if not updates:
            return
        unknown = set(updates) - _TARGET_COLUMNS
        if unknown:
            raise RepositoryError(f"Unknown scraping target fields: {sorted(unknown)}")

        columns = list(updates)
        params = [_to_db_value(c, updates[c], _TARGET_JSON_COLUMNS) for c in columns]
        conn = self._get_connection()
        try:
            conn.execute(
                f"UPDATE scraping_targets SET {', '.join(f'{c} = ?' for c in columns)} "
                "WHERE room_id = ?",
                [*params, room_id],
            )
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to update scraping target: {e}") from e
        finally:
            conn.close()

    def _row_to_target(self, row: sqlite3.Row) -> ScrapingTarget:
        return ScrapingTarget(
            room_id=row["room_id"],
            name=row["name"],
            last_message_id=row["last_message_id"],
            last_message_time=_dt_from_db(row["last_message_time"]),
            messages_consumed=row["messages_consumed"],
            scraped_events=row["scraped_events"],
            last_error=row["last_error"],
            last_run_finished_at=_dt_from_db(row["last_run_finished_at"]),
            default_address=json.loads(row["default_address"] or "[]"),
            topic_ids=json.loads(row["topic_ids"] or "[]"),
        )

    # Events

    def get_event(self, event_id: int) -> PersistedEvent | None:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to load event: {e}") from e
        finally:
            conn.close()
        return self._row_to_event(row) if row else None

    def get_event_by_slug(self, slug: str) -> PersistedEvent | None:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM events WHERE slug = ?", (slug,)).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to load event by slug: {e}") from e
        finally:
            conn.close()
        return self._row_to_event(row) if row else None

    def list_events(self) -> list[PersistedEvent]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT * FROM events ORDER BY id").fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list events: {e}") from e
        finally:
            conn.close()
        return [self._row_to_event(row) for row in rows]

    def _event_values(self, event: EventRecord) -> dict[str, Any]:
        data = event.model_dump(include=set(_EVENT_DATA_COLUMNS))
        return {
            column: _to_db_value(column, _strip(data[column]), _EVENT_JSON_COLUMNS)
            for column in _EVENT_DATA_COLUMNS
        }

    def upsert_event(self, candidate: EventCandidate) -> PersistedEvent:
        """Insert an event, or overwrite the one sharing its slug.

        Strings are trimmed and the slug is derived again from the trimmed
        name and dates. An existing row keeps its id and created_at.

        Raises:
            RepositoryError: On storage errors
        """
        values = self._event_values(candidate)
        slug = generate_slug(values["name"], candidate.start_at, candidate.end_at)
        now = _dt_to_db(_now())
        columns = ["slug", *_EVENT_DATA_COLUMNS, "created_at", "updated_at"]
        params = [slug, *values.values(), now, now]
        assignments = ", ".join(
            f"{column} = excluded.{column}"
            for column in (*_EVENT_DATA_COLUMNS, "updated_at")
        )

        conn = self._get_connection()
        try:
            conn.execute(
                f"INSERT INTO events ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(slug) DO UPDATE SET {assignments}",
                params,
            )
            conn.commit()
            row = conn.execute("SELECT * FROM events WHERE slug = ?", (slug,)).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to upsert event: {e}") from e
        finally:
            conn.close()

        if row is None:
            raise RepositoryError(f"Event {slug} missing after upsert")
        return self._row_to_event(row)

    def update_event(self, event: PersistedEvent) -> PersistedEvent:
        """Overwrite the data columns of an existing event.

        Raises:
            MergeConflictError: When no row with the event's id exists
            RepositoryError: On storage errors
        """
        values = self._event_values(event)
        updated_at = _now()
        assignments = ", ".join(f"{column} = ?" for column in _EVENT_DATA_COLUMNS)

        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE events SET {assignments}, updated_at = ? WHERE id = ?",
                [*values.values(), _dt_to_db(updated_at), event.id],
            )
            conn.commit()
            updated = cursor.rowcount
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to update event: {e}") from e
        finally:
            conn.close()

        if updated == 0:
            raise MergeConflictError(event.id)
        return event.model_copy(update={"updated_at": updated_at})

    def delete_event(self, event_id: int) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to delete event: {e}") from e
        finally:
            conn.close()

    def get_referenced_image_urls(self) -> set[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT image_urls FROM events").fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to load image urls: {e}") from e
        finally:
            conn.close()
        urls: set[str] = set()
        for row in rows:
            urls.update(json.loads(row["image_urls"] or "[]"))
        return urls

    def _row_to_event(self, row: sqlite3.Row) -> PersistedEvent:
        start_at = _dt_from_db(row["start_at"])
        created_at = _dt_from_db(row["created_at"])
        updated_at = _dt_from_db(row["updated_at"])
        if start_at is None or created_at is None or updated_at is None:
            raise RepositoryError(f"Event row {row['id']} has missing timestamps")
        return PersistedEvent(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            start_at=start_at,
            end_at=_dt_from_db(row["end_at"]),
            description=row["description"],
            description_original=row["description_original"],
            summary=row["summary"],
            address=json.loads(row["address"] or "[]"),
            latitude=row["latitude"],
            longitude=row["longitude"],
            price=row["price"],
            contact=row["contact"],
            host=row["host"],
            host_link=row["host_link"],
            source_url=row["source_url"],
            message_sender_id=row["message_sender_id"],
            tags=json.loads(row["tags"] or "[]"),
            image_urls=json.loads(row["image_urls"] or "[]"),
            telegram_room_ids=json.loads(row["telegram_room_ids"] or "[]"),
            source=row["source"],
            created_at=created_at,
            updated_at=updated_at,
        )

    # Geocode cache

    def get_cached_geocode(self, address_key: str) -> tuple[float, float] | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT latitude, longitude FROM geocode_cache WHERE address = ?",
                (address_key,),
            ).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to read geocode cache: {e}") from e
        finally:
            conn.close()
        return (row["latitude"], row["longitude"]) if row else None

    def save_geocode(self, address_key: str, latitude: float, longitude: float) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO geocode_cache (address, latitude, longitude, cached_at)
                VALUES (?, ?, ?, ?)
                """,
                (address_key, latitude, longitude, _dt_to_db(_now())),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to write geocode cache: {e}") from e
        finally:
            conn.close()
