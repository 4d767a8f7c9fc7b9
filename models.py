#!/usr/bin/env python3
"""
Data types and database operations for the Feed Updater.

This module contains the feed/entry data types shared across the update
pipeline and the DatabaseQueue that serializes every SQLite operation through
a single worker task, providing a clean separation between data access and
business logic.
"""

from os import path, access, R_OK
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from dataclasses import dataclass
from enum import Enum
from sqlite3 import connect, Row, Error
from uuid import uuid4
from typing import Any, Dict, Iterable, List, Optional, Union

from config import config, get_logger
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Sentinel next_update_time values (regular values are Unix timestamps >= 0)
NEXT_UPDATE_NEVER = -1
NEXT_UPDATE_ON_APP_LAUNCH = -2


class UpdateMode(Enum):
    """Refresh cadence policy of a feed, stored by name in feeds.update_mode."""

    DEFAULT = "DEFAULT"
    DISABLED = "DISABLED"
    ON_APP_LAUNCH = "ON_APP_LAUNCH"
    ADAPTIVE = "ADAPTIVE"
    EVERY_15_MINUTES = "EVERY_15_MINUTES"
    EVERY_30_MINUTES = "EVERY_30_MINUTES"
    HOURLY = "HOURLY"
    EVERY_2_HOURS = "EVERY_2_HOURS"
    EVERY_3_HOURS = "EVERY_3_HOURS"
    EVERY_4_HOURS = "EVERY_4_HOURS"
    EVERY_6_HOURS = "EVERY_6_HOURS"
    EVERY_8_HOURS = "EVERY_8_HOURS"
    EVERY_12_HOURS = "EVERY_12_HOURS"
    DAILY = "DAILY"

    @classmethod
    def parse(cls, value: Optional[str]) -> "UpdateMode":
        """Parse a stored mode name, falling back to DEFAULT for unknown values."""
        if not value:
            return cls.DEFAULT
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            logger.warning(f"Unknown update mode '{value}', using DEFAULT")
            return cls.DEFAULT


class UpdateOutcome(Enum):
    """Result of one update cycle."""

    CONTENT_CHANGED = "content-changed"
    UNMODIFIED = "unmodified"
    FAILED = "failed"


@dataclass(frozen=True)
class Source:
    """The subset of a feed row needed to run one update cycle."""

    id: int
    url: str
    update_mode: UpdateMode
    next_update_retry: int = 0
    http_etag: Optional[str] = None
    http_last_modified: Optional[str] = None

    @classmethod
    def from_row(cls, row: Row) -> "Source":
        return cls(
            id=row['id'],
            url=row['url'],
            update_mode=UpdateMode.parse(row['update_mode']),
            next_update_retry=row['next_update_retry'] or 0,
            http_etag=row['http_etag'],
            http_last_modified=row['http_last_modified'],
        )


@dataclass(frozen=True)
class FeedMetadata:
    """Feed-level event: emitted at most once per parse."""

    title: Optional[str]
    link: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class ParsedEntry:
    """Entry-level event: emitted once per entry, in document order."""

    uid: str
    title: Optional[str] = None
    link: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    publish_time: Optional[int] = None
    publish_time_text: Optional[str] = None


FeedEvent = Union[FeedMetadata, ParsedEntry]

_SOURCE_COLUMNS = "id, url, update_mode, next_update_retry, http_etag, http_last_modified"

# Columns the update ledger is allowed to write through update_source()
WRITABLE_FEED_COLUMNS = frozenset({
    'title',
    'link',
    'language',
    'http_etag',
    'http_last_modified',
    'last_update_time',
    'last_update_error',
    'next_update_time',
    'next_update_retry',
})


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


class DatabaseQueue:
    """A queue for database operations so only one task ever touches the connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the database worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting so nothing hangs on shutdown
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": RuntimeError("Database worker stopped")})
            event.set()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        raise AttributeError(f"Unknown operation: {operation_name}")
                    result = method(**params)
                    self.results[operation_id] = {"result": result}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result.

        Exceptions raised by the operation are re-raised here, in the caller.
        """
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Source Operations
    def get_source(self, source_id: int) -> Optional[Source]:
        """Load one source by id, or None if it does not exist."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {_SOURCE_COLUMNS} FROM feeds WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return Source.from_row(row) if row else None
        finally:
            cursor.close()

    def query_outdated_sources(self, now: int, app_launch: bool = False, lookahead_seconds: int = 0) -> List[Source]:
        """List sources whose next update time has passed.

        On app launch, sources in ON_APP_LAUNCH mode are included too, as are
        sources that would become due within the lookahead window.
        """
        due_before = now + lookahead_seconds if app_launch else now
        query = f"SELECT {_SOURCE_COLUMNS} FROM feeds WHERE (next_update_time >= 0 AND next_update_time <= ?)"
        params: List[Any] = [due_before]
        if app_launch:
            query += " OR next_update_time = ?"
            params.append(NEXT_UPDATE_ON_APP_LAUNCH)
        query += " ORDER BY next_update_time, id"

        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def get_earliest_next_update_time(self) -> Optional[int]:
        """Return the earliest scheduled update time, ignoring non-timed sources."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MIN(next_update_time) FROM feeds WHERE next_update_time >= 0")
            row = cursor.fetchone()
            return row[0] if row and row[0] is not None else None
        finally:
            cursor.close()

    def get_recent_publish_times(self, source_id: int, limit: int = 10) -> List[int]:
        """Return the newest known entry publish times of a source, newest first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT publish_time FROM entries
                WHERE feed_id = ? AND publish_time IS NOT NULL
                ORDER BY publish_time DESC
                LIMIT ?
                """,
                (source_id, limit),
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            cursor.close()

    def update_source(self, source_id: int, fields: Dict[str, Any]) -> bool:
        """Apply a partial update to a feed row and commit it.

        Only the columns present in ``fields`` are written.

        Returns:
            True if a row was updated, False if the feed no longer exists
        """
        try:
            updated = self._update_source(self.conn.cursor(), source_id, fields)
            self.conn.commit()
            return updated
        except Exception:
            self.conn.rollback()
            raise

    def _update_source(self, cursor, source_id: int, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - WRITABLE_FEED_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update feed columns: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [fields[column] for column in columns]
        params.append(source_id)
        cursor.execute(f"UPDATE feeds SET {assignments} WHERE id = ?", params)
        return cursor.rowcount > 0

    # Entry Operations
    def upsert_entry(self, source_id: int, entry: ParsedEntry, now: int) -> bool:
        """Merge a single parsed entry and commit it.

        Returns:
            True if a new row was inserted, False if an existing row was updated
        """
        try:
            inserted = self._upsert_entry(self.conn.cursor(), source_id, entry, now)
            self.conn.commit()
            return inserted
        except Exception:
            self.conn.rollback()
            raise

    def _upsert_entry(self, cursor, source_id: int, entry: ParsedEntry, now: int) -> bool:
        cursor.execute(
            """
            UPDATE entries
            SET title = ?, link = ?, content = ?, author = ?, publish_time = ?, update_time = ?
            WHERE feed_id = ? AND uid = ?
            """,
            (entry.title, entry.link, entry.content, entry.author, entry.publish_time, now, source_id, entry.uid),
        )
        if cursor.rowcount > 0:
            return False

        cursor.execute(
            """
            INSERT INTO entries (feed_id, uid, title, link, content, author, publish_time, insert_time, update_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (source_id, entry.uid, entry.title, entry.link, entry.content, entry.author, entry.publish_time, now, now),
        )
        return True

    def merge_feed_content(
        self,
        source_id: int,
        events: Iterable[FeedEvent],
        ledger_fields: Dict[str, Any],
        now: int,
    ) -> Dict[str, int]:
        """Apply one fetch worth of parsed events and the success ledger atomically.

        The feed metadata event is written together with ``ledger_fields``;
        every entry event is upserted by (feed, uid). Nothing is committed
        unless every event applies cleanly.

        Returns:
            Counts of inserted and updated entries
        """
        counts = {'inserted': 0, 'updated': 0}
        ledger_written = False
        cursor = self.conn.cursor()
        try:
            for event in events:
                if isinstance(event, FeedMetadata):
                    fields = dict(ledger_fields)
                    if event.title:
                        fields['title'] = event.title
                    fields['link'] = event.link
                    fields['language'] = event.language
                    self._update_source(cursor, source_id, fields)
                    ledger_written = True
                elif isinstance(event, ParsedEntry):
                    if self._upsert_entry(cursor, source_id, event, now):
                        counts['inserted'] += 1
                    else:
                        counts['updated'] += 1
                else:
                    raise TypeError(f"Unsupported feed event: {type(event).__name__}")

            if not ledger_written:
                self._update_source(cursor, source_id, dict(ledger_fields))

            self.conn.commit()
            return counts
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    # Status Operations
    def get_status_counts(self, now: int) -> Dict[str, int]:
        """Summarize the store for status reporting."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM feeds")
            total_feeds = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM entries")
            total_entries = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM feeds WHERE next_update_retry > 0")
            failing_feeds = cursor.fetchone()[0]
            cursor.execute(
                "SELECT COUNT(*) FROM feeds WHERE next_update_time >= 0 AND next_update_time <= ?",
                (now,),
            )
            due_feeds = cursor.fetchone()[0]
            cursor.close()
            return {
                'feeds': total_feeds,
                'entries': total_entries,
                'failing_feeds': failing_feeds,
                'due_feeds': due_feeds,
            }
        except Error as e:
            logger.error(f"Error collecting status counts: {e}")
            return {'feeds': 0, 'entries': 0, 'failing_feeds': 0, 'due_feeds': 0}
