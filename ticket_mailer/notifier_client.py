"""
Notifier Client

One live psycopg2 connection used both for LISTEN/NOTIFY and for the ticket
queries. The connection runs in autocommit mode so LISTEN takes effect
immediately and every conditional UPDATE commits on its own.
"""
import logging
import time
from typing import Any, Iterator, List, NamedTuple, Optional, Sequence

import psycopg2
import psycopg2.extensions

from .config import DatabaseConfig
from .logs import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


class QueryResult(NamedTuple):
    rows: List[tuple]
    rowcount: int


class NotifierClient:
    """Subscribe, poll notifications and run queries over a single connection"""

    def __init__(self, config: DatabaseConfig, connect=psycopg2.connect,
                 max_retries: int = 3, retry_delay: int = 5, sleep=time.sleep):
        self.config = config
        self._connect = connect
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.conn: Optional[psycopg2.extensions.connection] = None
        self.channels: List[str] = []

    def connect(self) -> psycopg2.extensions.connection:
        """Connect to the database, retrying transient failures"""
        for attempt in range(self.max_retries):
            try:
                self.conn = self._connect(**self.config.connect_kwargs())
                self.conn.autocommit = True
                log.info("Connected to PostgreSQL at %s", self.config.describe())
                return self.conn
            except psycopg2.OperationalError as e:
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (attempt + 1)
                    log.warning("Database connection failed, retrying in %ds: %s",
                                wait_time, e)
                    self._sleep(wait_time)
                else:
                    log.critical("Failed to connect to database after %d attempts",
                                 self.max_retries)
                    raise

    def close(self):
        if self.conn is not None and not self.conn.closed:
            self.conn.close()
        self.conn = None

    def reconnect(self):
        """Drop the current connection, open a new one and restore subscriptions"""
        channels = list(self.channels)
        self.close()
        self.channels = []
        self.connect()
        for channel in channels:
            self.subscribe(channel)

    def subscribe(self, channel: str):
        """LISTEN on ``channel``; raises psycopg2.Error if the server refuses"""
        with self.conn.cursor() as cur:
            cur.execute(f"LISTEN {channel};")
        if channel not in self.channels:
            self.channels.append(channel)
        log.info("Listening for notifications on channel: %s", channel)

    def poll_events(self) -> Iterator[str]:
        """
        Refresh the input buffer and yield every pending notification payload.

        Non-blocking: yields nothing when no notification is buffered.
        psycopg2 also appends notifications that arrive during any query on
        this connection, so those queued while earlier tickets are being
        processed are yielded by the same call.
        """
        self.conn.poll()
        while self.conn.notifies:
            notify = self.conn.notifies.pop(0)
            log.debug("Notification on %s: %r", notify.channel, notify.payload)
            yield notify.payload

    def query(self, statement: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        """Run one statement; raises psycopg2.Error on failure"""
        with self.conn.cursor() as cur:
            cur.execute(statement, params)
            rows = cur.fetchall() if cur.description is not None else []
            return QueryResult(rows=rows, rowcount=cur.rowcount)

    def ping(self) -> bool:
        try:
            self.query("SELECT 1")
            return True
        except psycopg2.Error as e:
            log.warning("Database ping failed: %s", e)
            return False
