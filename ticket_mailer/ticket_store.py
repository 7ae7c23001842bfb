"""
Ticket Store

The conditional statements the pipeline runs against the ``tickets`` table.
Database errors are logged here and reported as "nothing happened" so a bad
row or a flaky query never takes the worker down.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import psycopg2

from .logs import LOGGER_NAME
from .notifier_client import NotifierClient

log = logging.getLogger(LOGGER_NAME)

MAX_ERROR_LENGTH = 500


class TicketStatus(Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass
class Ticket:
    id: int
    email: str
    subject: str
    body: str


class TicketStore:
    """Claim, fetch and finalise tickets through the notifier client's connection"""

    def __init__(self, client: NotifierClient, track_failures: bool = True):
        self.client = client
        self.track_failures = track_failures

    def claim(self, ticket_id: int) -> bool:
        """Move a ticket from received to processing; True only if this call won"""
        sql = """
            UPDATE tickets
            SET status = %s
            WHERE id = %s AND status = %s
        """
        try:
            result = self.client.query(sql, (TicketStatus.PROCESSING.value, ticket_id,
                                             TicketStatus.RECEIVED.value))
        except psycopg2.Error as e:
            log.error("Failed to update ticket %s to processing: %s", ticket_id, e)
            return False
        return result.rowcount == 1

    def fetch(self, ticket_id: int) -> Optional[Ticket]:
        """Load a ticket that is currently in processing"""
        sql = """
            SELECT email, subject, body
            FROM tickets
            WHERE id = %s AND status = %s
        """
        try:
            result = self.client.query(sql, (ticket_id, TicketStatus.PROCESSING.value))
        except psycopg2.Error as e:
            log.error("Failed to fetch ticket %s: %s", ticket_id, e)
            return None
        if not result.rows:
            return None
        email, subject, body = result.rows[0]
        return Ticket(id=ticket_id, email=email, subject=subject, body=body)

    def mark_completed(self, ticket_id: int) -> bool:
        sql = """
            UPDATE tickets
            SET status = %s,
                sent_at = NOW()
            WHERE id = %s
        """
        try:
            self.client.query(sql, (TicketStatus.COMPLETED.value, ticket_id))
        except psycopg2.Error as e:
            log.error("Failed to mark ticket %s completed: %s", ticket_id, e)
            return False
        log.debug("Ticket %s marked as completed", ticket_id)
        return True

    def mark_rejected(self, ticket_id: int) -> bool:
        """
        Stamp sent_at on a ticket that will never be sent.

        The status is left at processing, exactly as earlier releases did, so
        these rows look like in-flight work to anything reading the table.
        """
        sql = """
            UPDATE tickets
            SET status = %s,
                sent_at = NOW()
            WHERE id = %s
        """
        try:
            self.client.query(sql, (TicketStatus.PROCESSING.value, ticket_id))
        except psycopg2.Error as e:
            log.error("Failed to mark ticket %s rejected: %s", ticket_id, e)
            return False
        return True

    def record_failure(self, ticket_id: int, error_message: str) -> bool:
        """Bump retry_count and keep the last send error; status is untouched"""
        if not self.track_failures:
            return False
        sql = """
            UPDATE tickets
            SET retry_count = COALESCE(retry_count, 0) + 1,
                last_error = %s
            WHERE id = %s
        """
        try:
            self.client.query(sql, ((error_message or "unknown error")[:MAX_ERROR_LENGTH],
                                    ticket_id))
        except psycopg2.Error as e:
            log.warning("Failed to record error for ticket %s: %s", ticket_id, e)
            return False
        return True

    def pending_ids(self) -> List[int]:
        """Ids of tickets left in received or processing, in the table's natural order"""
        sql = "SELECT id FROM tickets WHERE status IN (%s, %s)"
        try:
            result = self.client.query(sql, (TicketStatus.RECEIVED.value,
                                             TicketStatus.PROCESSING.value))
        except psycopg2.OperationalError:
            raise
        except psycopg2.Error as e:
            log.error("Failed to fetch pending tickets: %s", e)
            return []
        return [int(row[0]) for row in result.rows]
