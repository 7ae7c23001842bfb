"""
Ticket Processor

Drives one ticket through claim -> fetch -> validate -> send and keeps the
consecutive-failure accounting that feeds the send backoff.

    received   --claim-->         processing
    processing --invalid addr-->  processing  (sent_at stamped)
    processing --send ok-->       completed   (sent_at stamped)
    processing --send fail-->     processing  (left for the next backlog scan)
"""
import logging
from enum import Enum
from typing import Callable, Dict

from .backoff import SendBackoff
from .logs import LOGGER_NAME
from .mail_dispatcher import MailDispatcher
from .ticket_store import TicketStore
from .validation import is_valid_email

log = logging.getLogger(LOGGER_NAME)


class TicketOutcome(Enum):
    SENT = "sent"
    SEND_FAILED = "send_failed"
    REJECTED = "rejected"
    NOT_CLAIMED = "not_claimed"
    NOT_FOUND = "not_found"
    COOLING_DOWN = "cooling_down"
    ERROR = "error"


class TicketProcessor:
    """Per-ticket state machine; never raises"""

    def __init__(self, store: TicketStore, dispatcher: MailDispatcher, backoff: SendBackoff,
                 validator: Callable[[str], bool] = is_valid_email):
        self.store = store
        self.dispatcher = dispatcher
        self.backoff = backoff
        self.validator = validator
        self.stats = {
            "sent": 0,
            "failed": 0,
            "rejected": 0,
            "skipped": 0,
            "errors": 0,
        }

    def process_ticket(self, ticket_id: int, resume: bool = False) -> TicketOutcome:
        """
        Process one ticket id.

        ``resume`` is set by the backlog scan: a ticket a previous run left in
        processing cannot be claimed again, so the claim result is ignored and
        the fetch decides whether there is anything to do.
        """
        try:
            return self._process(ticket_id, resume)
        except Exception as e:
            log.exception("Unexpected error processing ticket %s: %s", ticket_id, e)
            self.stats["errors"] += 1
            return TicketOutcome.ERROR

    def _process(self, ticket_id: int, resume: bool) -> TicketOutcome:
        if not self.backoff.acquire():
            log.warning("Sends paused, deferring ticket %s", ticket_id)
            return TicketOutcome.COOLING_DOWN

        if not self.store.claim(ticket_id) and not resume:
            log.info("Ticket %s not claimable (already claimed or missing), skipping", ticket_id)
            self.stats["skipped"] += 1
            return TicketOutcome.NOT_CLAIMED

        ticket = self.store.fetch(ticket_id)
        if ticket is None:
            log.warning("No processing ticket found with ID %s", ticket_id)
            self.stats["skipped"] += 1
            return TicketOutcome.NOT_FOUND

        log.info("Processing ticket %s: to=%s subject=%r", ticket_id, ticket.email, ticket.subject)

        if not self.validator(ticket.email):
            log.error("Invalid email format for ticket %s: %r", ticket_id, ticket.email)
            self.store.mark_rejected(ticket_id)
            self.stats["rejected"] += 1
            return TicketOutcome.REJECTED

        success, error = self.dispatcher.send(ticket.email, ticket.subject, ticket.body)
        if success:
            if not self.store.mark_completed(ticket_id):
                log.error("Ticket %s was sent but its status could not be updated", ticket_id)
            self.backoff.record_success()
            self.stats["sent"] += 1
            log.info("Ticket %s completed", ticket_id)
            return TicketOutcome.SENT

        log.error("Failed to send ticket %s to %s, keeping status as processing: %s",
                  ticket_id, ticket.email, error)
        self.backoff.record_failure()
        self.store.record_failure(ticket_id, error)
        self.stats["failed"] += 1
        return TicketOutcome.SEND_FAILED

    def get_stats(self) -> Dict[str, int]:
        stats = self.stats.copy()
        stats["cooldowns"] = self.backoff.cooldowns
        stats["consecutive_failures"] = self.backoff.failure_count
        return stats
