"""
Intake Loop

starting -> backlog-draining -> steady-state

Subscribes to the ticket channel, processes whatever a previous run left
behind, then forever drains buffered notifications and idles for the poll
interval between ticks. A stop event ends the loop at the next tick.
"""
import logging
import re
import signal
import threading
import time
from collections import deque
from typing import Deque, Optional, Tuple

import psycopg2

from .logs import LOGGER_NAME
from .notifier_client import NotifierClient
from .systemd import SystemdNotifier
from .ticket_processor import TicketOutcome, TicketProcessor
from .ticket_store import TicketStore

log = logging.getLogger(LOGGER_NAME)

STATE_STARTING = "starting"
STATE_BACKLOG = "backlog-draining"
STATE_STEADY = "steady-state"
STATE_STOPPED = "stopped"

CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)

TICKET_ID_PATTERN = re.compile(r"[0-9]+")


class StartupError(Exception):
    """The worker cannot begin: no database or no subscription"""


class IntakeLoop:
    """Main service orchestrator"""

    def __init__(self, client: NotifierClient, store: TicketStore, processor: TicketProcessor,
                 channel: str = "new_ticket", poll_interval: float = 1,
                 stop_event: Optional[threading.Event] = None,
                 systemd: Optional[SystemdNotifier] = None,
                 stats_interval: float = 300, reconnect_delay: float = 5,
                 clock=time.monotonic):
        self.client = client
        self.store = store
        self.processor = processor
        self.channel = channel
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.systemd = systemd or SystemdNotifier()
        self.stats_interval = stats_interval
        self.reconnect_delay = reconnect_delay
        self._clock = clock
        self.state = STATE_STARTING
        self.needs_reconnect = False
        self.deferred: Deque[Tuple[int, bool]] = deque()
        self.last_stats_report = clock()

    # ───── lifecycle ─────────────────────────────────────────
    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        log.info("Received signal %d, initiating shutdown", signum)
        self.stop()

    def stop(self):
        self.stop_event.set()
        self.systemd.status("Shutting down gracefully")

    def start(self):
        """Connect and subscribe; any failure here is fatal"""
        self.state = STATE_STARTING
        try:
            if self.client.conn is None:
                self.client.connect()
            self.client.subscribe(self.channel)
        except psycopg2.Error as e:
            self.systemd.status("Database connection or LISTEN failed")
            raise StartupError(f"LISTEN {self.channel} failed: {e}") from e

    def run(self):
        self.start()
        log.info("Email sender started. Waiting for new tickets...")
        # READY=1 as soon as LISTEN is in place, before the backlog
        self.systemd.ready()

        try:
            self.drain_backlog()
        except CONNECTION_ERRORS as e:
            log.error("Backlog scan failed, retrying after reconnect: %s", e)
            self.needs_reconnect = True

        self.state = STATE_STEADY
        self.systemd.status(f"Listening on {self.channel}")

        while not self.stop_event.is_set():
            self.systemd.watchdog()
            self._maybe_report_stats()
            try:
                if self.needs_reconnect:
                    self._reconnect()
                self.tick()
            except CONNECTION_ERRORS as e:
                log.error("DB connection lost; reconnecting in %ds: %s", self.reconnect_delay, e)
                self.needs_reconnect = True
                self.systemd.status("Database connection lost")
                self.stop_event.wait(self.reconnect_delay)
                continue
            self.stop_event.wait(self.poll_interval)

        self.state = STATE_STOPPED
        self._report_statistics()
        log.info("Intake loop stopped")

    # ───── work ──────────────────────────────────────────────
    def drain_backlog(self) -> int:
        """Process tickets left in received or processing by an earlier run"""
        self.state = STATE_BACKLOG
        ticket_ids = self.store.pending_ids()
        log.info("Backlog of %d pending tickets", len(ticket_ids))
        for ticket_id in ticket_ids:
            if self.stop_event.is_set():
                break
            self._handle(ticket_id, resume=True)
            self.systemd.watchdog()
        return len(ticket_ids)

    def tick(self) -> int:
        """Drain deferred tickets and every buffered notification once"""
        handled = self._retry_deferred()
        for payload in self.client.poll_events():
            ticket_id = self._parse_ticket_id(payload)
            if ticket_id is None:
                continue
            log.info("Received notification for ticket ID: %s", ticket_id)
            self._handle(ticket_id)
            handled += 1
        return handled

    def _handle(self, ticket_id: int, resume: bool = False) -> Optional[TicketOutcome]:
        # Anything queued behind a cool-down keeps its place in line
        if self.deferred:
            self.deferred.append((ticket_id, resume))
            return None
        outcome = self.processor.process_ticket(ticket_id, resume=resume)
        if outcome is TicketOutcome.COOLING_DOWN:
            self.deferred.append((ticket_id, resume))
        return outcome

    def _retry_deferred(self) -> int:
        # nothing to retry until a non-blocking cool-down has run out
        if self.processor.backoff.remaining() > 0:
            return 0
        handled = 0
        while self.deferred and not self.stop_event.is_set():
            ticket_id, resume = self.deferred[0]
            outcome = self.processor.process_ticket(ticket_id, resume=resume)
            if outcome is TicketOutcome.COOLING_DOWN:
                break
            self.deferred.popleft()
            handled += 1
        return handled

    @staticmethod
    def _parse_ticket_id(payload: str) -> Optional[int]:
        if payload is not None and TICKET_ID_PATTERN.fullmatch(payload.strip()):
            return int(payload)
        log.error("Invalid ticket id received in notification payload: %r", payload)
        return None

    def _reconnect(self):
        self.client.reconnect()
        self.needs_reconnect = False
        log.info("Reconnected; rescanning for tickets missed while disconnected")
        self.systemd.status(f"Listening on {self.channel}")
        self.drain_backlog()
        self.state = STATE_STEADY

    # ───── monitoring ───────────────────────────────────────
    def _maybe_report_stats(self):
        if self._clock() - self.last_stats_report > self.stats_interval:
            self._report_statistics()

    def _report_statistics(self):
        stats = self.processor.get_stats()
        log.info("Ticket statistics: sent=%d, failed=%d, rejected=%d, skipped=%d, "
                 "errors=%d, cooldowns=%d, consecutive_failures=%d, deferred=%d, "
                 "cooldown_remaining=%ds",
                 stats["sent"], stats["failed"], stats["rejected"], stats["skipped"],
                 stats["errors"], stats["cooldowns"], stats["consecutive_failures"],
                 len(self.deferred), self.processor.backoff.remaining())
        self.systemd.status(f"Sent: {stats['sent']}, Failed: {stats['failed']}, "
                            f"Deferred: {len(self.deferred)}")
        self.last_stats_report = self._clock()
