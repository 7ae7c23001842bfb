"""
Send backoff

Counts consecutive send failures across all tickets and, once the threshold
is reached, imposes a cool-down before the next ticket is attempted. The
relay is treated as down for everyone, not per ticket.

Two modes:
  blocking      the gate waits out the cool-down itself (interruptible by the
                stop event) and then lets the caller continue
  non-blocking  the gate reports "cooling down" until the cool-down has
                elapsed and the caller decides what to do with the work
"""
import logging
import threading
import time
from typing import Callable, Optional

from .logs import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


class SendBackoff:
    """Consecutive-failure counter with a fixed cool-down"""

    def __init__(self, threshold: int = 5, cooldown: float = 900, blocking: bool = True,
                 stop_event: Optional[threading.Event] = None, clock=time.monotonic,
                 heartbeat: Optional[Callable[[], None]] = None, heartbeat_interval: float = 1):
        self.threshold = threshold
        self.cooldown = cooldown
        self.blocking = blocking
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        # called between wait slices of a blocking cool-down (systemd watchdog)
        self.heartbeat = heartbeat
        self.heartbeat_interval = heartbeat_interval
        self.failure_count = 0
        self.cooling_since: Optional[float] = None
        self.cooldowns = 0

    @property
    def tripped(self) -> bool:
        return self.failure_count >= self.threshold

    def record_success(self):
        if self.failure_count:
            log.info("Send succeeded, resetting failure counter (was %d)", self.failure_count)
        self.failure_count = 0

    def record_failure(self) -> int:
        self.failure_count += 1
        log.error("Email sending failure detected (%d/%d)", self.failure_count, self.threshold)
        return self.failure_count

    def acquire(self) -> bool:
        """
        Gate the next send attempt.

        Returns True when the caller may go ahead. Only returns False in
        non-blocking mode while cooling down, or when the stop event fires
        during a blocking cool-down.
        """
        if not self.tripped:
            return True

        if self.blocking:
            log.error("Too many send failures, waiting %d seconds before trying again",
                      self.cooldown)
            self.cooldowns += 1
            if not self._wait_out_cooldown():
                log.info("Cool-down interrupted by shutdown")
                return False
            self.failure_count = 0
            log.info("Cool-down finished, resuming sends")
            return True

        now = self._clock()
        if self.cooling_since is None:
            log.error("Too many send failures, pausing sends for %d seconds", self.cooldown)
            self.cooling_since = now
            self.cooldowns += 1
            return False
        if now - self.cooling_since < self.cooldown:
            return False
        self.cooling_since = None
        self.failure_count = 0
        log.info("Cool-down finished, resuming sends")
        return True

    def remaining(self) -> float:
        """Seconds left in a non-blocking cool-down, 0 when sends are allowed"""
        if self.cooling_since is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self.cooling_since))

    def _wait_out_cooldown(self) -> bool:
        """Wait for the cool-down in heartbeat-sized slices; False if stopped"""
        left = self.cooldown
        while left > 0:
            step = min(left, self.heartbeat_interval) if self.heartbeat else left
            if self.stop_event.wait(step):
                return False
            left -= step
            if self.heartbeat:
                self.heartbeat()
        return True
