import logging

import sdnotify

from .logs import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


class SystemdNotifier:
    """Wrapper for systemd notifications"""

    def __init__(self, notifier=None):
        self.notifier = notifier if notifier is not None else sdnotify.SystemdNotifier()

    def notify(self, message: str):
        """Send notification to systemd"""
        try:
            self.notifier.notify(message)
        except Exception as e:
            log.warning("Failed to send systemd notification: %s", e)

    def ready(self):
        self.notify("READY=1")

    def watchdog(self):
        self.notify("WATCHDOG=1")

    def status(self, status: str):
        self.notify(f"STATUS={status}")

    def stopping(self):
        self.notify("STOPPING=1")
