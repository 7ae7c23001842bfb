"""Notification-driven worker that turns new rows in ``tickets`` into emails"""

__version__ = "1.0.0"
