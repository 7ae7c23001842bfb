"""
Mail Dispatcher

Delivers a single plain-text message over implicit TLS (SMTPS) with
certificate and hostname verification, then reports success or the failure
cause. Retrying is the caller's job.
"""
import logging
import smtplib
import ssl
from email.errors import MessageError
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional, Tuple

from .config import SMTPConfig
from .logs import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


class MailDispatcher:
    """Send one email per call through the configured relay"""

    def __init__(self, config: SMTPConfig, smtp_factory=smtplib.SMTP_SSL,
                 ssl_context: Optional[ssl.SSLContext] = None):
        self.config = config
        self._smtp_factory = smtp_factory
        # create_default_context() has CERT_REQUIRED and check_hostname on
        self.ssl_context = ssl_context or ssl.create_default_context()

    def build_message(self, to: str, subject: str, body: str) -> MIMEText:
        """Create the message envelope: From, To, Subject, text/plain body"""
        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = formataddr((self.config.from_name, self.config.from_email))
        msg["To"] = formataddr(("", to))
        # a subject is a single header line
        msg["Subject"] = " ".join(subject.splitlines())
        return msg

    def send(self, to: str, subject: str, body: str) -> Tuple[bool, Optional[str]]:
        """
        Attempt one delivery.

        Returns:
            Tuple of (success: bool, error_message: Optional[str])
        """
        try:
            msg = self.build_message(to, subject, body)
        except MessageError as e:
            log.error("Cannot build message for %s: %s", to, e)
            return False, f"invalid message: {e}"
        try:
            with self._smtp_factory(self.config.host, self.config.port,
                                    timeout=self.config.timeout,
                                    context=self.ssl_context) as server:
                server.login(self.config.user, self.config.password)
                server.send_message(msg, from_addr=self.config.from_email, to_addrs=[to])
            log.info("Email sent to %s", to)
            return True, None
        except smtplib.SMTPAuthenticationError as e:
            log.error("SMTP auth error: %s", e)
            return False, f"authentication failed: {e}"
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            log.error("SMTP delivery to %s failed: %s", to, e)
            return False, str(e) or e.__class__.__name__
