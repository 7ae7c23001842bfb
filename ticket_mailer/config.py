"""
Worker configuration

Read once from the environment (optionally seeded from a .env file) into an
immutable dataclass. Validation collects every problem instead of stopping at
the first, so a bad deployment reports all missing variables in one go.
"""
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv

DEFAULT_ENV_FILE = "/etc/ticket-mailer/.env"
DEFAULT_SENDER_NAME = "OpenFarm"

# Variable name -> human readable description used in error messages
REQUIRED_ENV = {
    "POSTGRES_HOST": "database host",
    "POSTGRES_PORT": "database port",
    "POSTGRES_DB": "database name",
    "POSTGRES_USER": "database user",
    "POSTGRES_PASSWORD": "database password",
    "GMAIL_EMAIL": "sender mailbox address",
    "GMAIL_APP_PASSWORD": "sender mailbox credential",
    "SMTPS_SERVER": "mail relay host",
    "SMTPS_PORT": "mail relay port",
}

INT_SETTINGS = {
    "POSTGRES_PORT": None,
    "SMTPS_PORT": None,
    "POLL_INTERVAL": "1",
    "MAX_SEND_FAILURES": "5",
    "FAILURE_COOLDOWN": "900",
    "SMTP_TIMEOUT": "30",
    "PG_CONNECT_TIMEOUT": "10",
    "PG_STATEMENT_TIMEOUT_MS": "30000",
    "STATS_INTERVAL": "300",
}


class ConfigError(Exception):
    """Raised when the environment does not describe a usable deployment"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    name: str
    user: str
    password: str
    connect_timeout: int = 10
    statement_timeout_ms: int = 30000

    def connect_kwargs(self) -> Dict[str, object]:
        """Keyword arguments for psycopg2.connect"""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }

    def describe(self) -> str:
        return f"{self.host}:{self.port}/{self.name}"


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    user: str
    password: str
    from_email: str
    from_name: str = DEFAULT_SENDER_NAME
    timeout: int = 30

    def validate(self) -> List[str]:
        """Validate SMTP configuration"""
        errors = []
        if not self.host:
            errors.append("SMTP host is required")
        if not 0 < self.port < 65536:
            errors.append(f"Invalid SMTP port: {self.port}")
        if not self.from_email or "@" not in self.from_email:
            errors.append(f"Invalid sender address: {self.from_email!r}")
        return errors


@dataclass(frozen=True)
class WorkerConfig:
    database: DatabaseConfig
    smtp: SMTPConfig
    listen_channel: str = "new_ticket"
    poll_interval: int = 1
    max_send_failures: int = 5
    failure_cooldown: int = 900
    backoff_blocking: bool = True
    track_failures: bool = True
    stats_interval: int = 300
    log_file: Optional[str] = None
    log_level: str = "INFO"

    def validate(self) -> List[str]:
        errors = self.smtp.validate()
        if not 0 < self.database.port < 65536:
            errors.append(f"Invalid database port: {self.database.port}")
        if not self.listen_channel.isidentifier():
            errors.append(f"Invalid listen channel: {self.listen_channel!r}")
        if self.poll_interval <= 0:
            errors.append("POLL_INTERVAL must be positive")
        if self.max_send_failures <= 0:
            errors.append("MAX_SEND_FAILURES must be positive")
        if self.failure_cooldown < 0:
            errors.append("FAILURE_COOLDOWN must not be negative")
        return errors


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(env_file: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> WorkerConfig:
    """
    Build the worker configuration from the environment.

    When ``environ`` is given it is used as-is and no .env file is read.
    Raises ConfigError listing every missing or malformed variable.
    """
    if environ is None:
        load_dotenv(env_file or DEFAULT_ENV_FILE)
        environ = dict(os.environ)

    errors = [
        f"Missing {var} environment variable ({what})"
        for var, what in REQUIRED_ENV.items()
        if not environ.get(var)
    ]

    ints: Dict[str, int] = {}
    for var, default in INT_SETTINGS.items():
        raw = environ.get(var) or default
        if raw is None:
            continue  # already reported as missing
        try:
            ints[var] = int(raw)
        except ValueError:
            errors.append(f"{var} must be an integer, got {raw!r}")

    if errors:
        raise ConfigError(errors)

    database = DatabaseConfig(
        host=environ["POSTGRES_HOST"],
        port=ints["POSTGRES_PORT"],
        name=environ["POSTGRES_DB"],
        user=environ["POSTGRES_USER"],
        password=environ["POSTGRES_PASSWORD"],
        connect_timeout=ints["PG_CONNECT_TIMEOUT"],
        statement_timeout_ms=ints["PG_STATEMENT_TIMEOUT_MS"],
    )
    smtp = SMTPConfig(
        host=environ["SMTPS_SERVER"],
        port=ints["SMTPS_PORT"],
        user=environ["GMAIL_EMAIL"],
        password=environ["GMAIL_APP_PASSWORD"],
        from_email=environ["GMAIL_EMAIL"],
        from_name=environ.get("SENDER_NAME") or DEFAULT_SENDER_NAME,
        timeout=ints["SMTP_TIMEOUT"],
    )
    config = WorkerConfig(
        database=database,
        smtp=smtp,
        listen_channel=environ.get("LISTEN_CHANNEL") or "new_ticket",
        poll_interval=ints["POLL_INTERVAL"],
        max_send_failures=ints["MAX_SEND_FAILURES"],
        failure_cooldown=ints["FAILURE_COOLDOWN"],
        backoff_blocking=_as_bool(environ.get("BACKOFF_BLOCKING", "true")),
        track_failures=_as_bool(environ.get("TRACK_FAILURES", "true")),
        stats_interval=ints["STATS_INTERVAL"],
        log_file=environ.get("LOG_FILE") or None,
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
    )

    config_errors = config.validate()
    if config_errors:
        raise ConfigError(config_errors)
    return config
