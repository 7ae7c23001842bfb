"""
ticket-mailer entry point

Loads configuration, wires the pipeline together and runs the intake loop
until SIGINT/SIGTERM.
"""
import argparse
import sys
import threading
from typing import List, Optional

import psycopg2

from .backoff import SendBackoff
from .config import DEFAULT_ENV_FILE, ConfigError, WorkerConfig, load_config
from .intake_loop import IntakeLoop, StartupError
from .logs import setup_logging
from .mail_dispatcher import MailDispatcher
from .notifier_client import NotifierClient
from .systemd import SystemdNotifier
from .ticket_processor import TicketProcessor
from .ticket_store import TicketStore


def build_worker(config: WorkerConfig, systemd: Optional[SystemdNotifier] = None,
                 client: Optional[NotifierClient] = None,
                 dispatcher: Optional[MailDispatcher] = None) -> IntakeLoop:
    """Assemble the components; one stop event is shared by the loop and the backoff"""
    stop_event = threading.Event()
    systemd = systemd or SystemdNotifier()
    client = client or NotifierClient(config.database)
    store = TicketStore(client, track_failures=config.track_failures)
    backoff = SendBackoff(
        threshold=config.max_send_failures,
        cooldown=config.failure_cooldown,
        blocking=config.backoff_blocking,
        stop_event=stop_event,
        heartbeat=systemd.watchdog,
        heartbeat_interval=config.poll_interval,
    )
    processor = TicketProcessor(store, dispatcher or MailDispatcher(config.smtp), backoff)
    return IntakeLoop(
        client,
        store,
        processor,
        channel=config.listen_channel,
        poll_interval=config.poll_interval,
        stop_event=stop_event,
        systemd=systemd,
        stats_interval=config.stats_interval,
    )


def check_config(config: WorkerConfig, client: Optional[NotifierClient] = None) -> int:
    """Validate connectivity to the database; returns a process exit code"""
    client = client or NotifierClient(config.database, max_retries=1)
    try:
        client.connect()
    except psycopg2.Error as e:
        print(f"ERROR: cannot connect to {config.database.describe()}: {e}", file=sys.stderr)
        return 1
    try:
        if not client.ping():
            print("ERROR: database did not answer SELECT 1", file=sys.stderr)
            return 1
    finally:
        client.close()
    print(f"Configuration OK (database {config.database.describe()}, "
          f"relay {config.smtp.host}:{config.smtp.port})")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ticket-mailer",
        description="Send emails for rows inserted into the tickets table",
    )
    parser.add_argument("--env-file", default=DEFAULT_ENV_FILE,
                        help=f"dotenv file to load before reading the environment "
                             f"(default: {DEFAULT_ENV_FILE})")
    parser.add_argument("--check-config", action="store_true",
                        help="validate configuration and database connectivity, then exit")
    parser.add_argument("--log-level",
                        help="override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    try:
        config = load_config(args.env_file)
    except ConfigError as e:
        for error in e.errors:
            print(f"FATAL: {error}", file=sys.stderr)
        sys.exit(1)

    log = setup_logging(config.log_file, args.log_level or config.log_level)
    log.info("Configuration loaded")
    log.info("Database: %s", config.database.describe())
    log.info("SMTP: %s:%d", config.smtp.host, config.smtp.port)
    log.info("Email: %s", config.smtp.from_email)
    log.info("Sender Name: %s", config.smtp.from_name)

    if args.check_config:
        sys.exit(check_config(config))

    systemd = SystemdNotifier()
    loop = build_worker(config, systemd=systemd)
    loop.install_signal_handlers()

    try:
        loop.run()
    except StartupError as e:
        log.critical("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
    except Exception as e:
        log.critical("Fatal error: %s", e, exc_info=True)
        systemd.status(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        loop.client.close()
        log.info("Ticket Mailer stopped")
        systemd.stopping()
