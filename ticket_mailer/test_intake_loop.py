#!/usr/bin/env python3
"""
Test suite for the intake loop: startup, backlog drain, steady-state ticks
"""

import threading
import unittest
from unittest.mock import MagicMock

import psycopg2

from ticket_mailer.backoff import SendBackoff
from ticket_mailer.intake_loop import (STATE_STEADY, STATE_STOPPED, IntakeLoop,
                                       StartupError)
from ticket_mailer.test_ticket_store import FakeTicketsClient
from ticket_mailer.ticket_processor import TicketOutcome, TicketProcessor
from ticket_mailer.ticket_store import TicketStore


def make_loop(client, processor=None, stop_event=None):
    store = TicketStore(client)
    if processor is None:
        processor = MagicMock()
        processor.process_ticket.return_value = TicketOutcome.SENT
        processor.get_stats.return_value = {
            "sent": 0, "failed": 0, "rejected": 0, "skipped": 0, "errors": 0, "cooldowns": 0,
            "consecutive_failures": 0,
        }
        processor.backoff.remaining.return_value = 0
    loop = IntakeLoop(client, store, processor, poll_interval=0.001,
                      stop_event=stop_event or threading.Event(), systemd=MagicMock(),
                      reconnect_delay=0)
    return loop, processor


class TestStartup(unittest.TestCase):

    def test_start_subscribes(self):
        client = FakeTicketsClient()
        loop, _ = make_loop(client)

        loop.start()

        self.assertEqual(client.channels, ["new_ticket"])

    def test_subscription_failure_is_fatal(self):
        client = MagicMock()
        client.subscribe.side_effect = psycopg2.ProgrammingError("permission denied")
        loop, _ = make_loop(client)

        with self.assertRaises(StartupError):
            loop.start()

    def test_unreachable_database_is_fatal(self):
        client = MagicMock()
        client.conn = None
        client.connect.side_effect = psycopg2.OperationalError("could not connect")
        loop, _ = make_loop(client)

        with self.assertRaises(StartupError):
            loop.run()
        client.subscribe.assert_not_called()


class TestBacklog(unittest.TestCase):

    def test_backlog_in_store_order_with_resume(self):
        client = FakeTicketsClient([{"id": 3}, {"id": 1, "status": "processing"},
                                    {"id": 2, "status": "completed"}, {"id": 4}])
        loop, processor = make_loop(client)

        self.assertEqual(loop.drain_backlog(), 3)

        calls = [(c[0][0], c[1]["resume"]) for c in processor.process_ticket.call_args_list]
        self.assertEqual(calls, [(3, True), (1, True), (4, True)])

    def test_backlog_stops_on_shutdown(self):
        client = FakeTicketsClient([{"id": 1}, {"id": 2}])
        loop, processor = make_loop(client)
        processor.process_ticket.side_effect = lambda *a, **kw: loop.stop()

        loop.drain_backlog()

        self.assertEqual(processor.process_ticket.call_count, 1)


class TestTick(unittest.TestCase):

    def test_notifications_processed_in_arrival_order(self):
        client = FakeTicketsClient()
        client.notifies.extend(["5", "3", "9"])
        loop, processor = make_loop(client)

        self.assertEqual(loop.tick(), 3)

        ids = [c[0][0] for c in processor.process_ticket.call_args_list]
        self.assertEqual(ids, [5, 3, 9])
        self.assertEqual(loop.tick(), 0)

    def test_bad_payload_is_skipped(self):
        client = FakeTicketsClient()
        client.notifies.extend(["abc", "", " 12 "])
        loop, processor = make_loop(client)

        self.assertEqual(loop.tick(), 1)
        processor.process_ticket.assert_called_once_with(12, resume=False)

    def test_payload_must_be_plain_decimal(self):
        client = FakeTicketsClient()
        client.notifies.extend(["4_2", "+42", "\u0664\u0662", "-1", "42"])
        loop, processor = make_loop(client)

        self.assertEqual(loop.tick(), 1)
        processor.process_ticket.assert_called_once_with(42, resume=False)

    def test_cooling_down_tickets_are_deferred_in_order(self):
        client = FakeTicketsClient()
        client.notifies.extend(["1", "2"])
        loop, processor = make_loop(client)
        processor.process_ticket.return_value = TicketOutcome.COOLING_DOWN

        loop.tick()

        # the second ticket queues behind the first without another attempt
        self.assertEqual(list(loop.deferred), [(1, False), (2, False)])
        self.assertEqual(processor.process_ticket.call_count, 1)

        processor.process_ticket.return_value = TicketOutcome.SENT
        client.notifies.append("3")
        loop.tick()

        ids = [c[0][0] for c in processor.process_ticket.call_args_list]
        self.assertEqual(ids, [1, 1, 2, 3])
        self.assertEqual(len(loop.deferred), 0)


class TestCooldown(unittest.TestCase):

    def test_watchdog_pinged_during_blocking_cooldown(self):
        client = FakeTicketsClient([{"id": 1, "email": "a@b.com"}])
        stop_event = MagicMock()
        stop_event.wait.return_value = False
        stop_event.is_set.return_value = False
        systemd = MagicMock()
        dispatcher = MagicMock()
        dispatcher.send.return_value = (True, None)
        backoff = SendBackoff(threshold=1, cooldown=900, stop_event=stop_event,
                              heartbeat=systemd.watchdog, heartbeat_interval=1)
        backoff.record_failure()
        processor = TicketProcessor(TicketStore(client), dispatcher, backoff)
        loop = IntakeLoop(client, TicketStore(client), processor, stop_event=stop_event,
                          systemd=systemd, reconnect_delay=0)

        self.assertEqual(loop._handle(1), TicketOutcome.SENT)

        self.assertEqual(stop_event.wait.call_count, 900)
        self.assertTrue(all(c[0][0] == 1 for c in stop_event.wait.call_args_list))
        self.assertEqual(systemd.watchdog.call_count, 900)

    def test_deferred_tickets_wait_for_non_blocking_cooldown(self):
        now = [0.0]
        backoff = SendBackoff(threshold=1, cooldown=60, blocking=False, clock=lambda: now[0])
        backoff.record_failure()
        client = FakeTicketsClient([{"id": 1, "email": "a@b.com"}])
        dispatcher = MagicMock()
        dispatcher.send.return_value = (True, None)
        processor = TicketProcessor(TicketStore(client), dispatcher, backoff)
        processor.process_ticket = MagicMock(wraps=processor.process_ticket)
        loop, _ = make_loop(client, processor=processor)

        client.notifies.append("1")
        loop.tick()
        for _ in range(5):
            now[0] += 10
            loop.tick()

        # one attempt when the cool-down started, none while it runs
        self.assertEqual(processor.process_ticket.call_count, 1)
        self.assertEqual(list(loop.deferred), [(1, False)])

        now[0] = 61
        self.assertEqual(loop.tick(), 1)
        self.assertEqual(processor.process_ticket.call_count, 2)
        self.assertEqual(client.rows[1]["status"], "completed")
        self.assertEqual(len(loop.deferred), 0)

    def test_statistics_report_includes_backoff_state(self):
        loop, processor = make_loop(FakeTicketsClient())
        processor.get_stats.return_value = {
            "sent": 1, "failed": 3, "rejected": 0, "skipped": 0, "errors": 0, "cooldowns": 0,
            "consecutive_failures": 3,
        }
        processor.backoff.remaining.return_value = 42

        with self.assertLogs("ticket-mailer", level="INFO") as logs:
            loop._report_statistics()

        self.assertIn("consecutive_failures=3", logs.output[0])
        self.assertIn("cooldown_remaining=42s", logs.output[0])


class TestEndToEnd(unittest.TestCase):

    def test_notified_ticket_is_emailed(self):
        client = FakeTicketsClient([{"id": 42, "email": "a@b.com"}])
        dispatcher = MagicMock()
        dispatcher.send.return_value = (True, None)
        stop_event = threading.Event()
        processor = TicketProcessor(TicketStore(client), dispatcher,
                                    SendBackoff(stop_event=stop_event))
        loop, _ = make_loop(client, processor=processor, stop_event=stop_event)

        # already handled by the backlog; the duplicate notification is a no-op
        client.notifies.append("42")
        polls = [0]
        original_poll = client.poll_events

        def poll_then_stop():
            polls[0] += 1
            if polls[0] >= 2:
                stop_event.set()
            return original_poll()

        client.poll_events = poll_then_stop
        loop.run()

        dispatcher.send.assert_called_once_with("a@b.com", "S", "B")
        self.assertEqual(client.rows[42]["status"], "completed")
        self.assertEqual(loop.state, STATE_STOPPED)
        loop.systemd.ready.assert_called_once()

    def test_connection_loss_triggers_reconnect_and_rescan(self):
        client = FakeTicketsClient()
        stop_event = threading.Event()
        loop, processor = make_loop(client, stop_event=stop_event)
        calls = [0]

        def flaky_poll():
            calls[0] += 1
            if calls[0] == 1:
                # inserted while the connection is down, so its notification is lost
                client.add(77)
                raise psycopg2.OperationalError("server closed the connection unexpectedly")
            stop_event.set()
            return iter([])

        client.poll_events = flaky_poll
        loop.run()

        self.assertEqual(client.reconnects, 1)
        self.assertFalse(loop.needs_reconnect)
        # ticket 77 was picked up by the rescan after reconnecting
        self.assertEqual(processor.process_ticket.call_args_list[-1][0][0], 77)

    def test_ready_sent_before_backlog(self):
        client = FakeTicketsClient([{"id": 1}])
        stop_event = threading.Event()
        loop, processor = make_loop(client, stop_event=stop_event)
        ready_at_first_ticket = []

        def process(ticket_id, resume=False):
            ready_at_first_ticket.append(loop.systemd.ready.called)
            stop_event.set()
            return TicketOutcome.SENT

        processor.process_ticket.side_effect = process
        loop.run()

        self.assertEqual(ready_at_first_ticket, [True])
        loop.systemd.ready.assert_called_once()

    def test_steady_state_reached(self):
        client = FakeTicketsClient()
        stop_event = threading.Event()
        loop, _ = make_loop(client, stop_event=stop_event)

        def poll_once():
            self.assertEqual(loop.state, STATE_STEADY)
            stop_event.set()
            return iter([])

        client.poll_events = poll_once
        loop.run()
        self.assertEqual(loop.state, STATE_STOPPED)


if __name__ == '__main__':
    unittest.main()
