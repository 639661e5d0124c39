import threading
import time
import unittest

from cobot_control.config import CobotConfig
from cobot_control.exceptions import (ConnectError, DeviceError, DisconnectError, InitError,
                                      SessionStateError, TransportError)
from cobot_control.mock_serial_interface import MockSerialInterface
from cobot_control.session import LinkSession
from cobot_control.types import SessionState

S = SessionState


class BrokenCloseInterface(MockSerialInterface):
    def close(self):
        super().close()
        raise TransportError("port vanished during close")


class TestLinkSession(unittest.TestCase):
    def setUp(self):
        self.config = CobotConfig(init_retry_delay_s=0.01, show_log_messages=False)
        self.session = LinkSession(self.config, interface_factory=MockSerialInterface)
        self.transitions = []
        self.session.add_state_listener(lambda old, new: self.transitions.append((old, new)))

    def tearDown(self):
        self.session.disconnect()

    def test_initial_state(self):
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.assertIsNone(self.session.link)
        self.assertFalse(self.session.is_ready)

    def test_connect_and_initialize(self):
        self.session.connect("/dev/ttyCobot0", 115200)
        self.assertEqual(self.session.state, S.CONNECTED)
        self.assertEqual(self.session.port_name, "/dev/ttyCobot0")
        self.assertEqual(self.session.baud_rate, 115200)

        self.session.initialize()
        self.assertEqual(self.session.state, S.READY)
        self.assertEqual(self.transitions, [
            (S.DISCONNECTED, S.CONNECTING),
            (S.CONNECTING, S.CONNECTED),
            (S.CONNECTED, S.INITIALIZING),
            (S.INITIALIZING, S.READY),
        ])
        self.assertEqual(self.session.link.interface.count("M100 V1"), 1)

    def test_connect_failure_returns_to_disconnected(self):
        with self.assertRaises(ConnectError):
            self.session.connect("INVALID_PORT", 115200)
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.assertEqual(self.transitions[-1], (S.CONNECTING, S.DISCONNECTED))

    def test_rejected_parameters(self):
        with self.assertRaises(ConnectError):
            self.session.connect("/dev/ttyCobot0", 12345)
        self.assertEqual(self.session.state, S.DISCONNECTED)
        with self.assertRaises(ConnectError):
            self.session.connect("/dev/ttyCobot0", 0)
        self.assertEqual(self.session.state, S.DISCONNECTED)

    def test_connect_twice_is_contract_violation(self):
        self.session.connect("mock", 115200)
        with self.assertRaises(SessionStateError):
            self.session.connect("mock", 115200)
        self.assertEqual(self.session.state, S.CONNECTED)

    def test_initialize_requires_connected(self):
        with self.assertRaises(SessionStateError):
            self.session.initialize()
        self.session.connect("mock", 115200)
        self.session.initialize()
        with self.assertRaises(SessionStateError):
            self.session.initialize()

    def test_init_failure_disconnects_and_reports(self):
        self.session.connect("mock", 115200)
        mock = self.session.link.interface
        mock.init_failures = 1

        with self.assertRaises(InitError) as ctx:
            self.session.initialize()
        self.assertIsInstance(ctx.exception.__cause__, DeviceError)
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.assertIsNone(self.session.link)
        self.assertFalse(mock.is_open)
        self.assertEqual(mock.count("M100"), 1)

    def test_init_retries_up_to_limit(self):
        session = LinkSession(self.config.with_overrides(init_max_attempts=3), MockSerialInterface)
        session.connect("mock", 115200)
        mock = session.link.interface
        mock.init_failures = 2

        session.initialize()
        self.assertEqual(session.state, S.READY)
        self.assertEqual(mock.count("M100"), 3)
        session.disconnect()

    def test_init_retries_exhausted(self):
        session = LinkSession(self.config.with_overrides(init_max_attempts=2), MockSerialInterface)
        session.connect("mock", 115200)
        mock = session.link.interface
        mock.init_failures = 5

        with self.assertRaises(InitError):
            session.initialize()
        self.assertEqual(session.state, S.DISCONNECTED)
        self.assertEqual(mock.count("M100"), 2)

    def test_firmware_mismatch(self):
        session = LinkSession(self.config.with_overrides(firmware_version=2), MockSerialInterface)
        session.connect("mock", 115200)
        with self.assertRaises(InitError) as ctx:
            session.initialize()
        self.assertEqual(ctx.exception.__cause__.code, 7)
        self.assertEqual(ctx.exception.__cause__.code_name, "Invalid firmware version")
        self.assertEqual(session.state, S.DISCONNECTED)

    def test_disconnect_during_retry_delay_cancels(self):
        session = LinkSession(self.config.with_overrides(init_max_attempts=5, init_retry_delay_s=5.0),
                              MockSerialInterface)
        session.connect("mock", 115200)
        session.link.interface.init_failures = 10
        errors = []

        def run():
            try:
                session.initialize()
            except InitError as e:
                errors.append(e)

        thread = threading.Thread(target=run)
        started = time.monotonic()
        thread.start()
        time.sleep(0.05)
        session.disconnect()
        thread.join(timeout=2.0)

        self.assertFalse(thread.is_alive())
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertEqual(len(errors), 1)
        self.assertEqual(session.state, S.DISCONNECTED)

    def test_disconnect_from_ready(self):
        self.session.connect("mock", 115200)
        self.session.initialize()
        mock = self.session.link.interface
        generation = self.session.generation

        self.session.disconnect()
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.assertFalse(mock.is_open)
        self.assertEqual(self.session.generation, generation + 1)
        self.assertFalse(self.session.is_current(generation))
        self.assertEqual(self.transitions[-1], (S.READY, S.DISCONNECTED))

    def test_disconnect_is_safe_when_disconnected(self):
        self.session.disconnect()
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.assertEqual(self.transitions, [])

    def test_disconnect_error_still_disconnects(self):
        session = LinkSession(self.config, BrokenCloseInterface)
        session.connect("mock", 115200)
        with self.assertRaises(DisconnectError):
            session.disconnect()
        self.assertEqual(session.state, S.DISCONNECTED)

    def test_acquire_link_requires_ready(self):
        with self.assertRaises(SessionStateError):
            self.session.acquire_link()
        self.session.connect("mock", 115200)
        with self.assertRaises(SessionStateError):
            self.session.acquire_link()
        self.session.initialize()
        link, generation = self.session.acquire_link()
        self.assertIs(link, self.session.link)
        self.assertTrue(self.session.is_current(generation))

    def test_link_loss_fails_session(self):
        self.session.connect("mock", 115200)
        self.session.initialize()
        mock = self.session.link.interface

        mock.simulate_link_loss()
        self.assertEqual(self.session.state, S.FAILED)
        self.assertEqual(self.transitions[-1], (S.READY, S.FAILED))
        with self.assertRaises(SessionStateError):
            self.session.acquire_link()
        with self.assertRaises(SessionStateError):
            self.session.connect("mock", 115200)

        self.session.disconnect()
        self.assertEqual(self.session.state, S.DISCONNECTED)
        self.session.connect("mock", 115200)
        self.assertEqual(self.session.state, S.CONNECTED)

    def test_late_link_loss_from_old_session_is_ignored(self):
        self.session.connect("mock", 115200)
        old_mock = self.session.link.interface
        self.session.disconnect()
        self.session.connect("mock", 115200)

        old_mock.simulate_link_loss()
        self.assertEqual(self.session.state, S.CONNECTED)

    def test_controller_reset_returns_to_connected(self):
        self.session.connect("mock", 115200)
        self.session.initialize()
        mock = self.session.link.interface
        generation = self.session.generation

        self.assertTrue(self.session.controller_reset(generation))
        self.assertEqual(self.session.state, S.CONNECTED)
        self.assertEqual(self.transitions[-1], (S.READY, S.CONNECTED))
        self.assertFalse(self.session.is_current(generation))
        self.assertTrue(mock.is_open)
        self.assertFalse(self.session.controller_reset(generation))

        # the link is still watched after a reset
        mock.simulate_link_loss()
        self.assertEqual(self.session.state, S.FAILED)

    def test_controller_reset_from_old_session_is_ignored(self):
        self.session.connect("mock", 115200)
        self.session.initialize()
        generation = self.session.generation
        self.session.disconnect()
        self.session.connect("mock", 115200)
        self.session.initialize()

        self.assertFalse(self.session.controller_reset(generation))
        self.assertEqual(self.session.state, S.READY)

    def test_snapshot(self):
        self.session.connect("mock", 57600)
        snapshot = self.session.snapshot()
        self.assertEqual(snapshot.state, S.CONNECTED)
        self.assertEqual(snapshot.port_name, "mock")
        self.assertEqual(snapshot.baud_rate, 57600)


if __name__ == '__main__':
    unittest.main()
