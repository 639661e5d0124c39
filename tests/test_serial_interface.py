import threading
import time
import unittest
from unittest.mock import patch

import serial

from cobot_control.config import CobotConfig
from cobot_control.exceptions import (CommandTimeoutError, ConnectError, DeviceError, LinkClosedError,
                                      ProtocolError)
from cobot_control.link import CobotLink
from cobot_control.serial_interface import SerialInterface
from cobot_control.types import LogLevel, ReplyStatus


class FakeSerial:
    """Minimal pyserial port: replies are queued per command prefix and fed back on write."""
    instances = []

    def __init__(self, port, baudrate, timeout=None):
        self.port = port
        self.baudrate = baudrate
        self.is_open = True
        self.fail = False
        self.written = []
        self.replies = {}
        self.reply_delay = 0.0
        self._rx = bytearray()
        self._lock = threading.Lock()
        FakeSerial.instances.append(self)

    @property
    def in_waiting(self):
        if self.fail:
            raise serial.SerialException("device reports readiness to read but returned no data")
        with self._lock:
            return len(self._rx)

    def read(self, size=1):
        with self._lock:
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data):
        line = data.decode('ascii').strip()
        self.written.append(line)
        for prefix, batches in self.replies.items():
            if line.startswith(prefix):
                batch = batches.pop(0) if len(batches) > 1 else batches[0]
                if self.reply_delay:
                    timer = threading.Timer(self.reply_delay, self.feed, batch)
                    timer.daemon = True
                    timer.start()
                else:
                    self.feed(*batch)
                break
        return len(data)

    def flush(self):
        pass

    def feed(self, *lines):
        with self._lock:
            self._rx.extend(("\n".join(lines) + "\n").encode('ascii'))

    def close(self):
        self.is_open = False


class SerialTestCase(unittest.TestCase):
    def setUp(self):
        FakeSerial.instances = []
        patcher = patch.object(serial, "Serial", FakeSerial)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.log_messages = []
        self.unsolicited = []
        self.lost = threading.Event()

    def open_interface(self):
        interface = SerialInterface("/dev/ttyCobot0", 115200,
                                    log_msg_callback=lambda level, msg: self.log_messages.append((level, msg)),
                                    unsolicited_msg_callback=self.unsolicited.append,
                                    link_lost_callback=lambda e: self.lost.set())
        self.addCleanup(interface.close)
        return interface, FakeSerial.instances[-1]


class TestSerialInterface(SerialTestCase):
    def test_open_failure_is_connect_error(self):
        with patch.object(serial, "Serial", side_effect=serial.SerialException("could not open port")):
            with self.assertRaises(ConnectError):
                SerialInterface("/dev/ttyMissing", 115200)
        with patch.object(serial, "Serial", side_effect=ValueError("Not a valid baudrate")):
            with self.assertRaises(ConnectError):
                SerialInterface("/dev/ttyCobot0", -5)

    def test_command_with_data_lines(self):
        interface, port = self.open_interface()
        port.replies["M51"] = [["J0 A1.500 S0.000", "J1 A-2.250 S0.000", "ok"]]
        status, response = interface.send_command("M51")
        self.assertEqual(status, ReplyStatus.OK)
        self.assertEqual(response.splitlines(), ["J0 A1.500 S0.000", "J1 A-2.250 S0.000"])
        self.assertEqual(port.written, ["M51"])

    def test_error_reply_raises_device_error(self):
        interface, port = self.open_interface()
        port.replies["G0"] = [["error: 3 No joint 9"]]
        with self.assertRaises(DeviceError) as ctx:
            interface.send_command("G0 J9 A0.000 S0.000")
        self.assertEqual(ctx.exception.code, 3)
        self.assertEqual(ctx.exception.code_name, "Invalid joint")
        self.assertEqual(ctx.exception.reason, "No joint 9")

    def test_reply_vocabulary(self):
        self.assertEqual({status.value for status in ReplyStatus}, {"ok", "busy", "error"})
        interface, port = self.open_interface()
        port.replies["M0"] = [["busy"]]
        self.assertEqual(interface.send_command("M0 J1 I1"), (ReplyStatus.BUSY, ""))

    def test_timeout(self):
        interface, port = self.open_interface()
        with self.assertRaises(CommandTimeoutError):
            interface.send_command("M51", timeout=0.05)

    def test_concurrent_commands_get_their_own_replies(self):
        interface, port = self.open_interface()
        port.reply_delay = 0.2
        port.replies["M51"] = [["J0 A1.000 S0.000", "ok"]]
        port.replies["G0"] = [["ok"]]

        results = []
        reader = threading.Thread(target=lambda: results.append(interface.send_command("M51")))
        reader.start()
        time.sleep(0.05)

        start = time.monotonic()
        status, response = interface.send_command("G0 J0 A10.000 S10.000")
        elapsed = time.monotonic() - start
        reader.join(timeout=1.0)

        self.assertEqual((status, response), (ReplyStatus.OK, ""))
        self.assertEqual(results, [(ReplyStatus.OK, "J0 A1.000 S0.000\n")])
        self.assertEqual(port.written, ["M51", "G0 J0 A10.000 S10.000"])
        # waited for the M51 reply, then for its own
        self.assertGreaterEqual(elapsed, 0.3)

    def test_line_in_use_times_out(self):
        interface, port = self.open_interface()
        port.reply_delay = 0.3
        port.replies["M56"] = [["ok"]]
        caller = threading.Thread(target=lambda: interface.send_command("M56 J1"))
        caller.start()
        time.sleep(0.05)
        with self.assertRaises(CommandTimeoutError):
            interface.send_command("M51", timeout=0.05)
        caller.join(timeout=1.0)
        self.assertEqual(port.written, ["M56 J1"])

    def test_log_lines_are_forwarded(self):
        interface, port = self.open_interface()
        port.replies["M100"] = [["W)Joint 2 overheating", "ok"]]
        status, response = interface.send_command("M100 V1")
        self.assertEqual(status, ReplyStatus.OK)
        self.assertEqual(response, "")
        self.assertEqual(self.log_messages, [(LogLevel.WARNING, "Joint 2 overheating")])

    def test_unsolicited_lines(self):
        interface, port = self.open_interface()
        port.feed("COBOT ready")
        deadline = time.monotonic() + 1.0
        while not self.unsolicited and time.monotonic() < deadline:
            time.sleep(0.005)
        self.assertEqual(self.unsolicited, ["COBOT ready"])

    def test_link_loss(self):
        interface, port = self.open_interface()
        port.fail = True
        self.assertTrue(self.lost.wait(1.0))
        self.assertFalse(interface.is_open)
        with self.assertRaises(LinkClosedError):
            interface.send_command("M51")

    def test_send_after_close(self):
        interface, port = self.open_interface()
        interface.close()
        self.assertFalse(port.is_open)
        with self.assertRaises(LinkClosedError):
            interface.send_command("M51")


class TestCobotLink(SerialTestCase):
    def setUp(self):
        super().setUp()
        self.config = CobotConfig(command_timeout_s=0.5)
        self.link = CobotLink.open(SerialInterface, "/dev/ttyCobot0", 115200, self.config)
        self.addCleanup(self.link.close)
        self.port = FakeSerial.instances[-1]

    def test_command_encoding(self):
        self.port.replies[""] = [["ok"]]
        self.link.init()
        self.link.move_to(2, 45, 30)
        self.link.stop(0b100, immediately=False)
        self.link.calibrate(0b11)
        self.link.go_home(0b1)
        self.link.set_log_level(LogLevel.ERROR)
        self.link.set_log_level(None)
        self.link.reset()
        self.assertEqual(self.port.written, [
            "M100 V1", "G0 J2 A45.000 S30.000", "M0 J4 I0", "M56 J3", "G28 J1", "M111 L3", "M111 L4", "M999",
        ])

    def test_moves_report_values_as_sent(self):
        self.port.replies["G0"] = [["ok"]]
        self.assertEqual(self.link.move_to(1, 12.34567, 0.0004), (12.346, 0.0))
        sent = self.link.move_joints([(0, -90.00049, 15), (4, 30, None)])
        self.assertEqual(sent, [(0, -90.0, 15.0), (4, 30.0, None)])
        self.assertEqual(self.port.written, ["G0 J1 A12.346 S0.000", "G0 J0 A-90.000 S15.000 J4 A30.000"])

    def test_read_joint_angles(self):
        self.port.replies["M51"] = [["J0 A10.000 S0.000", "J1 A-5.500 S1.000", "J2 A0.125 S0.000", "ok"]]
        self.assertEqual(self.link.read_joint_angles(), [10.0, -5.5, 0.125])

    def test_read_joint_angles_malformed(self):
        self.port.replies["M51"] = [["J0 A1.000 S0", "J2 A2.000 S0", "ok"]]
        with self.assertRaises(ProtocolError):
            self.link.read_joint_angles()
        self.port.replies["M51"] = [["J0 Afast S0", "ok"]]
        with self.assertRaises(ProtocolError):
            self.link.read_joint_angles()

    def test_busy_is_resent(self):
        self.port.replies["G0"] = [["busy"], ["busy"], ["ok"]]
        self.link.move_to(0, 1, 1)
        self.assertEqual(self.port.written.count("G0 J0 A1.000 S1.000"), 3)

    def test_stays_busy(self):
        self.port.replies["G0"] = [["busy"]]
        with self.assertRaises(CommandTimeoutError):
            self.link.move_to(0, 1, 1)

    def test_device_log_routing(self):
        with self.assertLogs("cobot_control.device", level="ERROR") as logs:
            self.link.log_msg_callback(LogLevel.ERROR, "Encoder fault")
        self.assertIn("Encoder fault", logs.output[0])


class TestDeviceError(unittest.TestCase):
    def test_from_reply(self):
        error = DeviceError.from_reply("4 Init required")
        self.assertEqual((error.code, error.reason, error.code_name), (4, "Init required", "Not initialized"))
        error = DeviceError.from_reply("something broke")
        self.assertEqual((error.code, error.reason), (0, "something broke"))
        self.assertEqual(DeviceError(42).code_name, "Unknown error")


if __name__ == '__main__':
    unittest.main()
