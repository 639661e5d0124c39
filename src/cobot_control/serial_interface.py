import threading
import time

import logging
from typing import Optional, Callable, Tuple
import serial
from .exceptions import ConnectError, CommandTimeoutError, DeviceError, LinkClosedError, TransportError
from .types import LogLevel, ReplyStatus

logger = logging.getLogger(__name__)

class SerialInterface:

    # Static mapping from prefix to LogLevel
    log_level_prefix_map = {
        "D)": LogLevel.DEBUG,
        "I)": LogLevel.INFO,
        "W)": LogLevel.WARNING,
        "E)": LogLevel.ERROR,
    }

    def __init__(self, port: str, baud_rate: int = 115200,
                 command_msg_callback: Optional[Callable] = None,
                 log_msg_callback: Optional[Callable] = None,
                 unsolicited_msg_callback: Optional[Callable] = None,
                 link_lost_callback: Optional[Callable] = None,
                 read_timeout: float = 0.05):
        """
        Opens the serial connection and starts the background reader.
        :param port: Serial port name (e.g., 'COM3' or '/dev/ttyUSB0').
        :param baud_rate: Serial baud rate.
        :param command_msg_callback: called with each sent command and each completed reply
        :param log_msg_callback: called when a log message is received
        :param unsolicited_msg_callback: Optional function to call with unsolicited messages.
        :param link_lost_callback: called once, from the reader thread, when the port fails.
        :raises ConnectError: if the port cannot be opened.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.serial = None  # initialized on connect

        self.command_msg_callback = command_msg_callback
        self.log_message_callback = log_msg_callback
        self.unsolicited_msg_callback = unsolicited_msg_callback
        self.link_lost_callback = link_lost_callback

        # Synchronization for blocking send/receive
        self._request_lock = threading.Lock()  # held for a whole round trip
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._waiting_for_response = False
        self._response_string = ""
        self._response_status = None
        self._response_error_msg = None
        self._link_lost = False
        self._stop_event = threading.Event()

        self.connect()

        # Start reader thread
        self._reader_thread = threading.Thread(target=self._reader_loop, name=f"serial-reader-{port}", daemon=True)
        self._reader_thread.start()

    @property
    def is_open(self) -> bool:
        return self.serial is not None and self.serial.is_open and not self._link_lost

    def connect(self) -> None:
        """
        Opens the serial port once. Failures are reported to the caller, not retried.
        """
        logger.info(f"Connecting to port '{self.port}' at {self.baud_rate} baud...")
        try:
            self.serial = serial.Serial(self.port, self.baud_rate, timeout=self.read_timeout)
        except (serial.SerialException, ValueError, OSError) as e:
            self.serial = None
            raise ConnectError(f"Could not connect to port {self.port}: {e}") from e
        logger.info(f"Connected to '{self.port}'")

    def _reader_loop(self):
        """
        Asynchronous reader loop, collecting serial data into a line buffer
        """
        buffer = ""
        while not self._stop_event.is_set():
            try:
                port = self.serial
                if port is None:
                    break
                waiting = port.in_waiting
                if waiting:
                    chunk = port.read(waiting).decode('ascii', errors='ignore')
                    for char in chunk:
                        if char in ['\n', '\r']:
                            if len(buffer) > 0:
                                self._handle_line(buffer)
                                buffer = ""
                        else:
                            buffer += char
                else:
                    time.sleep(0.001)
            except (serial.SerialException, OSError) as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"Lost connection to '{self.port}': {e}")
                self._mark_link_lost()
                if self.link_lost_callback:
                    self.link_lost_callback(e)
                break

    def _mark_link_lost(self):
        with self._lock:
            self._link_lost = True
            self._condition.notify_all()
        try:
            if self.serial is not None and self.serial.is_open:
                self.serial.close()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Ignoring close error on lost port: {e}")

    def _handle_line(self, line: str):
        """
        Handles a single serial line sent by the device
        :param line: string containing a single line
        """
        with self._lock:
            log_level, log_msg = self._check_log_msg(line)
            # log message
            if log_level is not None:
                if self.log_message_callback: self.log_message_callback(log_level, log_msg)
            # response
            elif self._waiting_for_response:
                line_lower = line.lower()
                if line_lower.startswith("ok"):
                    self._response_status = ReplyStatus.OK
                elif line_lower.startswith("busy"):
                    self._response_status = ReplyStatus.BUSY
                elif line_lower.startswith("error"):
                    self._response_status = ReplyStatus.ERROR
                    parts = line.split(":", 1)
                    self._response_error_msg = parts[1].strip() if len(parts) > 1 else ""

                if self._response_status is not None:
                    self._condition.notify_all()
                else:
                    self._response_string += line + '\n'

            # unsolicited message
            else:
                if self.unsolicited_msg_callback: self.unsolicited_msg_callback(line)

    def _check_log_msg(self, msg: str):
        if len(msg) < 2:
            return None, ''
        return self.log_level_prefix_map.get(msg[:2]), msg[2:]

    def send_command(self, cmd: str, timeout: float = 2) -> Tuple[ReplyStatus, str]:
        """
        Sends a command and blocks until 'ok', 'busy' or 'error' is received.
        Callers on other threads wait until the current round trip has its reply.
        :param cmd: The command to send.
        :param timeout: Maximum time to wait for the line to come free, and again for the response.
        :return: Tuple containing Status enum (OK | BUSY), and response lines.
        :raises DeviceError: if the device replied with an error.
        :raises CommandTimeoutError: if the device didn't reply in time or the line stayed in use.
        :raises LinkClosedError: if the port is closed or was lost while waiting.
        """
        if not self._request_lock.acquire(timeout=timeout):
            raise CommandTimeoutError(f"Serial line still in use by another command: {cmd.strip()}")
        try:
            return self._round_trip(cmd, timeout)
        finally:
            self._request_lock.release()

    def _round_trip(self, cmd: str, timeout: float) -> Tuple[ReplyStatus, str]:
        with self._lock:
            if not self.serial or not self.serial.is_open or self._link_lost:
                raise LinkClosedError('Serial not open')

            # Reset state
            self._waiting_for_response = True
            self._response_string = ""
            self._response_error_msg = ""
            self._response_status = None

            cmd = (cmd.strip() + "\n")
            if self.command_msg_callback: self.command_msg_callback(cmd, None, '')

            try:
                self.serial.write(cmd.encode('ascii'))
                self.serial.flush()
            except (serial.SerialException, OSError) as e:
                self._waiting_for_response = False
                raise LinkClosedError(f"Write to '{self.port}' failed: {e}") from e

            # Wait for completion
            end_time = time.time() + timeout
            while self._response_status is None:
                if self._link_lost or self._stop_event.is_set():
                    self._waiting_for_response = False
                    raise LinkClosedError('Serial link closed while waiting for reply')
                remaining = end_time - time.time()
                if remaining <= 0:
                    self._waiting_for_response = False
                    logger.warning("Command timeout, device didn't reply in time")
                    raise CommandTimeoutError(f"Command timeout, device didn't reply in time: {cmd.strip()}")
                self._condition.wait(timeout=remaining)

            self._waiting_for_response = False
            if self.command_msg_callback:
                self.command_msg_callback(self._response_string, self._response_status, self._response_error_msg)

            if self._response_status == ReplyStatus.ERROR:
                raise DeviceError.from_reply(self._response_error_msg)

            return self._response_status, self._response_string

    def close(self):
        """Stops the reader and closes the serial port."""
        self._stop_event.set()
        with self._lock:
            self._condition.notify_all()
        if self._reader_thread is not threading.current_thread():
            self._reader_thread.join(timeout=1.0)
        try:
            if self.serial and self.serial.is_open:
                self.serial.close()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Error closing port '{self.port}': {e}") from e
        finally:
            self.serial = None
