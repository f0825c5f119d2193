"""
Device Link
============
Line-oriented request/response channel to the safe over a half-duplex
serial connection.

Features:
- Noise draining before every outbound command
- Line framing with timeout
- Nonce tagged ping handshake with retries
- Thread-safe exchanges (one request/response in flight at a time)

Wire convention:
    commands  ":<verb>:<arg>:"   (no terminator)
    replies   "<text>\\r\\n"      ("OK ..." on success)
"""

from __future__ import annotations

import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional, Dict, Any, List, Iterator, Protocol

import serial
import serial.tools.list_ports
from loguru import logger

from .models import LinkState, SafeConfig


PING_ACK = "PINGACK"
LINE_FEED = b"\n"


class ByteStream(Protocol):
    """Raw duplex byte stream (``serial.Serial`` satisfies this)."""

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> Optional[int]: ...

    def close(self) -> None: ...


class LinkError(Exception):
    """Base class for device link failures."""


class LinkTimeoutError(LinkError):
    """No line terminator arrived within the line timeout."""

    def __init__(self, partial: str = ""):
        super().__init__(f"No LF received (partial reply: {partial!r})")
        self.partial = partial


class LinkCancelledError(LinkError):
    """A read was abandoned because its cancel signal was set."""


class HandshakeFailure(LinkError):
    """Ping handshake exhausted all attempts."""


class DeviceLink:
    """
    Owns the serial stream to the safe and its line buffer.

    The primitives (``drain``, ``send``, ``read_line``, ``send_read``) are
    not locked on their own; callers wrap each logical exchange in
    ``exchange()`` so two exchanges never interleave on the wire.

    Usage:
        link = DeviceLink(open_serial(config), config)
        link.sync()
        with link.exchange():
            reply = link.send_read(":status::")
    """

    def __init__(
        self,
        stream: ByteStream,
        config: Optional[SafeConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        nonce_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize the link.

        Args:
            stream: Open byte stream to the device
            config: Link timing parameters
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
            nonce_factory: Produces the ping nonce for each sync attempt
        """
        self.config = config or SafeConfig()
        self._stream = stream
        self._sleep = sleep
        self._clock = clock
        self._nonce_factory = nonce_factory or (lambda: str(random.randint(0, 2**31 - 1)))
        self._state = LinkState.IDLE

        self._buffer = bytearray()
        self._lock = threading.Lock()

        # Statistics
        self._lines_sent = 0
        self._lines_received = 0
        self._timeouts = 0
        self._bytes_drained = 0

    @property
    def state(self) -> LinkState:
        """Current session state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == LinkState.CONNECTED

    @property
    def statistics(self) -> Dict[str, Any]:
        """Get communication statistics."""
        return {
            "state": self._state.value,
            "lines_sent": self._lines_sent,
            "lines_received": self._lines_received,
            "timeouts": self._timeouts,
            "bytes_drained": self._bytes_drained,
        }

    @contextmanager
    def exchange(self) -> Iterator[DeviceLink]:
        """Hold the link for one request/response exchange."""
        with self._lock:
            yield self

    def drain(self) -> int:
        """
        Discard whatever the device has sent that nobody asked for.

        Reads until a read returns nothing, pausing after each burst so a
        slow device can finish talking.

        Returns:
            Number of bytes discarded
        """
        previous = self._state
        self._state = LinkState.DRAINING
        discarded = len(self._buffer)
        self._buffer.clear()

        reads = 0
        while True:
            logger.trace("Discarding any rogue data")
            try:
                data = self._stream.read(self.config.read_size)
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Drain read failed: {e}")
                break
            if not data:
                break
            discarded += len(data)
            logger.debug(f"Discarded {len(data)} bytes")

            reads += 1
            if self.config.drain_max_reads is not None and reads >= self.config.drain_max_reads:
                logger.warning(f"Device still talking after {reads} drain reads, giving up")
                break
            self._sleep(self.config.settle_delay_s)

        self._bytes_drained += discarded
        if previous != LinkState.CLOSED:
            self._state = previous
        return discarded

    def send(self, message: str) -> int:
        """
        Drain the input, then write a command.

        Args:
            message: Command text, e.g. ":status::"

        Returns:
            Number of bytes written
        """
        self.drain()
        logger.debug(f"Sending {message}")
        try:
            written = self._stream.write(message.encode("ascii"))
        except (serial.SerialException, OSError) as e:
            logger.error(f"Write error: {e}")
            raise LinkError(str(e)) from e
        self._lines_sent += 1
        return written if written is not None else len(message)

    def read_line(self, cancel: Optional[threading.Event] = None) -> str:
        """
        Read one line, stripped of trailing CR/LF.

        Args:
            cancel: Optional event; once set the read is abandoned

        Returns:
            The received line

        Raises:
            LinkTimeoutError: No LF within ``line_timeout_s`` (partial bytes discarded)
            LinkCancelledError: ``cancel`` was set while waiting
        """
        deadline = self._clock() + self.config.line_timeout_s

        while True:
            idx = self._buffer.find(LINE_FEED)
            if idx >= 0:
                raw = bytes(self._buffer[:idx + 1])
                del self._buffer[:idx + 1]
                line = raw.decode("ascii", errors="replace").rstrip("\r\n")
                self._lines_received += 1
                logger.debug(f"Received {line}")
                return line

            if cancel is not None and cancel.is_set():
                raise LinkCancelledError("Read cancelled")

            if self._clock() >= deadline:
                partial = bytes(self._buffer).decode("ascii", errors="replace").rstrip("\r\n")
                self._buffer.clear()
                self._timeouts += 1
                logger.debug(f"No LF received, discarding {partial!r}")
                raise LinkTimeoutError(partial)

            try:
                chunk = self._stream.read(self.config.read_size)
            except (serial.SerialException, OSError) as e:
                logger.error(f"Read error: {e}")
                raise LinkError(str(e)) from e
            if chunk:
                self._buffer.extend(chunk)

    def send_read(self, message: str) -> str:
        """
        Send a command and read its one line reply.

        A timeout is not retried; the partial (possibly empty) reply is
        returned instead.
        """
        self.send(message)
        self._sleep(self.config.settle_delay_s)
        try:
            return self.read_line()
        except LinkTimeoutError as e:
            return e.partial

    def sync(self) -> str:
        """
        Ping the safe until it acknowledges with our nonce.

        Returns:
            Status message

        Raises:
            HandshakeFailure: No matching PINGACK after all attempts
        """
        with self.exchange():
            self._state = LinkState.SYNCING
            for attempt in range(1, self.config.sync_attempts + 1):
                nonce = self._nonce_factory()
                logger.info(f"Attempt {attempt} connecting to safe")
                try:
                    self.send(f":ping:{nonce}:")
                except LinkError as e:
                    logger.warning(f"Ping failed: {e}")
                    continue
                expected = f"{PING_ACK}:{nonce}:"

                while True:
                    try:
                        line = self.read_line()
                    except LinkTimeoutError as e:
                        # Safe stopped talking to us
                        line = e.partial
                        if not line.endswith(expected):
                            logger.debug(f"No PINGACK, discarding {line!r}")
                            break
                    except LinkError as e:
                        logger.warning(f"Read failed during attempt {attempt}: {e}")
                        break
                    if line.endswith(expected):
                        logger.debug("Successful PINGACK received")
                        self._state = LinkState.CONNECTED
                        return "Connected to safe"
                    logger.debug(f"Discarding {line}")

            self._state = LinkState.IDLE
            raise HandshakeFailure("Failed to connect to safe")

    def close(self) -> None:
        """Close the underlying stream."""
        with self._lock:
            if self._state == LinkState.CLOSED:
                return
            self._stream.close()
            self._state = LinkState.CLOSED
        logger.info("Serial connection closed")


def open_serial(config: SafeConfig) -> serial.Serial:
    """
    Open the configured serial port.

    Raises:
        serial.SerialException: Port could not be opened
    """
    logger.info(f"Opening {config.serial_port} at {config.baudrate} baud")
    return serial.Serial(
        port=config.serial_port,
        baudrate=config.baudrate,
        timeout=config.read_timeout_s,
        write_timeout=config.line_timeout_s,
    )


def list_available_ports() -> List[Dict[str, str]]:
    """
    List all available serial ports.

    Returns:
        List of port information dictionaries
    """
    ports = []
    for port in serial.tools.list_ports.comports():
        ports.append({
            "device": port.device,
            "name": port.name,
            "description": port.description,
            "hwid": port.hwid,
            "manufacturer": port.manufacturer or "Unknown",
        })
    return ports
