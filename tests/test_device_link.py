"""
Tests for the serial device link.
"""

import threading

import pytest
import serial

from hardware_interface import (
    DeviceLink,
    HandshakeFailure,
    LinkCancelledError,
    LinkError,
    LinkState,
    LinkTimeoutError,
    SafeConfig,
)
from conftest import FakeSerial


class PingResponder:
    """Acknowledges pings only from the ``ack_from``-th attempt onward."""

    def __init__(self, ack_from: int, noise: bool = False):
        self.ack_from = ack_from
        self.noise = noise
        self.pings = 0
        self.last_nonce = None

    def __call__(self, message: str):
        self.pings += 1
        nonce = message.split(":")[2]
        replies = []
        if self.noise:
            replies.append(b"booting...\r\n")
            if self.last_nonce is not None:
                replies.append(f"PINGACK:{self.last_nonce}:\r\n".encode())
        if self.pings >= self.ack_from:
            replies.append(f"PINGACK:{nonce}:\r\n".encode())
        self.last_nonce = nonce
        return replies


def counting_nonces():
    counter = iter(range(1000, 2000))
    return lambda: str(next(counter))


class BrokenPort(FakeSerial):
    """Every read fails the way an unplugged USB adapter does."""

    def read(self, size=1):
        raise OSError(5, "Input/output error")


class GlitchyPort(FakeSerial):
    """The read right after the first command fails once."""

    def __init__(self, clock, responder=None):
        super().__init__(clock, responder=responder)
        self.fail_next = False
        self.failures = 0

    def write(self, data):
        written = super().write(data)
        if len(self.writes) == 1:
            self.fail_next = True
        return written

    def read(self, size=1):
        if self.fail_next:
            self.fail_next = False
            self.failures += 1
            raise serial.SerialException("device reports readiness to read but returned no data")
        return super().read(size)


class TestDrain:
    """Discarding unsolicited bytes."""

    def test_consumes_everything_pending(self, clock, config):
        stream = FakeSerial(clock)
        stream.feed(b"x" * 300)
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.drain() == 300
        assert not stream.pending
        # One settle pause per non-empty read (128 + 128 + 44)
        assert clock.sleeps.count(config.settle_delay_s) == 3

    def test_later_bytes_survive(self, clock, config):
        stream = FakeSerial(clock)
        stream.feed(b"garbage\r\n")
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        link.drain()
        stream.feed(b"fresh\r\n")

        assert link.read_line() == "fresh"

    def test_quiet_device_returns_immediately(self, clock, config):
        link = DeviceLink(FakeSerial(clock), config, sleep=clock.sleep, clock=clock)
        assert link.drain() == 0
        assert clock.sleeps == [0.1]  # the single empty read

    def test_drain_cap(self, clock, tmp_path):
        class Chatterbox(FakeSerial):
            def read(self, size=1):
                return b"z"

        config = SafeConfig(html_dir=tmp_path, drain_max_reads=4)
        link = DeviceLink(Chatterbox(clock), config, sleep=clock.sleep, clock=clock)

        assert link.drain() == 4

    def test_read_error_ends_drain(self, clock, config):
        link = DeviceLink(BrokenPort(clock), config, sleep=clock.sleep, clock=clock)
        assert link.drain() == 0

    def test_restores_state(self, link):
        link._state = LinkState.CONNECTED
        link.drain()
        assert link.state == LinkState.CONNECTED


class TestReadLine:
    """Line framing with timeout."""

    def test_strips_crlf(self, clock, config):
        stream = FakeSerial(clock)
        stream.feed(b"OK done\r\nnext\n")
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.read_line() == "OK done"
        assert link.read_line() == "next"

    def test_timeout_without_terminator(self, clock, config):
        stream = FakeSerial(clock)
        stream.feed(b"half a li")
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        with pytest.raises(LinkTimeoutError) as excinfo:
            link.read_line()

        assert excinfo.value.partial == "half a li"
        assert clock.now >= config.line_timeout_s
        assert link.statistics["timeouts"] == 1

    def test_partial_is_discarded(self, clock, config):
        stream = FakeSerial(clock)
        stream.feed(b"stale")
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        with pytest.raises(LinkTimeoutError):
            link.read_line()
        stream.feed(b"OK\r\n")

        assert link.read_line() == "OK"

    def test_cancel(self, clock, config):
        link = DeviceLink(FakeSerial(clock), config, sleep=clock.sleep, clock=clock)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(LinkCancelledError):
            link.read_line(cancel=cancel)


    def test_port_error_raises_link_error(self, clock, config):
        link = DeviceLink(BrokenPort(clock), config, sleep=clock.sleep, clock=clock)

        with pytest.raises(LinkError, match="Input/output error"):
            link.read_line()


class TestSendRead:
    """Single shot exchanges."""

    def test_drains_before_sending(self, clock, config, fake_safe):
        stream = FakeSerial(clock, responder=fake_safe)
        stream.feed(b"leftover from last time\r\n")
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.send_read(":status::") == "OK unlocked"
        assert stream.commands == [":status::"]

    def test_settle_delay_after_send(self, link, clock, config):
        link.send_read(":status::")
        assert config.settle_delay_s in clock.sleeps

    def test_timeout_returns_partial(self, clock, config):
        stream = FakeSerial(clock, responder=lambda message: [b"ERR"])
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.send_read(":status::") == "ERR"

    def test_silent_device_returns_empty(self, clock, config):
        link = DeviceLink(FakeSerial(clock), config, sleep=clock.sleep, clock=clock)
        assert link.send_read(":status::") == ""

    def test_write_error_raises_link_error(self, clock, config):
        class ReadOnlyPort(FakeSerial):
            def write(self, data):
                raise serial.SerialException("write failed")

        link = DeviceLink(ReadOnlyPort(clock), config, sleep=clock.sleep, clock=clock)

        with pytest.raises(LinkError, match="write failed"):
            link.send_read(":status::")


class TestSync:
    """Nonce tagged handshake."""

    @pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
    def test_succeeds_on_nth_attempt(self, clock, config, attempt):
        responder = PingResponder(ack_from=attempt)
        stream = FakeSerial(clock, responder=responder)
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.sync() == "Connected to safe"
        assert link.is_connected
        assert responder.pings == attempt

    def test_fails_after_five_attempts(self, clock, config):
        responder = PingResponder(ack_from=6)
        link = DeviceLink(FakeSerial(clock, responder=responder), config, sleep=clock.sleep, clock=clock)

        with pytest.raises(HandshakeFailure, match="Failed to connect to safe"):
            link.sync()

        assert responder.pings == 5
        assert not link.is_connected

    def test_ping_format(self, clock, config):
        stream = FakeSerial(clock, responder=PingResponder(ack_from=1))
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock, nonce_factory=lambda: "4242")

        link.sync()

        assert stream.commands == [":ping:4242:"]

    def test_stale_ack_is_ignored(self, clock, config):
        # Every reply carries the previous attempt's ack before the current one
        responder = PingResponder(ack_from=3, noise=True)
        link = DeviceLink(
            FakeSerial(clock, responder=responder),
            config,
            sleep=clock.sleep,
            clock=clock,
            nonce_factory=counting_nonces(),
        )

        link.sync()

        assert responder.pings == 3

    def test_ack_may_carry_prefix(self, clock, config):
        stream = FakeSerial(clock, responder=lambda m: [f"\x00junk PINGACK:{m.split(':')[2]}:\r\n".encode()])
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.sync() == "Connected to safe"


    def test_port_error_moves_to_next_attempt(self, clock, config):
        responder = PingResponder(ack_from=1)
        stream = GlitchyPort(clock, responder=responder)
        link = DeviceLink(stream, config, sleep=clock.sleep, clock=clock)

        assert link.sync() == "Connected to safe"
        assert stream.failures == 1
        assert responder.pings == 2

    def test_dead_port_exhausts_attempts(self, clock, config):
        link = DeviceLink(BrokenPort(clock), config, sleep=clock.sleep, clock=clock)

        with pytest.raises(HandshakeFailure):
            link.sync()

        assert link.state == LinkState.IDLE


class TestLifecycle:
    """Exclusive ownership and shutdown."""

    def test_close_is_idempotent(self, link, stream):
        link.close()
        link.close()
        assert stream.closed
        assert link.state == LinkState.CLOSED

    def test_exchange_is_exclusive(self, link):
        entered = threading.Event()
        released = threading.Event()
        second_entered = threading.Event()

        def hold():
            with link.exchange():
                entered.set()
                released.wait(timeout=5)

        def contend():
            with link.exchange():
                second_entered.set()

        holder = threading.Thread(target=hold)
        holder.start()
        entered.wait(timeout=5)

        contender = threading.Thread(target=contend)
        contender.start()
        assert not second_entered.wait(timeout=0.2)

        released.set()
        holder.join(timeout=5)
        contender.join(timeout=5)
        assert second_entered.is_set()

    def test_statistics(self, link):
        link.send_read(":status::")
        stats = link.statistics
        assert stats["lines_sent"] == 1
        assert stats["lines_received"] == 1
        assert stats["state"] == "idle"
