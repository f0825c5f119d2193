"""
Shared test fixtures
=====================
Fake serial stream, fake clock and a scripted safe so the device link can be
exercised without hardware or real sleeping.
"""

import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hardware_interface import DeviceLink, SafeConfig
from image_codec import ImageRecord
from lock_control import LockController


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSerial:
    """
    In-memory byte stream.

    ``read`` returns whatever is pending (up to ``size``); an empty read
    costs one read timeout on the fake clock, like a real port would.
    """

    def __init__(
        self,
        clock: FakeClock,
        responder: Optional[Callable[[str], List[bytes]]] = None,
        read_timeout: float = 0.1,
    ):
        self.clock = clock
        self.responder = responder
        self.read_timeout = read_timeout
        self.pending = bytearray()
        self.writes: List[bytes] = []
        self.closed = False

    def feed(self, data: bytes) -> None:
        self.pending.extend(data)

    def read(self, size: int = 1) -> bytes:
        if not self.pending:
            self.clock.sleep(self.read_timeout)
            return b""
        chunk = bytes(self.pending[:size])
        del self.pending[:size]
        return chunk

    def write(self, data: bytes) -> int:
        self.writes.append(data)
        if self.responder:
            for reply in self.responder(data.decode("ascii")):
                self.feed(reply)
        return len(data)

    def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> List[str]:
        return [w.decode("ascii") for w in self.writes]


class FakeSafe:
    """Scripted safe speaking the ``:<verb>:<arg>:`` protocol."""

    def __init__(self, password: str = "", open_ticks: int = 3):
        self.password = password
        self.open_ticks = open_ticks
        self.lock_reply: Optional[str] = None
        self.test_reply: Optional[str] = None
        self.received: List[str] = []

    def __call__(self, message: str) -> List[bytes]:
        self.received.append(message)
        _, verb, arg, _ = message.split(":")
        lines = getattr(self, f"_{verb}")(arg)
        return [f"{line}\r\n".encode("ascii") for line in lines]

    def _ping(self, nonce: str) -> List[str]:
        return [f"PINGACK:{nonce}:"]

    def _status(self, _: str) -> List[str]:
        return ["OK locked" if self.password else "OK unlocked"]

    def _lock(self, password: str) -> List[str]:
        if self.lock_reply is not None:
            return [self.lock_reply]
        self.password = password
        return ["OK password set"]

    def _test(self, password: str) -> List[str]:
        if self.test_reply is not None:
            return [self.test_reply]
        return ["OK good password"] if password == self.password else ["ERROR bad password"]

    def _unlock(self, password: str) -> List[str]:
        return ["OK unlocked"] if password == self.password else ["ERROR bad password"]

    def _clear(self, password: str) -> List[str]:
        if password != self.password:
            return ["ERROR bad password"]
        self.password = ""
        return ["OK unlocked and cleared"]

    def _open(self, duration: str) -> List[str]:
        if self.password:
            return ["ERROR safe is locked"]
        ticks = [f"Closing in {n}" for n in range(self.open_ticks, 0, -1)]
        return [f"OK opening for {duration}"] + ticks + ["OK completed"]


def make_segment(marker: int, payload: bytes) -> bytes:
    length = len(payload) + 2
    return bytes([0xFF, marker, length >> 8, length & 0xFF]) + payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return SafeConfig(serial_port="/dev/null", html_dir=tmp_path, open_deadline_s=30.0)


@pytest.fixture
def fake_safe():
    return FakeSafe()


@pytest.fixture
def stream(clock, fake_safe):
    return FakeSerial(clock, responder=fake_safe)


@pytest.fixture
def link(stream, config, clock):
    return DeviceLink(stream, config, sleep=clock.sleep, clock=clock)


@pytest.fixture
def lock_image():
    return ImageRecord(
        comment=b"template",
        start_of_frame=b"\x08\x00\x10\x00\x10\x01\x01\x11\x00",
        start_of_scan=b"\x01\x01\x00\x00\x3f\x00",
        quantization_tables=(b"\x00" + bytes(range(64)),),
        huffman_tables=(b"\x00" + b"\x01" * 16 + b"\x00", b"\x10" + b"\x00" * 16),
        scan_data=b"\xd2\xcf\x20\xff\x00\x12",
    )


@pytest.fixture
def controller(link, lock_image, config, clock):
    return LockController(
        link,
        lock_image,
        open_deadline_s=config.open_deadline_s,
        clock=clock,
    )
