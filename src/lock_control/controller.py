"""
Lock Controller
================
Command surface of the safe, composed from DeviceLink exchanges and the
password image codec.

Every public operation runs inside exactly one ``DeviceLink.exchange()``;
validation happens before the exchange starts so rejected input never
reaches the device.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from loguru import logger

from hardware_interface import DeviceLink, LinkError, LinkTimeoutError
from image_codec import ImageRecord, embed_password, extract_password
from .validation import ValidationError, generate_password, validate_duration, validate_password


OPEN_COMPLETED = "OK completed"
PASSWORD_COMMANDS = ("unlock", "clear", "test")
PASSWORD_IMAGE_MEDIA_TYPE = "binary/octet-stream"


class CommandFailedError(RuntimeError):
    """The safe answered a command with something other than OK."""


@dataclass(frozen=True)
class PasswordImage:
    """A downloadable image carrying a freshly set password."""
    password: str
    data: bytes
    filename: str
    media_type: str = PASSWORD_IMAGE_MEDIA_TYPE


def is_ok(reply: str) -> bool:
    return reply.startswith("OK")


class LockController:
    """
    High level operations on the safe.

    Args:
        link: Synchronized device link (shared, exclusively owned)
        lock_image: Template image used for password downloads
        open_deadline_s: Upper bound on a streamed "open" exchange
        default_open_duration: Duration used when none is given
    """

    def __init__(
        self,
        link: DeviceLink,
        lock_image: ImageRecord,
        open_deadline_s: float = 300.0,
        default_open_duration: str = "5",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.link = link
        self.lock_image = lock_image
        self.open_deadline_s = open_deadline_s
        self.default_open_duration = default_open_duration
        self._clock = clock

    def _once(self, command: str) -> str:
        with self.link.exchange():
            return self.link.send_read(command)

    def status(self) -> str:
        return self._once(":status::")

    def run(self, verb: str, password: str) -> str:
        """
        Validate ``password`` and send ``:<verb>:<password>:``.

        Only the password commands in ``PASSWORD_COMMANDS`` are accepted;
        ``lock`` and ``open`` have their own operations.
        """
        if verb not in PASSWORD_COMMANDS:
            raise ValueError(f"Unsupported password command: {verb}")
        validate_password(password)
        logger.info(f"Sending {verb} command")
        return self._once(f":{verb}:{password}:")

    def unlock(self, password: str) -> str:
        """Single unlock attempt."""
        return self.run("unlock", password)

    def clear(self, password: str) -> str:
        """Unlock and clear the stored password."""
        return self.run("clear", password)

    def test(self, password: str) -> str:
        """Check a password without unlocking."""
        return self.run("test", password)

    def lock(self, password: str, confirmation: str) -> List[str]:
        """
        Set a new password and immediately test it.

        Returns:
            [lock reply, test reply]
        """
        if password != confirmation:
            raise ValidationError("ERROR Passwords don't match")
        validate_password(password)

        with self.link.exchange():
            set_reply = self.link.send_read(f":lock:{password}:")
            test_reply = self.link.send_read(f":test:{password}:")
        return [set_reply, test_reply]

    def stream_open(
        self,
        duration: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """
        Open the safe for ``duration`` seconds, yielding progress lines.

        The first yielded line is the immediate reply. If that is ``OK``, the
        device keeps reporting until ``OK completed``; the stream also ends
        when ``cancel`` is set, the open deadline passes or the link fails.
        """
        duration = validate_duration(duration or self.default_open_duration)

        with self.link.exchange():
            reply = self.link.send_read(f":open:{duration}:")
            yield reply
            if not is_ok(reply):
                return

            logger.debug("Looping on input")
            deadline = self._clock() + self.open_deadline_s
            while reply != OPEN_COMPLETED:
                if self._clock() >= deadline:
                    logger.warning(f"Open did not complete within {self.open_deadline_s}s")
                    break
                try:
                    reply = self.link.read_line(cancel=cancel)
                except LinkTimeoutError:
                    continue
                except LinkError as e:
                    logger.warning(f"Open stream ended: {e}")
                    break
                if reply:
                    yield reply
            logger.debug("Loop done")

    def open(
        self,
        observer: Callable[[str], None],
        duration: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Run ``stream_open`` to completion, forwarding each line to ``observer``."""
        for line in self.stream_open(duration, cancel=cancel):
            observer(line)

    def random_password_image(self) -> PasswordImage:
        """
        Lock the safe with a random password and wrap it in an image.

        Raises:
            CommandFailedError: Setting or testing the password failed
        """
        password = generate_password()
        with self.link.exchange():
            reply = self.link.send_read(f":lock:{password}:")
            if not is_ok(reply):
                raise CommandFailedError(f"Error setting password: {reply}")
            reply = self.link.send_read(f":test:{password}:")
            if not is_ok(reply):
                raise CommandFailedError(
                    f"Error testing password: {reply}\nWe tried to set it to: {password}"
                )

        filename = f"safe-{datetime.now():%Y%m%d-%H%M%S}.jpg"
        logger.info(f"Random password set, sending {filename}")
        return PasswordImage(
            password=password,
            data=embed_password(self.lock_image, password),
            filename=filename,
        )

    def command_from_image(self, verb: str, data: Optional[bytes]) -> str:
        """
        Run ``unlock``, ``clear`` or ``test`` with the password in an image.

        Raises:
            ValidationError: No file, or the embedded password is invalid
            FormatError: Upload is not a parsable image
            NotPasswordImageError: Image has no password comment
        """
        if verb not in PASSWORD_COMMANDS:
            raise ValueError(f"Unsupported password command: {verb}")
        if not data:
            raise ValidationError("No file selected")
        return self.run(verb, extract_password(data))
