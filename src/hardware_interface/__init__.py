"""
Hardware Interface Package
===========================
Communication layer for the safe's serial link:
- Configuration models
- Line-oriented device link with drain and ping handshake

This package abstracts the serial protocol and provides
request/response exchanges to the rest of the application.
"""

from .models import (
    LinkState,
    SafeConfig,
    default_serial_port,
)

from .device_link import (
    ByteStream,
    DeviceLink,
    HandshakeFailure,
    LinkCancelledError,
    LinkError,
    LinkTimeoutError,
    list_available_ports,
    open_serial,
)

__all__ = [
    "LinkState",
    "SafeConfig",
    "default_serial_port",
    "ByteStream",
    "DeviceLink",
    "HandshakeFailure",
    "LinkCancelledError",
    "LinkError",
    "LinkTimeoutError",
    "list_available_ports",
    "open_serial",
]
