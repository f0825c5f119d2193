"""
Hardware Interface - Data Models
=================================
Pydantic models and enums for the safe's serial link and service configuration.

These models validate everything read from the configuration file before a
serial port is ever opened.
"""

from __future__ import annotations
import sys
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, model_validator


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def default_serial_port() -> str:
    """OS dependent default serial device."""
    if sys.platform.startswith("win"):
        return "COM1"
    return "/dev/ttyUSB0"


class LinkState(str, Enum):
    """Device link session state."""
    IDLE = "idle"
    DRAINING = "draining"
    SYNCING = "syncing"
    CONNECTED = "connected"
    CLOSED = "closed"


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

class SafeConfig(BaseModel):
    """
    Service configuration.

    Loaded from a YAML file; every field has a default so an empty or
    missing file still yields a usable configuration.
    """
    # Serial link
    serial_port: str = Field(default_factory=default_serial_port)
    baudrate: int = Field(9600, gt=0)
    read_timeout_s: float = Field(0.1, gt=0, description="Timeout of a single serial read")
    line_timeout_s: float = Field(1.0, gt=0, description="Time allowed to receive one full line")
    settle_delay_s: float = Field(1.0, ge=0, description="Pause for the device after a burst or command")
    read_size: int = Field(128, gt=0)
    drain_max_reads: Optional[int] = Field(None, gt=0, description="Cap on drain iterations (None = unbounded)")
    sync_attempts: int = Field(5, gt=0)

    # HTTP listener
    listen_host: str = "0.0.0.0"
    listen_port: int = Field(5000, gt=0, lt=65536)
    auth_user: Optional[str] = None
    auth_pass: Optional[str] = None

    # Static content
    html_dir: Path = PROJECT_ROOT / "static"
    lock_image: Optional[Path] = None

    # Long running "open" command
    open_deadline_s: float = Field(300.0, gt=0)
    default_open_duration: str = "5"

    @model_validator(mode="after")
    def _default_lock_image(self) -> SafeConfig:
        if self.lock_image is None:
            self.lock_image = self.html_dir / "lock_image.jpg"
        return self

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_user)

    def summary(self) -> Dict[str, Any]:
        """Settings worth printing at startup (never the auth password)."""
        return {
            "serial_port": self.serial_port,
            "baudrate": self.baudrate,
            "listen": f"{self.listen_host}:{self.listen_port}",
            "html_dir": str(self.html_dir),
            "lock_image": str(self.lock_image),
            "auth": "enabled" if self.auth_enabled else "disabled",
        }
