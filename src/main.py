"""
Safe Controller - Main Application Entry Point
===============================================
Web control for an electronic safe attached over a serial port.

Startup order:
- Load configuration (YAML)
- Load the lock image template used for password downloads
- Open the serial port and handshake with the safe
- Serve the HTTP front end

Any failure before the handshake succeeds is fatal; the service never
accepts requests without a confirmed link to the safe.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

import serial
import uvicorn
import yaml
from loguru import logger
from pydantic import ValidationError as ConfigValidationError

# Add src to path for imports
SRC_DIR = Path(__file__).parent
PROJECT_ROOT = SRC_DIR.parent
sys.path.insert(0, str(SRC_DIR))

from hardware_interface import DeviceLink, LinkError, SafeConfig, list_available_ports, open_serial
from image_codec import FormatError, load_image
from lock_control import LockController
from webapp import create_app


DEFAULT_CONFIG_PATH = Path.home() / ".safe.yaml"
TRUE_VALUES = {"1", "true", "yes", "on"}


class StartupError(RuntimeError):
    """The service cannot start; the message says why."""


class SafeApplication:
    """
    Main application class.

    Owns the single DeviceLink and wires it to the controller and web app.
    """

    VERSION = "1.0.0"

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration YAML file
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self.config = self._load_config()

        self.link: Optional[DeviceLink] = None
        self.controller: Optional[LockController] = None

        logger.info(f"Safe Controller v{self.VERSION} initialized")

    def _load_config(self) -> SafeConfig:
        """Load configuration from YAML file."""
        logger.info(f"Using configuration file {self.config_path}")
        raw = {}
        if self.config_path.exists():
            with open(self.config_path, "r") as f:
                raw = yaml.safe_load(f) or {}
        else:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")

        try:
            return SafeConfig(**raw)
        except ConfigValidationError as e:
            raise StartupError(f"Invalid configuration in {self.config_path}:\n{e}") from e

    def start(self) -> None:
        """Load the lock image, open the serial port and synchronize."""
        for key, value in self.config.summary().items():
            logger.info(f"  {key} = {value}")

        try:
            lock_image = load_image(self.config.lock_image)
        except FileNotFoundError as e:
            raise StartupError(f"Could not open file {self.config.lock_image}") from e
        except FormatError as e:
            raise StartupError(f"Lock image {self.config.lock_image} is unusable: {e}") from e
        logger.info("Lock image loaded")

        try:
            port = open_serial(self.config)
        except serial.SerialException as e:
            raise StartupError(f"Could not open serial port: {e}") from e

        self.link = DeviceLink(port, self.config)
        try:
            self.link.sync()
        except LinkError as e:
            self.link.close()
            raise StartupError(str(e)) from e
        logger.success("Successfully connected to safe")

        self.controller = LockController(
            self.link,
            lock_image,
            open_deadline_s=self.config.open_deadline_s,
            default_open_duration=self.config.default_open_duration,
        )
        logger.info(f"Safe status: {self.controller.status()}")

    def serve(self) -> None:
        """Run the HTTP server until interrupted."""
        if self.controller is None:
            raise RuntimeError("Must start before serving")

        app = create_app(self.config, self.controller)
        uvicorn.run(
            app,
            host=self.config.listen_host,
            port=self.config.listen_port,
            log_level="info",
        )

    def stop(self) -> None:
        """Release the serial port."""
        if self.link:
            self.link.close()
        logger.info("Safe Controller stopped")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    logger.remove()  # Remove default handler

    level = "DEBUG" if verbose else "INFO"

    # Console handler with custom format
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    # File handler for debug logs
    log_dir = PROJECT_ROOT / "logs"
    log_dir.mkdir(exist_ok=True)

    logger.add(
        log_dir / "safe_{time}.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG"
    )


def debug_from_env() -> bool:
    """``DEBUG=1`` in the environment turns on verbose logging."""
    return os.environ.get("DEBUG", "").strip().lower() in TRUE_VALUES


def print_ports() -> int:
    """Print the serial ports pyserial can see, one per line."""
    ports = list_available_ports()
    if not ports:
        print("No serial ports found")
    for port in ports:
        print(f"{port['device']}\t{port['description']} ({port['manufacturer']})")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Safe Controller - web control for a serial attached safe"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Override the HTTP listen port"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List the serial ports on this machine and exit"
    )

    args = parser.parse_args(argv)

    if args.list_ports:
        return print_ports()

    # Setup logging
    setup_logging(args.verbose or debug_from_env())

    app = None
    try:
        app = SafeApplication(config_path=args.config)
        if args.port is not None:
            app.config.listen_port = args.port
        app.start()
        app.serve()
    except StartupError as e:
        logger.critical(str(e))
        return 1
    finally:
        if app is not None:
            app.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
