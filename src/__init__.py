"""
Safe Controller - Core Package
===============================
Web control for an electronic safe attached over a half-duplex serial link.

Modules:
--------
- hardware_interface: Serial device link and configuration models
- image_codec: JPEG segment codec and password images
- lock_control: Safe operations (open, lock, unlock, clear, test, status)
- webapp: HTTP front end
"""

__version__ = "1.0.0"
__author__ = "Safe Controller Team"
__license__ = "MIT"

from pathlib import Path

# Package root directory
PACKAGE_ROOT = Path(__file__).parent
PROJECT_ROOT = PACKAGE_ROOT.parent

# Static front end and lock image template
STATIC_DIR = PROJECT_ROOT / "static"
LOGS_DIR = PROJECT_ROOT / "logs"
