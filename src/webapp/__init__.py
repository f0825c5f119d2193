"""
Web Application Package
========================
FastAPI front end for the safe controller.
"""

from .server import create_app, check_basic_auth

__all__ = ["create_app", "check_basic_auth"]
