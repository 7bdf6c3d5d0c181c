"""
Interface module - External interfaces to docstore.

This module contains:
- api.py: FastAPI REST API (create_app)
- cli.py: Command-line interface
"""

from docstore.interface.api import create_app

__all__ = [
    "create_app",
]
