"""
Core module for the admin control plane.

This module contains core functionality including:
- Configuration management
- Store access (DynamoDB)
- Security utilities (JWT, password hashing, role gate)
- Error taxonomy and logging setup
"""

from .config import Settings, get_settings
from .errors import AdminError, ErrorKind

__all__ = [
    "Settings",
    "get_settings",
    "AdminError",
    "ErrorKind",
]
