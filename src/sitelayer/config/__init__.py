"""
Configuration for sitelayer.

Settings are read from SITELAYER_* environment variables and an optional
.env file. Components receive a Settings instance explicitly.
"""

from sitelayer.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
