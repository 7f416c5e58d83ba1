"""
Local package for the vncsession supervisor.

This package provides the configuration loader, the session model and error
taxonomy, and the supervisor that drives a session.
"""

from .config import SessionConfig, load_config

__all__ = ["SessionConfig", "load_config"]
