"""
The Supervisor package.
Manages the lifecycle of one remote-display session.

This package contains the central SessionSupervisor class and its helper modules,
which together handle runtime directories, endpoint discovery, the privilege bridge,
starting, health-checking and stopping of all session components.
"""
from .supervisor import SessionSupervisor

__all__ = ['SessionSupervisor']
