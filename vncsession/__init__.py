"""
vncsession: supervisor for a headless Wayland compositor, its VNC server and a
Waydroid guest session.
"""

__version__ = "0.1.0"
