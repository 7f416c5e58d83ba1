"""
This module contains the default configuration settings for the VNC session supervisor.
It defines paths, process commands, polling parameters and rendering profiles.

These are defaults only. `vncsession.local.config.load_config` merges them with the
env file, the process environment and `overrides.json` into a `SessionConfig`.
"""

import pathlib

#* --- Core Paths ---
STATE_DIR = pathlib.Path("/var/lib/vncsession")
LOG_DIR = pathlib.Path("/var/log/vncsession")
ENV_FILE_PATH = pathlib.Path("/etc/vncsession/vncsession.env")
PID_FILE_NAME = "session.pid"
OVERRIDES_FILE_NAME = "overrides.json"

# Prefix for settings taken from the process environment (e.g. VNCSESSION_DISPLAY_USER)
ENV_PREFIX = "VNCSESSION_"

#* --- Identities & Runtime Directories ---
DISPLAY_USER = "waydroid"
RUNTIME_DIR_ROOT = pathlib.Path("/run/user")
# Empty means RUNTIME_DIR_ROOT/<supervisor uid>
SUPERVISOR_RUNTIME_DIR = ""
ENDPOINT_PATTERN = "wayland-*"

#* --- Rendering ---
RENDERING_MODE = "software"

COMPOSITOR_BASE_ENV = {
    "WLR_BACKENDS": "headless",
    "WLR_LIBINPUT_NO_DEVICES": "1",
}
SOFTWARE_RENDERING_ENV = {
    "LIBGL_ALWAYS_SOFTWARE": "1",
    "WLR_RENDERER_ALLOW_SOFTWARE": "1",
}
HARDWARE_VENDOR_ENV = {
    "intel": {
        "MESA_LOADER_DRIVER_OVERRIDE": "iris",
        "LIBVA_DRIVER_NAME": "iHD",
    },
    "amd": {
        "MESA_LOADER_DRIVER_OVERRIDE": "radeonsi",
        "LIBVA_DRIVER_NAME": "radeonsi",
    },
}

#* --- Process Commands ---
# Command templates are split with shlex; {address}, {port} and {config} are substituted.
COMPOSITOR_COMMAND = "sway"
DISPLAY_SERVER_COMMAND = "wayvnc {address} {port}"
DISPLAY_SERVER_CONFIG_COMMAND = "wayvnc -C {config}"
DISPLAY_SERVER_CONFIG = ""
GUEST_INIT_COMMAND = "waydroid init -f"
GUEST_INIT_FULL_ARGS = "-s GAPPS"
GUEST_RUNTIME_COMMAND = "waydroid container start"
GUEST_RUNTIME_STOP_COMMAND = "waydroid container stop"
GUEST_SESSION_COMMAND = "waydroid session start"
GUEST_SESSION_STOP_COMMAND = "waydroid session stop"
DBUS_LAUNCH_COMMAND = "dbus-launch --sh-syntax"

#* --- Remote Display ---
DISPLAY_BIND_ADDRESS = "0.0.0.0"
DISPLAY_BIND_PORT = 5900
# Empty means derive from DISPLAY_BIND_ADDRESS (wildcards probe loopback)
DISPLAY_PROBE_ADDRESS = ""

#* --- Guest Environment ---
FULL_INSTALL = True
INIT_MARKER_PATH = pathlib.Path("/var/lib/waydroid/overlay")
START_DBUS_SESSION = True

#* --- Polling & Timeouts (seconds) ---
DISCOVERY_INTERVAL = 1.0
DISCOVERY_MAX_ATTEMPTS = 30
READINESS_INTERVAL = 1.0
READINESS_MAX_ATTEMPTS = 10
PROBE_CONNECT_TIMEOUT = 1.0
BRIDGE_RETRY_DELAY = 0.5
INIT_TIMEOUT = 15 * 60
GUEST_RUNTIME_TIMEOUT = 120
STOP_COMMAND_TIMEOUT = 30
HEALTH_CHECK_INTERVAL = 10.0
GRACEFUL_SHUTDOWN_TIMEOUT = 2.0
# How long `vncsession stop` waits for the supervisor to exit
STOP_WAIT_TIMEOUT = 60.0

#* --- Diagnostics ---
LOG_TAIL_LINES = 20

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "RENDERING_MODE", "FULL_INSTALL",
    "DISPLAY_BIND_ADDRESS", "DISPLAY_BIND_PORT", "DISPLAY_SERVER_CONFIG",
    "HEALTH_CHECK_INTERVAL", "GRACEFUL_SHUTDOWN_TIMEOUT",
}

# Variable names understood for compatibility with shell-based deployments.
LEGACY_GPU_TYPE_VAR = "GPU_TYPE"
LEGACY_SOFTWARE_RENDERING_VAR = "SOFTWARE_RENDERING"
LEGACY_USE_GAPPS_VAR = "USE_GAPPS"

#* --- Process Titles ---
SUPERVISOR_PROCESS_TITLE = "VNCSession - Supervisor"
