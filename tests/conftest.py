from __future__ import annotations

import shlex
import shutil
import socket
import sys
import tempfile
import textwrap
import time
from pathlib import Path
from typing import Callable, Dict

import psutil
import pytest

from vncsession.local.config import SessionConfig, load_config
from vncsession.local.identity import Identity, current_identity

FAKE_COMPOSITOR = textwrap.dedent(
    """
    import os, socket, sys, time

    # Stand-in for a headless compositor: after a delay it creates its endpoint
    # socket in XDG_RUNTIME_DIR and serves it until terminated.
    delay = float(sys.argv[1]) if len(sys.argv) > 1 else 0.0
    name = sys.argv[2] if len(sys.argv) > 2 else "wayland-1"
    for key in ("WLR_BACKENDS", "LIBGL_ALWAYS_SOFTWARE", "MESA_LOADER_DRIVER_OVERRIDE", "WAYLAND_DISPLAY"):
        print(f"{key}={os.environ.get(key, '')}", flush=True)
    time.sleep(delay)
    path = os.path.join(os.environ["XDG_RUNTIME_DIR"], name)
    open(path + ".lock", "w").close()
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(path)
    srv.listen(8)
    print(f"listening on {path}", flush=True)
    while True:
        conn, _ = srv.accept()
        conn.close()
    """
)

FAKE_DISPLAY_SERVER = textwrap.dedent(
    """
    import os, socket, sys

    # Stand-in for the VNC server: refuses to start without its compositor endpoint.
    address, port = sys.argv[1], int(sys.argv[2])
    endpoint = os.path.join(os.environ["XDG_RUNTIME_DIR"], os.environ.get("WAYLAND_DISPLAY", "missing"))
    if not os.path.exists(endpoint):
        print(f"no compositor endpoint at {endpoint}", flush=True)
        sys.exit(1)
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind((address, port))
    srv.listen(16)
    print(f"serving {endpoint} on {address}:{port}", flush=True)
    while True:
        conn, _ = srv.accept()
        conn.close()
    """
)

FAKE_INIT = textwrap.dedent(
    """
    import os, sys

    # Stand-in for the guest initializer: counts its runs, optionally leaves a
    # partial marker behind and exits with the requested status.
    counter, status = sys.argv[1], int(sys.argv[2])
    with open(counter, "a") as f:
        f.write("run\\n")
    if len(sys.argv) > 3:
        os.makedirs(sys.argv[3], exist_ok=True)
    sys.exit(status)
    """
)


CRASHING_COMPOSITOR = textwrap.dedent(
    """
    import os, socket, subprocess, sys, time

    # Stand-in for a compositor with a helper child (like swaybg): serves its
    # endpoint and exits abruptly once the trigger file appears.
    pid_file, trigger = sys.argv[1], sys.argv[2]
    helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(120)"])
    with open(pid_file, "w") as f:
        f.write(str(helper.pid))
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(os.path.join(os.environ["XDG_RUNTIME_DIR"], "wayland-1"))
    srv.listen(8)
    while not os.path.exists(trigger):
        time.sleep(0.05)
    os._exit(1)
    """
)


def python_command(*args: object) -> str:
    """A command template running the current interpreter with `args`."""
    return " ".join(shlex.quote(str(arg)) for arg in (sys.executable, *args))


SLEEPER = python_command("-c", "import time; time.sleep(60)")
SUCCEED = python_command("-c", "pass")


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def process_gone(pid: int) -> bool:
    """True once `pid` no longer runs; zombies left for an init that does not reap count as gone."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def short_tmp() -> Path:
    # Unix socket paths are limited to ~108 bytes; pytest's tmp_path is often longer.
    path = Path(tempfile.mkdtemp(prefix="vs"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def identity() -> Identity:
    return current_identity()


@pytest.fixture
def fake_programs(tmp_path: Path) -> Dict[str, Path]:
    scripts = {}
    programs = (
        ("compositor", FAKE_COMPOSITOR),
        ("crashing_compositor", CRASHING_COMPOSITOR),
        ("display_server", FAKE_DISPLAY_SERVER),
        ("init", FAKE_INIT),
    )
    for name, source in programs:
        script = tmp_path / f"fake_{name}.py"
        script.write_text(source)
        scripts[name] = script
    return scripts


@pytest.fixture
def session_config(tmp_path: Path, short_tmp: Path, identity: Identity, fake_programs: Dict[str, Path]) -> SessionConfig:
    """A configuration running the whole session against fake programs in temporary directories."""
    state_dir = tmp_path / "state"
    return load_config(
        environ={"VNCSESSION_STATE_DIR": str(state_dir)},
        env_file=tmp_path / "missing.env",
        overrides={
            "LOG_DIR": tmp_path / "logs",
            "DISPLAY_USER": identity.name,
            "RUNTIME_DIR_ROOT": short_tmp / "run",
            "SUPERVISOR_RUNTIME_DIR": str(short_tmp / "sup"),
            "INIT_MARKER_PATH": tmp_path / "overlay",
            "COMPOSITOR_COMMAND": python_command(fake_programs["compositor"], "0.2"),
            "DISPLAY_SERVER_COMMAND": python_command(fake_programs["display_server"]) + " {address} {port}",
            "DISPLAY_BIND_ADDRESS": "127.0.0.1",
            "DISPLAY_BIND_PORT": free_port(),
            "GUEST_INIT_COMMAND": python_command(fake_programs["init"], tmp_path / "init_runs", 0),
            "GUEST_INIT_FULL_ARGS": "",
            "GUEST_RUNTIME_COMMAND": SUCCEED,
            "GUEST_RUNTIME_STOP_COMMAND": "",
            "GUEST_SESSION_COMMAND": SLEEPER,
            "GUEST_SESSION_STOP_COMMAND": "",
            "START_DBUS_SESSION": False,
            "DISCOVERY_INTERVAL": 0.1,
            "DISCOVERY_MAX_ATTEMPTS": 50,
            "READINESS_INTERVAL": 0.1,
            "READINESS_MAX_ATTEMPTS": 50,
            "PROBE_CONNECT_TIMEOUT": 0.5,
            "BRIDGE_RETRY_DELAY": 0.0,
            "INIT_TIMEOUT": 20,
            "GUEST_RUNTIME_TIMEOUT": 20,
            "HEALTH_CHECK_INTERVAL": 0.2,
            "GRACEFUL_SHUTDOWN_TIMEOUT": 1.0,
        },
    )
