import os
import socket
import stat
import threading
import time
from pathlib import Path

import pytest

from vncsession.local.errors import BridgeError, SessionCancelled
from vncsession.local.session import Endpoint
from vncsession.local.supervisor import bridge, runtime_dir


@pytest.fixture
def endpoint(short_tmp: Path, identity):
    display_dir = runtime_dir.ensure_runtime_dir(identity, short_tmp / "display")
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.bind(str(display_dir / "wayland-1"))
    s.listen(1)
    os.chmod(display_dir / "wayland-1", 0o700)
    yield Endpoint(display_dir / "wayland-1", identity)
    s.close()


@pytest.fixture
def link_dir(short_tmp: Path, identity) -> Path:
    return runtime_dir.ensure_runtime_dir(identity, short_tmp / "sup")


def test_link_resolves_to_endpoint_and_is_connectable(endpoint: Endpoint, link_dir: Path) -> None:
    link = bridge.bridge_endpoint(endpoint, link_dir, 0.0)

    assert link == link_dir / "wayland-1"
    assert link.is_symlink()
    assert os.stat(link).st_ino == os.stat(endpoint.path).st_ino
    assert stat.S_IMODE(os.stat(endpoint.path).st_mode) == 0o777
    assert stat.S_IMODE(os.stat(endpoint.path.parent).st_mode) == 0o700
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
        client.connect(str(link))


def test_existing_link_is_replaced(endpoint: Endpoint, link_dir: Path) -> None:
    os.symlink(link_dir / "stale-target", link_dir / "wayland-1")
    link = bridge.bridge_endpoint(endpoint, link_dir, 0.0)
    assert os.readlink(link) == str(endpoint.path)


def test_same_directory_needs_no_link(endpoint: Endpoint) -> None:
    link = bridge.bridge_endpoint(endpoint, endpoint.path.parent, 0.0)
    assert link == endpoint.path
    assert not link.is_symlink()
    assert stat.S_IMODE(os.stat(endpoint.path).st_mode) == 0o777


def test_transient_failure_is_retried_once(endpoint: Endpoint, link_dir: Path, monkeypatch) -> None:
    calls = []
    real_bridge_once = bridge._bridge_once

    def flaky(ep, directory):
        calls.append(ep)
        if len(calls) == 1:
            raise FileNotFoundError(str(ep.path))
        return real_bridge_once(ep, directory)

    monkeypatch.setattr(bridge, "_bridge_once", flaky)
    link = bridge.bridge_endpoint(endpoint, link_dir, 0.0)
    assert len(calls) == 2
    assert os.stat(link).st_ino == os.stat(endpoint.path).st_ino


def test_vanished_endpoint_raises_after_retry(endpoint: Endpoint, link_dir: Path, monkeypatch) -> None:
    calls = []
    real_bridge_once = bridge._bridge_once

    def counting(ep, directory):
        calls.append(ep)
        return real_bridge_once(ep, directory)

    monkeypatch.setattr(bridge, "_bridge_once", counting)
    endpoint.path.unlink()
    with pytest.raises(BridgeError) as exc_info:
        bridge.bridge_endpoint(endpoint, link_dir, 0.0)
    assert len(calls) == 2
    assert exc_info.value.exit_code == 14
    assert not (link_dir / "wayland-1").exists()


def test_non_socket_endpoint_is_rejected(tmp_path: Path, link_dir: Path, identity) -> None:
    fake = tmp_path / "wayland-1"
    fake.write_text("not a socket")
    with pytest.raises(BridgeError):
        bridge.bridge_endpoint(Endpoint(fake, identity), link_dir, 0.0)


def test_shutdown_request_interrupts_retry_wait(endpoint: Endpoint, link_dir: Path) -> None:
    endpoint.path.unlink()
    cancel_event = threading.Event()
    threading.Timer(0.2, cancel_event.set).start()
    start = time.monotonic()
    with pytest.raises(SessionCancelled):
        bridge.bridge_endpoint(endpoint, link_dir, 30.0, cancel_event)
    assert time.monotonic() - start < 3
