import os
import socket
import stat
from pathlib import Path

import pytest

from vncsession.local.errors import SetupError
from vncsession.local.supervisor import runtime_dir


def _mode(path: Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def _bound_socket(path: Path, listen: bool) -> socket.socket:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.bind(str(path))
    if listen:
        s.listen(1)
    return s


def test_runtime_dir_for(identity) -> None:
    assert runtime_dir.runtime_dir_for(identity, Path("/run/user")) == Path(f"/run/user/{identity.uid}")


def test_ensure_runtime_dir_creates_private_dir(tmp_path: Path, identity) -> None:
    path = tmp_path / "run" / str(identity.uid)
    assert runtime_dir.ensure_runtime_dir(identity, path) == path
    assert path.is_dir()
    assert _mode(path) == 0o700
    assert os.stat(path).st_uid == identity.uid


def test_ensure_runtime_dir_is_idempotent_and_fixes_mode(tmp_path: Path, identity) -> None:
    path = tmp_path / "rt"
    path.mkdir(mode=0o755)
    os.chmod(path, 0o755)
    (path / "keep").write_text("x")
    runtime_dir.ensure_runtime_dir(identity, path)
    runtime_dir.ensure_runtime_dir(identity, path)
    assert _mode(path) == 0o700
    assert (path / "keep").read_text() == "x"


def test_ensure_runtime_dir_rejects_file(tmp_path: Path, identity) -> None:
    path = tmp_path / "rt"
    path.write_text("not a directory")
    with pytest.raises(SetupError):
        runtime_dir.ensure_runtime_dir(identity, path)


def test_list_endpoints_only_returns_sockets(short_tmp: Path) -> None:
    s1 = _bound_socket(short_tmp / "wayland-1", listen=True)
    s0 = _bound_socket(short_tmp / "wayland-0", listen=True)
    try:
        (short_tmp / "wayland-1.lock").write_text("")
        (short_tmp / "wayland-2").write_text("regular file")
        (short_tmp / "pulse").mkdir()
        found = runtime_dir.list_endpoints(short_tmp, "wayland-*")
        assert found == [short_tmp / "wayland-0", short_tmp / "wayland-1"]
    finally:
        s0.close()
        s1.close()


def test_list_endpoints_missing_directory(tmp_path: Path) -> None:
    assert runtime_dir.list_endpoints(tmp_path / "absent", "wayland-*") == []


def test_remove_stale_endpoints(short_tmp: Path) -> None:
    live = _bound_socket(short_tmp / "wayland-1", listen=True)
    dead = _bound_socket(short_tmp / "wayland-0", listen=False)
    dead.close()
    try:
        (short_tmp / "wayland-1.lock").write_text("")
        (short_tmp / "wayland-0.lock").write_text("")
        (short_tmp / "wayland-5.lock").write_text("")
        os.symlink(short_tmp / "gone", short_tmp / "wayland-7")
        (short_tmp / "unrelated.sock").write_text("")

        removed = runtime_dir.remove_stale_endpoints(short_tmp, "wayland-*")

        assert set(removed) == {
            short_tmp / "wayland-0",
            short_tmp / "wayland-0.lock",
            short_tmp / "wayland-5.lock",
            short_tmp / "wayland-7",
        }
        assert (short_tmp / "wayland-1").exists()
        assert (short_tmp / "wayland-1.lock").exists()
        assert (short_tmp / "unrelated.sock").exists()
    finally:
        live.close()


def test_remove_stale_endpoints_missing_directory(tmp_path: Path) -> None:
    assert runtime_dir.remove_stale_endpoints(tmp_path / "absent", "wayland-*") == []
