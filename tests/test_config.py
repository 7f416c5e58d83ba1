import json
from pathlib import Path

import pytest

from vncsession.local.config import coerce_value, load_config
from vncsession.local.errors import ConfigError
from vncsession.local.identity import current_identity
from vncsession.local.supervisor import startup
from vncsession.local.supervisor.config_utils import check_configuration

from conftest import SUCCEED


def _load(tmp_path: Path, environ=None, env_file=None, overrides=None):
    environ = dict(environ or {})
    environ.setdefault("VNCSESSION_STATE_DIR", str(tmp_path / "state"))
    return load_config(environ=environ, env_file=env_file or tmp_path / "missing.env", overrides=overrides)


def test_defaults(tmp_path: Path) -> None:
    config = _load(tmp_path)
    assert config.DISPLAY_USER == "waydroid"
    assert config.DISPLAY_BIND_PORT == 5900
    assert config.RENDERING_MODE == "software"
    assert config.rendering_vendor is None
    assert config.FULL_INSTALL is True
    assert config.START_DBUS_SESSION is True
    assert config.pid_file_path == tmp_path / "state" / "session.pid"
    config.validate()


def test_environment_overrides_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / "vncsession.env"
    env_file.write_text("VNCSESSION_DISPLAY_BIND_PORT=5901\nVNCSESSION_DISPLAY_USER=android\n")
    config = _load(tmp_path, environ={"VNCSESSION_DISPLAY_BIND_PORT": "5902"}, env_file=env_file)
    assert config.DISPLAY_BIND_PORT == 5902
    assert config.DISPLAY_USER == "android"


def test_env_file_location_from_environment(tmp_path: Path) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text("VNCSESSION_HEALTH_CHECK_INTERVAL=3\n")
    config = load_config(environ={
        "VNCSESSION_ENV_FILE": str(env_file),
        "VNCSESSION_STATE_DIR": str(tmp_path / "state"),
    })
    assert config.HEALTH_CHECK_INTERVAL == 3.0


def test_unknown_prefixed_setting_is_ignored(tmp_path: Path) -> None:
    config = _load(tmp_path, environ={"VNCSESSION_NOT_A_SETTING": "1"})
    assert config.get("NOT_A_SETTING") is None


def test_legacy_rendering_variables(tmp_path: Path) -> None:
    config = _load(tmp_path, environ={"GPU_TYPE": "intel", "SOFTWARE_RENDERING": "0"})
    assert config.RENDERING_MODE == "hardware:intel"
    assert config.rendering_vendor == "intel"

    config = _load(tmp_path, environ={"GPU_TYPE": "amd", "SOFTWARE_RENDERING": "1"})
    assert config.RENDERING_MODE == "software"

    config = _load(tmp_path, environ={
        "GPU_TYPE": "intel", "SOFTWARE_RENDERING": "0", "VNCSESSION_RENDERING_MODE": "hardware:amd",
    })
    assert config.RENDERING_MODE == "hardware:amd"


def test_legacy_gapps_variable(tmp_path: Path) -> None:
    assert _load(tmp_path, environ={"USE_GAPPS": "false"}).FULL_INSTALL is False
    assert _load(tmp_path, environ={"USE_GAPPS": "false", "VNCSESSION_FULL_INSTALL": "yes"}).FULL_INSTALL is True


def test_overrides_file_only_applies_modifiable_settings(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "overrides.json").write_text(json.dumps({
        "DISPLAY_BIND_PORT": "6000",
        "DISPLAY_USER": "intruder",
        "NO_SUCH_SETTING": 1,
    }))
    config = _load(tmp_path)
    assert config.DISPLAY_BIND_PORT == 6000
    assert config.DISPLAY_USER == "waydroid"


def test_corrupt_overrides_file_is_ignored(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "overrides.json").write_text("{not json")
    assert _load(tmp_path).DISPLAY_BIND_PORT == 5900


def test_bad_value_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        _load(tmp_path, environ={"VNCSESSION_DISPLAY_BIND_PORT": "vnc"})


def test_explicit_unknown_override_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        _load(tmp_path, overrides={"NOPE": 1})


def test_coerce_value() -> None:
    assert coerce_value("X", False, "on") is True
    assert coerce_value("X", True, "0") is False
    assert coerce_value("X", Path("/a"), "/b") == Path("/b")
    assert coerce_value("X", 1.5, "2") == 2.0
    with pytest.raises(ConfigError):
        coerce_value("X", {"a": 1}, "b")


@pytest.mark.parametrize("changes", [
    {"RENDERING_MODE": "hardware:nvidia"},
    {"RENDERING_MODE": "opengl"},
    {"DISPLAY_BIND_PORT": 0},
    {"DISCOVERY_MAX_ATTEMPTS": 0},
    {"HEALTH_CHECK_INTERVAL": 0.0},
    {"COMPOSITOR_COMMAND": ""},
    {"DISPLAY_SERVER_COMMAND": "wayvnc {host}"},
])
def test_validate_rejects(tmp_path: Path, changes) -> None:
    config = _load(tmp_path).replace(**changes)
    with pytest.raises(ConfigError):
        config.validate()


def test_probe_address(tmp_path: Path) -> None:
    config = _load(tmp_path)
    assert config.probe_address == "127.0.0.1"
    assert config.replace(DISPLAY_BIND_ADDRESS="::").probe_address == "::1"
    assert config.replace(DISPLAY_BIND_ADDRESS="10.0.0.5").probe_address == "10.0.0.5"
    assert config.replace(DISPLAY_PROBE_ADDRESS="192.168.1.2").probe_address == "192.168.1.2"


def test_display_server_command(tmp_path: Path) -> None:
    config = _load(tmp_path)
    assert startup.display_server_command(config) == ["wayvnc", "0.0.0.0", "5900"]
    config = config.replace(DISPLAY_SERVER_CONFIG="/etc/wayvnc/config")
    assert startup.display_server_command(config) == ["wayvnc", "-C", "/etc/wayvnc/config"]


def test_guest_init_command(tmp_path: Path) -> None:
    config = _load(tmp_path)
    assert startup.guest_init_command(config) == ["waydroid", "init", "-f", "-s", "GAPPS"]
    assert startup.guest_init_command(config.replace(FULL_INSTALL=False)) == ["waydroid", "init", "-f"]


def test_compositor_env_software(tmp_path: Path) -> None:
    config = _load(tmp_path)
    identity = current_identity()
    env = startup.compositor_env(config, identity, tmp_path, {"WAYLAND_DISPLAY": "wayland-9"})
    assert env["WLR_BACKENDS"] == "headless"
    assert env["WLR_LIBINPUT_NO_DEVICES"] == "1"
    assert env["LIBGL_ALWAYS_SOFTWARE"] == "1"
    assert env["WLR_RENDERER_ALLOW_SOFTWARE"] == "1"
    assert env["XDG_RUNTIME_DIR"] == str(tmp_path)
    assert "WAYLAND_DISPLAY" not in env


def test_compositor_env_hardware(tmp_path: Path) -> None:
    config = _load(tmp_path).replace(RENDERING_MODE="hardware:amd")
    env = startup.compositor_env(config, current_identity(), tmp_path)
    assert env["MESA_LOADER_DRIVER_OVERRIDE"] == "radeonsi"
    assert env["LIBVA_DRIVER_NAME"] == "radeonsi"
    assert "LIBGL_ALWAYS_SOFTWARE" not in env


def test_check_configuration(tmp_path: Path) -> None:
    config = _load(tmp_path).replace(
        COMPOSITOR_COMMAND=SUCCEED,
        DISPLAY_SERVER_COMMAND=SUCCEED,
        GUEST_INIT_COMMAND=SUCCEED,
        GUEST_RUNTIME_COMMAND=SUCCEED,
        GUEST_SESSION_COMMAND=SUCCEED,
        DBUS_LAUNCH_COMMAND=SUCCEED,
    )
    assert check_configuration(config) is True
    assert check_configuration(config.replace(COMPOSITOR_COMMAND="no-such-compositor-binary")) is False
    assert check_configuration(config.replace(DISPLAY_BIND_PORT=70000)) is False
