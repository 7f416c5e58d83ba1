import copy
import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

import vncsession.settings as default_settings
from vncsession.local.errors import ConfigError

log = logging.getLogger(__name__)

_TRUE_STRINGS = ('true', '1', 't', 'yes', 'y', 'on')


def coerce_value(key: str, original_value: Any, value: Any) -> Any:
    """
    Coerces a raw (usually string) value to the type of the default value.

    :param key: The setting name, used in error messages.
    :param original_value: The default value whose type is authoritative.
    :param value: The raw value from the env file, environment or overrides.
    :return: The coerced value.
    :raises ConfigError: If the value cannot be converted.
    """
    try:
        if isinstance(original_value, bool):
            return str(value).strip().lower() in _TRUE_STRINGS
        if isinstance(original_value, Path):
            return Path(value)
        if isinstance(original_value, (int, float)):
            return type(original_value)(value)
        if isinstance(original_value, str):
            return str(value)
    except (ValueError, TypeError) as e:
        raise ConfigError(f"Could not convert value '{value}' for key '{key}': {e}") from e
    raise ConfigError(f"Setting '{key}' cannot be overridden from text values.")


class SessionConfig:
    """
    The validated configuration of one supervisor invocation.

    Settings are exposed as uppercase attributes (``config.DISPLAY_BIND_PORT``) and
    through `get`. An instance is built once at startup by `load_config` and passed
    explicitly to the supervisor; nothing reads ambient global state afterwards.
    """

    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values: Dict[str, Any] = dict(values)
        for key, value in self._values.items():
            setattr(self, key, value)

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return self._values.get(item, default)

    def as_dict(self) -> Dict[str, Any]:
        """Returns a copy of all settings."""
        return dict(self._values)

    def replace(self, **changes: Any) -> "SessionConfig":
        """Returns a new config with the given settings replaced."""
        values = self.as_dict()
        values.update(changes)
        return SessionConfig(values)

    #* --- Derived values ---
    @property
    def pid_file_path(self) -> Path:
        return Path(self.STATE_DIR) / self.PID_FILE_NAME

    @property
    def overrides_path(self) -> Path:
        return Path(self.STATE_DIR) / self.OVERRIDES_FILE_NAME

    @property
    def rendering_vendor(self) -> Optional[str]:
        """The hardware vendor of a 'hardware:<vendor>' mode, None for software rendering."""
        mode = self.RENDERING_MODE.strip().lower()
        if mode.startswith("hardware:"):
            return mode.split(":", 1)[1]
        return None

    @property
    def probe_address(self) -> str:
        """The address the readiness and health probes connect to."""
        if self.DISPLAY_PROBE_ADDRESS:
            return self.DISPLAY_PROBE_ADDRESS
        if self.DISPLAY_BIND_ADDRESS in ("", "0.0.0.0"):
            return "127.0.0.1"
        if self.DISPLAY_BIND_ADDRESS == "::":
            return "::1"
        return self.DISPLAY_BIND_ADDRESS

    def command(self, key: str, **fields: Any) -> List[str]:
        """
        Splits a command template setting into an argument list and fills placeholders.

        :param key: The setting holding the template (e.g. 'DISPLAY_SERVER_COMMAND').
        :param fields: Values for the ``{placeholders}`` in the template.
        :return: The argument list, empty if the setting is empty.
        """
        return [arg.format(**fields) for arg in shlex.split(self.get(key, ""))]

    def validate(self) -> None:
        """
        Checks the whole configuration once, collecting every problem.

        :raises ConfigError: If any setting is invalid.
        """
        problems: List[str] = []

        if not self.DISPLAY_USER:
            problems.append("DISPLAY_USER must not be empty.")

        mode = self.RENDERING_MODE.strip().lower()
        if mode != "software":
            vendor = self.rendering_vendor
            if vendor is None:
                problems.append(f"RENDERING_MODE '{self.RENDERING_MODE}' is not 'software' or 'hardware:<vendor>'.")
            elif vendor not in self.HARDWARE_VENDOR_ENV:
                known = ", ".join(sorted(self.HARDWARE_VENDOR_ENV))
                problems.append(f"Unknown hardware vendor '{vendor}' (known: {known}).")

        if not 0 < self.DISPLAY_BIND_PORT < 65536:
            problems.append(f"DISPLAY_BIND_PORT {self.DISPLAY_BIND_PORT} is out of range.")

        for key in ("DISCOVERY_INTERVAL", "READINESS_INTERVAL", "HEALTH_CHECK_INTERVAL",
                    "PROBE_CONNECT_TIMEOUT", "INIT_TIMEOUT", "GUEST_RUNTIME_TIMEOUT", "STOP_WAIT_TIMEOUT"):
            if self.get(key) <= 0:
                problems.append(f"{key} must be positive.")
        for key in ("DISCOVERY_MAX_ATTEMPTS", "READINESS_MAX_ATTEMPTS"):
            if self.get(key) < 1:
                problems.append(f"{key} must be at least 1.")
        for key in ("GRACEFUL_SHUTDOWN_TIMEOUT", "BRIDGE_RETRY_DELAY"):
            if self.get(key) < 0:
                problems.append(f"{key} must not be negative.")

        for key in ("COMPOSITOR_COMMAND", "GUEST_INIT_COMMAND", "GUEST_RUNTIME_COMMAND", "GUEST_SESSION_COMMAND"):
            try:
                if not shlex.split(self.get(key, "")):
                    problems.append(f"{key} must not be empty.")
            except ValueError as e:
                problems.append(f"{key} cannot be parsed: {e}")
        display_key = "DISPLAY_SERVER_CONFIG_COMMAND" if self.DISPLAY_SERVER_CONFIG else "DISPLAY_SERVER_COMMAND"
        try:
            self.command(display_key, address=self.DISPLAY_BIND_ADDRESS,
                         port=self.DISPLAY_BIND_PORT, config=self.DISPLAY_SERVER_CONFIG)
        except (ValueError, KeyError, IndexError) as e:
            problems.append(f"{display_key} cannot be parsed: {e}")

        if problems:
            for problem in problems:
                log.error(f"CONFIG CHECK FAILED: {problem}")
            raise ConfigError("; ".join(problems))


def _load_defaults() -> Dict[str, Any]:
    """Loads all uppercase attributes from the settings.py module as defaults."""
    return {
        key: copy.deepcopy(getattr(default_settings, key))
        for key in dir(default_settings)
        if key.isupper()
    }


def _legacy_rendering_mode(source: Mapping[str, Optional[str]]) -> Optional[str]:
    """
    Maps the GPU_TYPE/SOFTWARE_RENDERING pair of the shell deployment onto RENDERING_MODE.
    """
    software = source.get(default_settings.LEGACY_SOFTWARE_RENDERING_VAR)
    gpu_type = source.get(default_settings.LEGACY_GPU_TYPE_VAR)
    if software is None and gpu_type is None:
        return None
    if (software or "1") == "1" or not gpu_type or gpu_type == "software":
        return "software"
    return f"hardware:{gpu_type.lower()}"


def _apply_text_source(values: Dict[str, Any], defaults: Dict[str, Any],
                       source: Mapping[str, Optional[str]], origin: str) -> None:
    """Applies prefixed settings (VNCSESSION_<KEY>) from an env file or the environment."""
    prefix = defaults["ENV_PREFIX"]
    explicit_mode = f"{prefix}RENDERING_MODE" in source
    if not explicit_mode:
        legacy_mode = _legacy_rendering_mode(source)
        if legacy_mode:
            log.debug(f"Derived RENDERING_MODE={legacy_mode} from legacy variables in {origin}")
            values["RENDERING_MODE"] = legacy_mode
    use_gapps = source.get(default_settings.LEGACY_USE_GAPPS_VAR)
    if use_gapps is not None and f"{prefix}FULL_INSTALL" not in source:
        values["FULL_INSTALL"] = use_gapps.strip().lower() in _TRUE_STRINGS

    for name, raw in source.items():
        if not name.startswith(prefix) or raw is None:
            continue
        key = name[len(prefix):]
        if key == "ENV_FILE":
            continue
        if key not in defaults:
            log.warning(f"Setting '{name}' from {origin} is not a known setting. Ignoring.")
            continue
        values[key] = coerce_value(key, defaults[key], raw)
        log.debug(f"Setting {key} taken from {origin}")


def _apply_overrides_file(values: Dict[str, Any], defaults: Dict[str, Any], overrides_path: Path) -> None:
    """
    Loads and applies settings from the `overrides.json` file.

    Only keys listed in `MODIFIABLE_SETTINGS` are honored.
    """
    if not overrides_path.exists():
        return
    try:
        with overrides_path.open('r') as f:
            overrides = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        log.error(f"Failed to load or parse overrides file '{overrides_path}': {e}")
        return

    log.info(f"Loading runtime configuration overrides from {overrides_path}")
    for key, value in overrides.items():
        if key not in defaults:
            log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
            continue
        if key not in values["MODIFIABLE_SETTINGS"]:
            log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            continue
        values[key] = coerce_value(key, defaults[key], value)
        log.debug(f"Overridden setting: {key} = {value}")


def load_config(environ: Optional[Mapping[str, str]] = None,
                env_file: Optional[Path] = None,
                overrides: Optional[Mapping[str, Any]] = None) -> SessionConfig:
    """
    Builds the effective configuration.

    Precedence, later wins:
    1. Defaults from `settings.py`.
    2. The env file (python-dotenv syntax), without touching `os.environ`.
    3. The process environment.
    4. `overrides.json` in STATE_DIR, for settings in `MODIFIABLE_SETTINGS`.
    5. The explicit `overrides` mapping (already typed values).

    :param environ: The environment to read, defaults to `os.environ`.
    :param env_file: The env file path, defaults to $VNCSESSION_ENV_FILE or ENV_FILE_PATH.
    :param overrides: Final overrides, e.g. from the command line or tests.
    :return: The merged configuration (not yet validated).
    """
    environ = os.environ if environ is None else environ
    defaults = _load_defaults()
    values = dict(defaults)

    if env_file is None:
        env_file = Path(environ.get(f"{defaults['ENV_PREFIX']}ENV_FILE", defaults["ENV_FILE_PATH"]))
    if env_file.exists():
        log.info(f"Loading environment file {env_file}")
        _apply_text_source(values, defaults, dotenv_values(env_file), str(env_file))

    _apply_text_source(values, defaults, environ, "environment")
    _apply_overrides_file(values, defaults, Path(values["STATE_DIR"]) / values["OVERRIDES_FILE_NAME"])

    for key, value in (overrides or {}).items():
        if key not in defaults:
            raise ConfigError(f"Unknown setting '{key}'.")
        values[key] = value

    return SessionConfig(values)
