"""Configuration file loading, merging, and credential resolution.

Reads TOML config from ~/.config/skiff/config.toml (global) and
<base_dir>/skiff.toml (project). Precedence: CLI > project > global >
environment > defaults.
"""

import argparse
import json
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .report import ConfigError
from .session import DEFAULT_MAX_TOKENS, DEFAULT_MODEL
from .transport import DEFAULT_REQUEST_TIMEOUT, auth_type_for

logger = logging.getLogger(__name__)

_UNSET = object()  # Sentinel for "not set by CLI"

INTERACTIVE_MAX_ITERATIONS = 25
ONESHOT_MAX_ITERATIONS = 15

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_tokens": int,
    "max_iterations": int,
    "oneshot_max_iterations": int,
    "request_timeout": (int, float),
    "system_prompt": str,
    "color": bool,
    "debug": bool,
}

_POSITIVE_KEYS = {
    "max_tokens",
    "max_iterations",
    "oneshot_max_iterations",
    "request_timeout",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "max_tokens": DEFAULT_MAX_TOKENS,
    "max_iterations": INTERACTIVE_MAX_ITERATIONS,
    "oneshot_max_iterations": ONESHOT_MAX_ITERATIONS,
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
    "system_prompt": None,
    "color": False,
    "no_color": False,
    "debug": False,
}

CREDENTIALS_PATH = Path("~/.claude/.credentials.json")


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "skiff"
    return Path.home() / ".config" / "skiff"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Logs a warning for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            logger.warning("%s: unknown config key %r", source, key)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            logger.warning(
                "%s: 'api_key' in a git-tracked project config may be committed "
                "accidentally. Consider using ANTHROPIC_API_KEY instead.",
                config_path,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def load_config(base_dir: Path | str) -> dict:
    """Load and merge global + project config.

    Only keys actually set in config files are returned; no defaults.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "skiff.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def env_config(environ=None) -> dict:
    """Settings taken from SKIFF_* environment variables."""
    environ = os.environ if environ is None else environ
    config: dict = {}
    model = environ.get("SKIFF_MODEL", "").strip()
    if model:
        config["model"] = model
    if environ.get("SKIFF_DEBUG", "").strip().lower() in ("1", "true", "yes"):
        config["debug"] = True
    return config


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing config keys, remaining _UNSET sentinels are replaced
    with hardcoded defaults. A --max-iterations given on the command line
    caps both interactive and one-shot runs.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if not _is_unset("max_iterations") and _is_unset("oneshot_max_iterations"):
        args.oneshot_max_iterations = args.max_iterations

    # A single config key controls the --color/--no-color pair.
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


@dataclass(frozen=True)
class Credentials:
    token: str
    auth_type: str  # "api_key" or "oauth"
    source: str


def _read_oauth_token(path: Path) -> str | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("%s: cannot read credentials: %s", path, e)
        return None
    oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
    token = oauth.get("accessToken") if isinstance(oauth, dict) else None
    return token if isinstance(token, str) and token else None


def resolve_credentials(
    api_key: str | None = None,
    *,
    environ=None,
    credentials_path: Path | None = None,
) -> Credentials:
    """Find an API token: explicit key, ANTHROPIC_API_KEY, then the OAuth file.

    Raises ConfigError when none is available.
    """
    environ = os.environ if environ is None else environ
    if api_key:
        return Credentials(api_key, auth_type_for(api_key), "config")
    env_key = environ.get("ANTHROPIC_API_KEY", "").strip()
    if env_key:
        return Credentials(env_key, auth_type_for(env_key), "ANTHROPIC_API_KEY")
    path = (credentials_path or CREDENTIALS_PATH).expanduser()
    token = _read_oauth_token(path)
    if token:
        return Credentials(token, "oauth", str(path))
    raise ConfigError(
        "no API token found. Set ANTHROPIC_API_KEY or place credentials "
        f"in {CREDENTIALS_PATH}"
    )
