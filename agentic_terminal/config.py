"""Configuration file loading and merging for agentic-terminal.

Reads TOML config from ~/.config/agentic-terminal/config.toml (global) and
<cwd>/agentic-terminal.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401 re-exported

_UNSET = object()  # Sentinel for "not set by CLI"

APP_NAME = "agentic-terminal"
PROJECT_CONFIG_NAME = "agentic-terminal.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_turns": int,
    "command_timeout": (int, float),
    "shell": str,
    "cwd": str,
    "system_prompt": str,
    "llm_retries": int,
    "no_session_log": bool,
    "log_dir": str,
    "color": bool,
    "quiet": bool,
}

PROVIDERS = ("anthropic", "openai", "lmstudio")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 1024,
    "max_context_tokens": None,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_turns": None,
    "command_timeout": None,
    "shell": None,
    "cwd": None,
    "system_prompt": None,
    "llm_retries": 0,
    "no_session_log": False,
    "log_dir": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}

_POSITIVE_KEYS = {"max_output_tokens", "max_context_tokens", "max_turns", "command_timeout"}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")
        if key == "llm_retries" and value < 0:
            raise ConfigError(f"{source}: 'llm_retries' must be >= 0, got {value}")

    provider = config.get("provider")
    if provider is not None and provider not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {provider!r} (expected one of {', '.join(PROVIDERS)})"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    for key in ("cwd", "log_dir"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
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

    # Strip unknown keys after warning (keep only known ones for downstream)
    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(project_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(project_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    # Merge: project overrides global (shallow)
    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue  # Already handled above
        if _is_unset(key):
            setattr(args, key, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    no_session_log -> session_log (inverted), quiet -> verbose (inverted).
    Drops keys that aren't Session concerns (color).
    """
    kwargs = {}
    _DROP_KEYS = {"color"}
    _INVERT_KEYS = {
        "no_session_log": "session_log",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# agentic-terminal configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/' + PROJECT_CONFIG_NAME if project else '~/.config/agentic-terminal/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"          # "anthropic" | "openai" | "lmstudio"',
        '# model = "claude-3-5-sonnet-latest"',
        '# api_key = "sk-..."               # prefer the API_KEY env var',
        '# base_url = "http://127.0.0.1:1234"',
        "# llm_retries = 0",
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 1024",
        "# max_context_tokens = 200000",
        "# temperature = 0.0",
        "# top_p = 1.0",
        "# seed = 42",
        "",
        "# --- Session ---",
        "# max_turns = 50                   # unset = run until the model exits",
        "# command_timeout = 120            # seconds; unset = wait forever",
        '# shell = "/bin/bash"',
        '# cwd = "."',
        '# system_prompt = "..."',
        "",
        "# --- Logs ---",
        "# no_session_log = false",
        '# log_dir = "~/.cache/agentic-terminal/logs"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
