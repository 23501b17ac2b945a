"""reqdoc core - config loading, environment indirection, variable resolution."""

from __future__ import annotations

import datetime
import logging
import os
import re
import time as _time
import uuid
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from reqdoc.errors import ConfigurationError, ResolutionError

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqdoc"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqdoc.yaml",
    ".reqdoc.yml",
    "reqdoc.yaml",
    "reqdoc.yml",
]

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
INDIRECTION_RE = re.compile(r"\$\{([^}]+)\}")


# ── Config files ─────────────────────────────────────────────────────────


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .reqdoc.yaml (variants) in CWD
      3. ~/.reqdoc/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def _empty_config() -> dict:
    return {"defaults": {}, "environments": {}, "_config_dir": None}


def load_config(config_path: str | Path | None) -> dict:
    """Load the YAML config file. Returns empty sections if not found.

    Stores '_config_dir' in the returned dict so the env file can be
    resolved relative to the config file.
    """
    if config_path is None:
        return _empty_config()
    path = Path(config_path)
    if not path.exists():
        return _empty_config()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")

    defaults = data.get("defaults") or {}
    environments = data.get("environments") or {}
    if not isinstance(defaults, dict):
        raise ConfigurationError(f"{path}: 'defaults' must be a mapping")
    if not isinstance(environments, dict):
        raise ConfigurationError(f"{path}: 'environments' must be a mapping")
    for name, values in environments.items():
        if values is not None and not isinstance(values, dict):
            raise ConfigurationError(f"{path}: environment '{name}' must be a mapping")

    return {
        "defaults": defaults,
        "environments": environments,
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str | Path | None = ".") -> dict[str, str]:
    """Load .env file and merge with os.environ.

    Returns combined dict with .env values taking precedence over os.environ
    for explicit vars, but os.environ available as fallback.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir or ".") / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
        else:
            logger.warning("env file %s not found", dotenv_path)
    return env


# ── Environment tables ───────────────────────────────────────────────────


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: str, env: dict[str, str]) -> tuple[str, list[str]]:
    """Resolve ${VAR} references in a string value.

    Returns the resolved string and the names that had no value; unresolved
    references are left in place.
    """
    missing: list[str] = []

    def _replace(m: re.Match) -> str:
        var_name = m.group(1).strip()
        if var_name in env:
            return env[var_name]
        missing.append(var_name)
        return m.group(0)

    return INDIRECTION_RE.sub(_replace, value), missing


def resolve_environment(
    values: dict[str, Any] | None,
    env: dict[str, str],
    name: str = "",
) -> dict[str, str]:
    """Resolve one named environment's values once, at load time.

    Every ${VAR} must be defined in env; anything else is a configuration
    error, reported for all offending keys at once.
    """
    resolved: dict[str, str] = {}
    problems: list[str] = []
    for key, raw in (values or {}).items():
        if isinstance(raw, dict | list):
            problems.append(f"'{key}' must be a scalar value")
            continue
        text, missing = resolve_value(_scalar_text(raw), env)
        if missing:
            problems.append(f"'{key}' references unset {', '.join('${' + m + '}' for m in missing)}")
            continue
        resolved[str(key)] = text
    if problems:
        where = f"environment '{name}'" if name else "environment"
        raise ConfigurationError(f"Invalid {where}: " + "; ".join(problems))
    return resolved


def build_variable_table(
    config: dict,
    env_name: str | None = None,
    cli_vars: dict[str, str] | None = None,
    env: dict[str, str] | None = None,
) -> VariableTable:
    """Build the base variable table for a run: CLI overrides + environment.

    The active environment is env_name, else defaults.environment from the
    config, else none.
    """
    environments = config.get("environments") or {}
    name = env_name or (config.get("defaults") or {}).get("environment")
    values: dict[str, str] = {}
    if name:
        if name not in environments:
            available = ", ".join(sorted(environments)) or "none defined"
            raise ConfigurationError(f"Environment '{name}' not found (available: {available})")
        values = resolve_environment(environments[name], env if env is not None else dict(os.environ), name)
        logger.debug("environment %s loaded with %d variables", name, len(values))
    return VariableTable(overrides=cli_vars, environment=values)


# ── Variable table ───────────────────────────────────────────────────────


def _builtin_value(name: str) -> str | None:
    """Generated values, consulted after every other layer."""
    if name in ("uuid", "uuidv4"):
        return str(uuid.uuid4())
    if name == "timestamp":
        return str(int(_time.time()))
    if name == "timestamp_ms":
        return str(int(_time.time() * 1000))
    if name == "date":
        return datetime.datetime.now(datetime.timezone.utc).isoformat()
    return None


class VariableTable:
    """Variables visible to one run, in fixed priority order.

    1. CLI overrides
    2. active environment values (indirections already resolved)
    3. values captured earlier in this run (last write wins)
    4. built-in generated values (uuid, timestamp, timestamp_ms, date)

    A name resolves from the first layer that defines it. The first two
    layers form the base snapshot and are never written after load; captures
    go to a per-run layer created by new_run().
    """

    OVERRIDES = "overrides"
    ENVIRONMENT = "environment"
    CAPTURES = "captures"
    BUILTINS = "builtins"

    def __init__(
        self,
        overrides: dict[str, str] | None = None,
        environment: dict[str, str] | None = None,
    ):
        self._overrides = dict(overrides or {})
        self._environment = dict(environment or {})
        self._captures: dict[str, str] = {}

    def new_run(self) -> VariableTable:
        """A table sharing this base snapshot with an empty capture layer."""
        run = VariableTable.__new__(VariableTable)
        run._overrides = self._overrides
        run._environment = self._environment
        run._captures = {}
        return run

    def lookup(self, name: str) -> tuple[str | None, str | None]:
        """Return (layer, value) for name, or (None, None)."""
        for layer, values in (
            (self.OVERRIDES, self._overrides),
            (self.ENVIRONMENT, self._environment),
            (self.CAPTURES, self._captures),
        ):
            if name in values:
                return layer, values[name]
        generated = _builtin_value(name)
        if generated is not None:
            return self.BUILTINS, generated
        return None, None

    def get(self, name: str, default: str | None = None) -> str | None:
        _, value = self.lookup(name)
        return default if value is None else value

    def __contains__(self, name: str) -> bool:
        return self.lookup(name)[0] is not None

    def capture(self, name: str, value: str) -> str | None:
        """Write a captured value into the run layer.

        Returns the name of the higher-priority layer that shadows it, if any.
        """
        self._captures[name] = value
        for layer, values in ((self.OVERRIDES, self._overrides), (self.ENVIRONMENT, self._environment)):
            if name in values:
                logger.warning("captured %s is shadowed by the %s value", name, layer)
                return layer
        return None

    @property
    def captures(self) -> dict[str, str]:
        return dict(self._captures)


# ── Templates ────────────────────────────────────────────────────────────


def find_placeholders(text: str) -> list[str]:
    """Names referenced by {{...}} placeholders, in order of first appearance."""
    seen: list[str] = []
    for m in PLACEHOLDER_RE.finditer(text or ""):
        if m.group(1) not in seen:
            seen.append(m.group(1))
    return seen


def resolve_template(text: str, table: VariableTable) -> str:
    """Substitute {{name}} placeholders from the table in a single pass.

    Substituted values are never re-scanned. Raises ResolutionError naming
    every unresolved placeholder.
    """
    if not text:
        return text
    missing: list[str] = []

    def _replace(m: re.Match) -> str:
        name = m.group(1)
        value = table.get(name)
        if value is None:
            if name not in missing:
                missing.append(name)
            return m.group(0)
        return value

    resolved = PLACEHOLDER_RE.sub(_replace, text)
    if missing:
        raise ResolutionError(missing)
    return resolved


def resolve_templates(texts: list[str], table: VariableTable) -> list[str]:
    """Resolve several templates, collecting unresolved names across all."""
    resolved: list[str] = []
    missing: list[str] = []
    for text in texts:
        try:
            resolved.append(resolve_template(text, table))
        except ResolutionError as e:
            missing.extend(n for n in e.names if n not in missing)
            resolved.append(text)
    if missing:
        raise ResolutionError(missing)
    return resolved
