from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILE = "stack.yml"
AUTO_CONFIG_FILE = "stackAuto.yml"

# Top-level keys that are settings, not environments.
RESERVED_CONFIG_KEYS = frozenset(
    {
        "name",
        "config_version",
        "github_repo",
        "ssl_email",
        "pipeline",
        "prisma_schema",
        "prisma_version",
        "container_exclusions",
        "trusted_plugins",
        "ansible",
        "env_match_exceptions",
        "dev_os",
    }
)

_OS_ALIASES = {
    "mac": "darwin",
    "macos": "darwin",
    "darwin": "darwin",
    "mac-mini": "darwin",
    "ubuntu": "linux",
    "linux": "linux",
    "amazon-linux": "linux",
    "aws": "linux",
    "windows": "windows",
    "win32": "windows",
}


class ConfigError(Exception):
    pass


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"could not parse {path.name}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name} must contain a mapping at the top level")
    return data


def config_exists(root_dir: Path) -> bool:
    return (root_dir / CONFIG_FILE).exists()


def load_config(root_dir: Path) -> dict[str, Any]:
    """
    Load `stack.yml` merged with `stackAuto.yml`.

    Auto-detected values only fill gaps: user keys win, and nested mappings
    are merged one level deep with the user's entries on top. A missing
    `stack.yml` yields an empty config; a broken `stackAuto.yml` is ignored.
    """

    config: dict[str, Any] = {}
    path = root_dir / CONFIG_FILE
    if path.exists():
        config = _read_yaml(path)

    auto_path = root_dir / AUTO_CONFIG_FILE
    if not auto_path.exists():
        return config
    try:
        auto = _read_yaml(auto_path)
    except ConfigError as e:
        print(f"note: ignoring {AUTO_CONFIG_FILE} ({e})", file=sys.stderr)
        return config

    for key, value in auto.items():
        if key not in config:
            config[key] = value
            continue
        existing = config[key]
        if isinstance(value, dict) and isinstance(existing, dict):
            config[key] = {**value, **existing}
    return config


def extract_environments(config: dict[str, Any]) -> dict[str, dict[str, Any]]:
    envs: dict[str, dict[str, Any]] = {}
    for key, value in (config or {}).items():
        if key in RESERVED_CONFIG_KEYS:
            continue
        if isinstance(value, dict):
            envs[str(key)] = value
    return envs


def stage_from_environment(env_name: str) -> str:
    name = str(env_name or "")
    if name in ("dev", "secrets"):
        return name
    if name.startswith("staging") or name.startswith("stage-"):
        return "staging"
    if name.startswith("prod") or name == "production":
        return "prod"
    raise ValueError(
        f"Cannot determine stage for environment: {name}. "
        "Environment names must start with 'staging', 'prod', or be 'dev'/'secrets'."
    )


def environments_for_stage(config: dict[str, Any], stage: str) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for name, env in extract_environments(config).items():
        try:
            if stage_from_environment(name) == stage:
                out[name] = env
        except ValueError:
            continue
    return out


def stage_configured(config: dict[str, Any], stage: str) -> bool:
    return bool(environments_for_stage(config, stage))


def used_servers(config: dict[str, Any]) -> set[str]:
    return {str(env["server"]) for env in extract_environments(config).values() if env.get("server")}


def env_host(env: dict[str, Any]) -> str:
    # `domain` doubles as the SSH host; `host` overrides it when set.
    return str(env.get("host") or env.get("domain") or "")


def normalize_os(value: str | None) -> str | None:
    if not value:
        return None
    return _OS_ALIASES.get(str(value).strip().lower())


def local_os() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def target_os_for_stage(config: dict[str, Any], stage: str) -> str | None:
    """
    OS the stage's fixes would run against.

    dev and secrets run on the developer machine (`dev_os` overrides the
    detected platform). staging/prod use the first environment's explicit
    `os`, else the OS implied by its `server` plugin; None when unknown.
    """

    if stage in ("dev", "secrets"):
        return normalize_os(config.get("dev_os")) or local_os()
    for env in environments_for_stage(config, stage).values():
        found = normalize_os(env.get("os")) or normalize_os(env.get("server"))
        if found:
            return found
    return None
