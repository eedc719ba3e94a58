from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path


SETTINGS_DIR = ".stagedrift"
SETTINGS_FILE = "settings.toml"


@dataclass(frozen=True)
class Settings:
    poll_interval_seconds: int = 5
    remote_timeout_seconds: int = 900
    ssh_connect_timeout_seconds: int = 10
    remote_dir: str = "~/.stagedrift"
    slow_fix_ms: int = 500
    health_check: bool = True
    health_timeout_seconds: int = 10


# settings.toml section for each Settings field
SECTIONS: dict[str, tuple[str, ...]] = {
    "remote": ("poll_interval_seconds", "remote_timeout_seconds", "ssh_connect_timeout_seconds", "remote_dir"),
    "fix": ("slow_fix_ms",),
    "deploy": ("health_check", "health_timeout_seconds"),
}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_settings(settings: Settings) -> str:
    lines = ["schema = 1"]
    for section, names in SECTIONS.items():
        lines.extend(["", f"[{section}]"])
        lines.extend(f"{name} = {_toml_value(getattr(settings, name))}" for name in names)
    return "\n".join(lines) + "\n"


def settings_path(root_dir: Path) -> Path:
    return root_dir / SETTINGS_DIR / SETTINGS_FILE


def ensure_settings(root_dir: Path) -> bool:
    """Write a settings file holding the defaults unless one exists. True if written."""

    path = settings_path(root_dir)
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_settings(Settings()), encoding="utf-8")
    return True


def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _int(raw: object, default: int, minimum: int) -> int:
    if isinstance(raw, bool):
        return default
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(minimum, value)


def _bool(raw: object, default: bool) -> bool:
    return raw if isinstance(raw, bool) else default


def load_settings(root_dir: Path) -> Settings:
    path = settings_path(root_dir)
    if not path.exists():
        return Settings()

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return Settings()

    defaults = Settings()
    remote = _section(data, "remote")
    fix = _section(data, "fix")
    deploy = _section(data, "deploy")

    remote_dir = str(remote.get("remote_dir", defaults.remote_dir)).strip() or defaults.remote_dir

    return Settings(
        poll_interval_seconds=_int(remote.get("poll_interval_seconds"), defaults.poll_interval_seconds, 1),
        remote_timeout_seconds=_int(remote.get("remote_timeout_seconds"), defaults.remote_timeout_seconds, 1),
        ssh_connect_timeout_seconds=_int(
            remote.get("ssh_connect_timeout_seconds"), defaults.ssh_connect_timeout_seconds, 1
        ),
        remote_dir=remote_dir,
        slow_fix_ms=_int(fix.get("slow_fix_ms"), defaults.slow_fix_ms, 0),
        health_check=_bool(deploy.get("health_check"), defaults.health_check),
        health_timeout_seconds=_int(deploy.get("health_timeout_seconds"), defaults.health_timeout_seconds, 1),
    )
