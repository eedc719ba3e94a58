from __future__ import annotations

import re
from pathlib import Path


ENV_FILES: dict[str, str] = {
    "dev": ".env.example",
    "staging": ".env.staging",
    "prod": ".env.prod",
}

_ASSIGNMENT_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")


def parse_env_text(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        m = _ASSIGNMENT_RE.match(stripped)
        if not m:
            continue
        raw = m.group(2).strip()
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
            raw = raw[1:-1]
        values[m.group(1)] = raw
    return values


def load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    return parse_env_text(path.read_text(encoding="utf-8"))


def has_assignment(path: Path, name: str) -> bool:
    if not path.exists():
        return False
    return name in load_env_file(path)
