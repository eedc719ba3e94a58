from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from stagedrift.config import load_config
from stagedrift.settings import Settings, load_settings


ON_SERVER_MARKERS = ("GITHUB_ACTIONS", "STAGEDRIFT_ON_SERVER")


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a detector, remediator or reachability check may look at."""

    root_dir: Path
    config: Mapping[str, Any]
    env: Mapping[str, str] = field(default_factory=dict)
    home: Path = field(default_factory=Path.home)
    settings: Settings = field(default_factory=Settings)

    @property
    def on_server(self) -> bool:
        # Set when this process is itself the remote executor.
        return any(self.env.get(name) for name in ON_SERVER_MARKERS)

    @property
    def project_name(self) -> str:
        return str(self.config.get("name") or self.root_dir.name)

    def path(self, *parts: str) -> Path:
        return self.root_dir.joinpath(*parts)

    def expand(self, raw: str) -> Path:
        text = str(raw)
        if text == "~" or text.startswith("~/"):
            return self.home / text[2:]
        p = Path(text)
        return p if p.is_absolute() else self.root_dir / p


def build_context(
    root_dir: Path,
    *,
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> ExecutionContext:
    """Snapshot config, settings and process environment for one invocation."""

    root = root_dir.resolve()
    loaded = dict(config) if config is not None else load_config(root)
    return ExecutionContext(
        root_dir=root,
        config=MappingProxyType(loaded),
        env=MappingProxyType(dict(os.environ if env is None else env)),
        home=home if home is not None else Path.home(),
        settings=load_settings(root),
    )
