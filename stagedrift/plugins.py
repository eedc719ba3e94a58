# ABOUTME: Plugin base classes, capability interfaces, registry and the config-driven loader.
# ABOUTME: Capabilities are resolved once when plugins load, never probed per call.
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Iterator, Mapping

from stagedrift.fixes import Fix

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext
    from stagedrift.reachability import Reachability


CATEGORIES: tuple[str, ...] = ("pipeline", "server", "secrets")

CAP_REACH = "reach"
CAP_SCAN_STAGE = "scan_stage"
CAP_FIX_STAGE = "fix_stage"
CAP_DEPLOY_STAGE = "deploy_stage"


class PluginError(Exception):
    pass


@dataclass(frozen=True)
class HookResult:
    handled: bool
    message: str = ""
    failed: bool = False


@dataclass(frozen=True)
class DeployResult:
    success: bool
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.message:
            out["message"] = self.message
        if self.error:
            out["error"] = self.error
        return out


class Plugin:
    id: ClassVar[str] = ""
    name: ClassVar[str] = ""
    category: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    fixes: ClassVar[tuple[Fix, ...]] = ()
    required_env_vars: ClassVar[tuple[str, ...]] = ()

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    @classmethod
    def should_load(cls, root_dir: Path, config: Mapping[str, Any]) -> bool:
        return True


class PipelinePlugin(Plugin):
    """Owns stage reachability. Subclasses must implement `can_reach`."""

    category: ClassVar[str] = "pipeline"

    @classmethod
    def can_reach(cls, stage: str, ctx: ExecutionContext) -> Reachability:
        raise NotImplementedError


class ServerPlugin(Plugin):
    category: ClassVar[str] = "server"


class SecretsPlugin(Plugin):
    category: ClassVar[str] = "secrets"


class RemoteScanner:
    def scan_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        raise NotImplementedError


class RemoteFixer:
    def fix_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        raise NotImplementedError


class StageDeployer:
    def deploy_stage(self, stage: str, options: Mapping[str, Any]) -> DeployResult:
        raise NotImplementedError


def capabilities_of(plugin_cls: type[Plugin]) -> frozenset[str]:
    caps: set[str] = set()
    if issubclass(plugin_cls, PipelinePlugin):
        caps.add(CAP_REACH)
    if issubclass(plugin_cls, RemoteScanner):
        caps.add(CAP_SCAN_STAGE)
    if issubclass(plugin_cls, RemoteFixer):
        caps.add(CAP_FIX_STAGE)
    if issubclass(plugin_cls, StageDeployer):
        caps.add(CAP_DEPLOY_STAGE)
    return frozenset(caps)


class PluginRegistry:
    """Known plugin classes per category, in registration order."""

    def __init__(self) -> None:
        self._by_category: dict[str, dict[str, type[Plugin]]] = {c: {} for c in CATEGORIES}

    def register(self, plugin_cls: type[Plugin]) -> type[Plugin]:
        plugin_id = str(getattr(plugin_cls, "id", "") or "")
        category = str(getattr(plugin_cls, "category", "") or "")
        if not plugin_id or not category:
            raise PluginError(f"{plugin_cls.__name__} must define id and category")
        if category not in self._by_category:
            raise PluginError(f"{plugin_id}: unknown plugin category {category!r}")
        if category == "pipeline" and not issubclass(plugin_cls, PipelinePlugin):
            raise PluginError(f"{plugin_id}: pipeline plugins must subclass PipelinePlugin")
        if self.get(plugin_id) is not None:
            raise PluginError(f"plugin already registered: {plugin_id}")
        self._by_category[category][plugin_id] = plugin_cls
        return plugin_cls

    def get(self, plugin_id: str) -> type[Plugin] | None:
        for plugins in self._by_category.values():
            if plugin_id in plugins:
                return plugins[plugin_id]
        return None

    def by_category(self, category: str) -> list[type[Plugin]]:
        return list(self._by_category.get(category, {}).values())

    def __iter__(self) -> Iterator[type[Plugin]]:
        for category in CATEGORIES:
            yield from self._by_category[category].values()

    def __len__(self) -> int:
        return sum(len(p) for p in self._by_category.values())


@dataclass(frozen=True)
class PluginSet:
    """Plugins loaded for one invocation, with their capabilities."""

    plugins: tuple[type[Plugin], ...] = ()
    capabilities: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def of(cls, plugins: list[type[Plugin]]) -> PluginSet:
        return cls(
            plugins=tuple(plugins),
            capabilities={p.id: capabilities_of(p) for p in plugins},
        )

    @property
    def pipelines(self) -> list[type[PipelinePlugin]]:
        return [p for p in self.plugins if CAP_REACH in self.capabilities.get(p.id, frozenset())]  # type: ignore[misc]

    @property
    def servers(self) -> list[type[Plugin]]:
        return [p for p in self.plugins if p.category == "server"]

    def get(self, plugin_id: str) -> type[Plugin] | None:
        for p in self.plugins:
            if p.id == plugin_id:
                return p
        return None

    def supports(self, plugin_id: str, capability: str) -> bool:
        return capability in self.capabilities.get(plugin_id, frozenset())

    def ids(self) -> list[str]:
        return [p.id for p in self.plugins]


def default_registry() -> PluginRegistry:
    from stagedrift.pipelines import GithubWorkflowPipeline, StackPipeline
    from stagedrift.secrets import AnsibleVaultSecrets
    from stagedrift.servers import MacServer, UbuntuServer

    registry = PluginRegistry()
    for plugin_cls in (StackPipeline, GithubWorkflowPipeline, UbuntuServer, MacServer, AnsibleVaultSecrets):
        registry.register(plugin_cls)
    return registry


def load_relevant_plugins(
    root_dir: Path,
    config: Mapping[str, Any],
    registry: PluginRegistry | None = None,
) -> PluginSet:
    reg = registry if registry is not None else default_registry()
    loaded: list[type[Plugin]] = []
    for plugin_cls in reg:
        try:
            wanted = bool(plugin_cls.should_load(root_dir, config))
        except Exception as e:
            print(f"note: could not evaluate {plugin_cls.id} plugin ({e}); not loading it", file=sys.stderr)
            continue
        if wanted:
            loaded.append(plugin_cls)
    return PluginSet.of(loaded)
