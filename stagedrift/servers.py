from __future__ import annotations

import ipaddress
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping

from stagedrift.config import env_host, environments_for_stage, extract_environments, local_os
from stagedrift.fixes import Fix
from stagedrift.plugins import DeployResult, ServerPlugin
from stagedrift.stages import ScanOutcome

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


LAN_NETWORKS = (
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # Tailscale
)


@dataclass(frozen=True)
class PlatformCommands:
    install: str | None
    start: str | None
    manual_fix: str
    sleep_check: str
    sleep_disable: str


UBUNTU_COMMANDS = PlatformCommands(
    install=(
        "sudo apt-get update && sudo apt-get install -y docker.io && "
        "sudo systemctl enable docker && sudo systemctl start docker"
    ),
    start="sudo systemctl start docker",
    manual_fix="Install Docker: curl -fsSL https://get.docker.com | sh",
    sleep_check="systemctl is-enabled sleep.target",
    sleep_disable="sudo systemctl mask sleep.target suspend.target hibernate.target hybrid-sleep.target",
)

MAC_COMMANDS = PlatformCommands(
    install="brew install --cask docker",
    start="open -a Docker",
    manual_fix="Install Docker Desktop: https://www.docker.com/products/docker-desktop",
    sleep_check="pmset -g custom",
    sleep_disable="sudo pmset -a sleep 0 displaysleep 0",
)


def is_placeholder(host: str) -> bool:
    return host.upper().startswith("EXAMPLE")


def is_lan_host(host: str) -> bool:
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(addr in net for net in LAN_NETWORKS)


def _run(cmd: str, *, timeout: int = 120) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(cmd, shell=True, text=True, capture_output=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired):
        return None


def _ok(cmd: str, *, timeout: int = 120) -> bool:
    proc = _run(cmd, timeout=timeout)
    return proc is not None and proc.returncode == 0


def _stage_has_real_host(ctx: ExecutionContext, stage: str) -> bool:
    if stage in ("dev", "secrets"):
        return True
    for env in environments_for_stage(dict(ctx.config), stage).values():
        host = env_host(env)
        if host and not is_placeholder(host):
            return True
    return False


def _guarded(stage: str, check: Callable[[], bool]) -> Callable[[ExecutionContext], ScanOutcome]:
    def scan(ctx: ExecutionContext) -> ScanOutcome:
        if not _stage_has_real_host(ctx, stage):
            return ScanOutcome.NOT_APPLICABLE
        return ScanOutcome.PROBLEM if check() else ScanOutcome.CLEAN

    return scan


def _stage_label(stage: str) -> str:
    return "locally" if stage == "dev" else f"on {stage} server"


def docker_installed_fix(prefix: str, stage: str, os_name: str, commands: PlatformCommands) -> Fix:
    def install(ctx: ExecutionContext) -> bool:
        print("   Installing Docker...")
        return _ok(commands.install or "false", timeout=ctx.settings.remote_timeout_seconds)

    return Fix(
        id=f"{prefix}-{stage}-docker-missing",
        stage=stage,
        severity="critical",
        description=f"Docker is not installed {_stage_label(stage)}",
        scan=_guarded(stage, lambda: shutil.which("docker") is None),
        fix=install if commands.install else None,
        manual_fix=commands.manual_fix,
        os=os_name,
    )


def docker_running_fix(prefix: str, stage: str, os_name: str, commands: PlatformCommands) -> Fix:
    def start(ctx: ExecutionContext) -> bool:
        if _ok("docker info", timeout=30):
            return True
        print("   Starting Docker...")
        return _ok(commands.start or "false", timeout=ctx.settings.remote_timeout_seconds)

    return Fix(
        id=f"{prefix}-{stage}-docker-not-running",
        stage=stage,
        severity="critical",
        description=f"Docker is not running {_stage_label(stage)}",
        scan=_guarded(stage, lambda: shutil.which("docker") is not None and not _ok("docker info", timeout=30)),
        fix=start if commands.start else None,
        manual_fix=f"Start Docker: {commands.start}" if commands.start else commands.manual_fix,
        os=os_name,
    )


def _mac_sleep_enabled() -> bool:
    proc = _run(MAC_COMMANDS.sleep_check, timeout=30)
    if proc is None or proc.returncode != 0:
        return False
    m = re.search(r"\bsleep\s+(\d+)", proc.stdout or "")
    return bool(m and m.group(1) != "0")


def _ubuntu_sleep_enabled() -> bool:
    proc = _run(UBUNTU_COMMANDS.sleep_check, timeout=30)
    if proc is None:
        return False
    return (proc.stdout or "").strip() not in ("masked", "masked-runtime")


def sleep_disabled_fix(prefix: str, stage: str, os_name: str, commands: PlatformCommands) -> Fix:
    check = _mac_sleep_enabled if os_name == "darwin" else _ubuntu_sleep_enabled

    def disable(ctx: ExecutionContext) -> bool:
        return _ok(commands.sleep_disable, timeout=60)

    return Fix(
        id=f"{prefix}-{stage}-sleep-enabled",
        stage=stage,
        severity="warning",
        description=f"Server may sleep when idle ({stage})",
        scan=_guarded(stage, check),
        fix=disable,
        manual_fix=f"Disable sleep: {commands.sleep_disable}",
        os=os_name,
    )


def server_fixes(prefix: str, os_name: str, commands: PlatformCommands, *, dev: bool) -> tuple[Fix, ...]:
    out: list[Fix] = []
    stages = ("dev", "staging", "prod") if dev else ("staging", "prod")
    for stage in stages:
        out.append(docker_installed_fix(prefix, stage, os_name, commands))
        out.append(docker_running_fix(prefix, stage, os_name, commands))
        if stage != "dev":
            out.append(sleep_disabled_fix(prefix, stage, os_name, commands))
    return tuple(out)


class ComposeServer(ServerPlugin):
    """Server plugin that deploys by running docker compose in the project directory."""

    os_name: ClassVar[str] = ""
    server_names: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def should_load(cls, root_dir: Path, config: Mapping[str, Any]) -> bool:
        for env in extract_environments(dict(config)).values():
            if str(env.get("server") or "") in cls.server_names:
                return True
        return False

    def deploy(self, stage: str, options: Mapping[str, Any] | None = None) -> DeployResult:
        cmd = ["docker", "compose", "up", "-d"]
        if (options or {}).get("build"):
            cmd.append("--build")
        print(f"   Running {' '.join(cmd)} for {stage}...")
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.ctx.root_dir),
                text=True,
                capture_output=True,
                timeout=self.ctx.settings.remote_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return DeployResult(False, error=f"docker compose timed out after {self.ctx.settings.remote_timeout_seconds}s")
        except OSError as e:
            return DeployResult(False, error=f"could not run docker ({e})")
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            return DeployResult(False, error=detail or f"docker compose exited {proc.returncode}")
        return DeployResult(True, message=f"{stage} containers started")


class UbuntuServer(ComposeServer):
    id = "ubuntu"
    name = "Ubuntu Server"
    os_name = "linux"
    server_names = ("ubuntu",)
    fixes = server_fixes("ubuntu", "linux", UBUNTU_COMMANDS, dev=False)


class MacServer(ComposeServer):
    id = "mac"
    name = "Mac Server"
    os_name = "darwin"
    server_names = ("mac", "mac-mini")
    fixes = server_fixes("mac", "darwin", MAC_COMMANDS, dev=True)

    @classmethod
    def should_load(cls, root_dir: Path, config: Mapping[str, Any]) -> bool:
        if super().should_load(root_dir, config):
            return True
        for env in environments_for_stage(dict(config), "staging").values():
            host = env_host(env)
            if host and not is_placeholder(host) and is_lan_host(host):
                return True
        return False


def server_for_stage(servers: list[type[ServerPlugin]], config: Mapping[str, Any], stage: str) -> type[ServerPlugin] | None:
    """The server plugin named by the stage's environment, else the first loaded one."""

    for env in environments_for_stage(dict(config), stage).values():
        wanted = str(env.get("server") or "")
        for server in servers:
            if wanted in getattr(server, "server_names", ()):
                return server
    if stage in ("dev", "secrets"):
        for server in servers:
            if getattr(server, "os_name", "") == local_os():
                return server
    return servers[0] if servers else None
