# ABOUTME: Built-in pipeline plugins. `stack` reaches servers over SSH with per-stage deploy keys;
# ABOUTME: `github` reaches them by dispatching stagedrift workflows with the gh CLI.
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import yaml

from stagedrift.config import CONFIG_FILE, environments_for_stage, stage_configured
from stagedrift.envfiles import ENV_FILES
from stagedrift.fixes import Fix
from stagedrift.plugins import (
    DeployResult,
    HookResult,
    PipelinePlugin,
    RemoteFixer,
    RemoteScanner,
    StageDeployer,
    load_relevant_plugins,
)
from stagedrift.reachability import Reachability
from stagedrift.remote import RemoteResult, deploy_key_path, find_ssh_key, run_remote_command, run_workflow
from stagedrift.secrets import ansible_settings, vault_password_file
from stagedrift.servers import ComposeServer, server_for_stage
from stagedrift.settings import ensure_settings
from stagedrift.stages import ScanOutcome

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


IGNORED_ENV_FILES = (ENV_FILES["staging"], ENV_FILES["prod"])
_ENV_WILDCARDS = (".env*", ".env.*")


def _ensure_line_in_file(path: Path, line: str) -> bool:
    existing = ""
    if path.exists():
        existing = path.read_text(encoding="utf-8")
    lines = existing.splitlines()
    if any(l.strip() == line for l in lines):
        return False
    new = existing.rstrip("\n")
    if new:
        new += "\n"
    new += line + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(new, encoding="utf-8")
    return True


def _gitignore_lines(ctx: ExecutionContext) -> set[str]:
    path = ctx.path(".gitignore")
    if not path.exists():
        return set()
    return {l.strip() for l in path.read_text(encoding="utf-8").splitlines()}


def _env_files_unignored(ctx: ExecutionContext) -> bool:
    lines = _gitignore_lines(ctx)
    if any(w in lines for w in _ENV_WILDCARDS):
        return False
    return not all(name in lines for name in IGNORED_ENV_FILES)


def _ignore_env_files(ctx: ExecutionContext) -> bool:
    for name in IGNORED_ENV_FILES:
        _ensure_line_in_file(ctx.path(".gitignore"), name)
    return not _env_files_unignored(ctx)


def _config_missing(ctx: ExecutionContext) -> bool:
    return not ctx.path(CONFIG_FILE).exists()


def _write_config_template(ctx: ExecutionContext) -> bool:
    template = {
        "name": ctx.root_dir.name,
        "config_version": 1,
        "staging": {"domain": "EXAMPLE-staging.example.com", "server": "ubuntu"},
        "prod": {"domain": "EXAMPLE-example.com", "server": "ubuntu"},
    }
    ensure_settings(ctx.root_dir)
    path = ctx.path(CONFIG_FILE)
    if path.exists():
        return True
    path.write_text(yaml.safe_dump(template, sort_keys=False), encoding="utf-8")
    return True


def _env_example_missing(ctx: ExecutionContext) -> bool:
    return not ctx.path(ENV_FILES["dev"]).exists()


def _write_env_example(ctx: ExecutionContext) -> bool:
    path = ctx.path(ENV_FILES["dev"])
    if not path.exists():
        path.write_text("# Variables every environment needs; real values go in .env.staging / .env.prod\n", encoding="utf-8")
    return True


def _deploy_key_detector(stage: str):
    def scan(ctx: ExecutionContext) -> ScanOutcome:
        if not stage_configured(dict(ctx.config), stage):
            return ScanOutcome.NOT_APPLICABLE
        return ScanOutcome.CLEAN if find_ssh_key(ctx, stage) else ScanOutcome.PROBLEM

    return scan


def _ssh_label(stage: str) -> str:
    return f"SSH_{stage.upper()}"


def _uses_aws(ctx: ExecutionContext, stage: str) -> bool:
    for env in environments_for_stage(dict(ctx.config), stage).values():
        if env.get("pipeline") == "aws" or env.get("access_key_id") or env.get("server") == "aws":
            return True
    return False


def _vault_password_available(ctx: ExecutionContext) -> bool:
    if ctx.env.get("ANSIBLE_VAULT_PASSWORD") or ctx.env.get("ANSIBLE_VAULT_PASSWORD_FILE"):
        return True
    pass_file = vault_password_file(ctx)
    return pass_file is not None and pass_file.exists()


def deploy_with_server(ctx: ExecutionContext, stage: str, options: Mapping[str, Any]) -> DeployResult:
    """Deploy from this machine through the server plugin that owns the stage."""

    plugin_set = load_relevant_plugins(ctx.root_dir, ctx.config)
    server_cls = server_for_stage(plugin_set.servers, ctx.config, stage)  # type: ignore[arg-type]
    if server_cls is None:
        if stage == "dev":
            return ComposeServer(ctx).deploy(stage, options)
        return DeployResult(False, error="No server plugin found")
    return server_cls(ctx).deploy(stage, options)  # type: ignore[attr-defined]


def _print_remote(stage: str, action: str, result: RemoteResult) -> None:
    for line in result.stdout.splitlines():
        print(f"   {line}")
    if not result.success:
        print(f"   [!] {stage} {action} failed: {result.summary or 'no output'}")


class StackPipeline(PipelinePlugin, RemoteScanner, RemoteFixer, StageDeployer):
    id = "stack"
    name = "Stack (SSH)"
    fixes = (
        Fix(
            id="missing-stack-config",
            stage="dev",
            severity="critical",
            description=f"{CONFIG_FILE} not found",
            scan=_config_missing,
            fix=_write_config_template,
            manual_fix=f"Create {CONFIG_FILE} with a name and one entry per environment",
        ),
        Fix(
            id="env-files-not-gitignored",
            stage="dev",
            severity="warning",
            description=f"{' and '.join(IGNORED_ENV_FILES)} are not ignored by git",
            scan=_env_files_unignored,
            fix=_ignore_env_files,
            manual_fix=f"Add {' and '.join(IGNORED_ENV_FILES)} to .gitignore",
        ),
        Fix(
            id="missing-env-example",
            stage="dev",
            severity="warning",
            description=f"{ENV_FILES['dev']} not found",
            scan=_env_example_missing,
            fix=_write_env_example,
            manual_fix=f"Create {ENV_FILES['dev']} listing the variables the app needs",
        ),
        Fix(
            id="missing-ssh-key-staging",
            stage="secrets",
            severity="warning",
            description="No staging deploy key at ~/.ssh/staging_deploy_key",
            scan=_deploy_key_detector("staging"),
            manual_fix="Save the staging deploy key to ~/.ssh/staging_deploy_key and chmod 600 it",
        ),
        Fix(
            id="missing-ssh-key-prod",
            stage="secrets",
            severity="warning",
            description="No prod deploy key at ~/.ssh/prod_deploy_key",
            scan=_deploy_key_detector("prod"),
            manual_fix="Save the prod deploy key to ~/.ssh/prod_deploy_key and chmod 600 it",
        ),
    )

    @classmethod
    def can_reach(cls, stage: str, ctx: ExecutionContext) -> Reachability:
        if stage == "dev":
            return Reachability.local()

        if stage == "secrets":
            if not ansible_settings(ctx.config).get("vault_path"):
                return Reachability.blocked(
                    f"ansible.vault_path not configured in {CONFIG_FILE}",
                    hint=f"add an `ansible:` section with vault_path to {CONFIG_FILE}",
                )
            if not _vault_password_available(ctx):
                return Reachability.blocked(
                    "vault password required",
                    hint="set ansible.vault_password_file, or ANSIBLE_VAULT_PASSWORD / ANSIBLE_VAULT_PASSWORD_FILE",
                )
            return Reachability.local()

        if stage in ("staging", "prod"):
            if ctx.on_server:
                return Reachability.local()
            if find_ssh_key(ctx, stage):
                return Reachability.remote("ssh")
            # AWS stages are provisioned from the dev machine.
            if _uses_aws(ctx, stage):
                return Reachability.local()
            return Reachability.blocked(
                f"{_ssh_label(stage)} not found (no key at {deploy_key_path(ctx, stage)})",
                hint="stagedrift fix --secrets",
            )

        return Reachability.blocked(f"unknown stage: {stage}")

    def _route(self, stage: str, action: str) -> HookResult:
        reach = self.can_reach(stage, self.ctx)
        if not reach.reachable:
            print(f"[X] Cannot reach {stage}: {reach.reason}")
            return HookResult(handled=True, message=str(reach.reason))
        if reach.via != "ssh":
            return HookResult(handled=False)
        print(f"   Running {action} for {stage} via SSH...")
        result = run_remote_command(self.ctx, stage, action)
        _print_remote(stage, action, result)
        return HookResult(handled=True, message=result.summary)

    def scan_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        return self._route(stage, "scan")

    def fix_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        return self._route(stage, "fix")

    def deploy_stage(self, stage: str, options: Mapping[str, Any]) -> DeployResult:
        reach = self.can_reach(stage, self.ctx)
        if not reach.reachable:
            return DeployResult(False, error=reach.reason)
        if reach.via == "ssh":
            print(f"   Deploying to {stage} via SSH...")
            result = run_remote_command(self.ctx, stage, "deploy")
            _print_remote(stage, "deploy", result)
            if result.success:
                return DeployResult(True, message="Deployment complete via SSH")
            return DeployResult(False, error=result.stderr.strip() or "SSH deployment failed")
        return deploy_with_server(self.ctx, stage, options)


class GithubWorkflowPipeline(PipelinePlugin, RemoteScanner, RemoteFixer, StageDeployer):
    id = "github"
    name = "GitHub Actions"

    @classmethod
    def should_load(cls, root_dir: Path, config: Mapping[str, Any]) -> bool:
        return str(config.get("pipeline") or "") == "github"

    @classmethod
    def can_reach(cls, stage: str, ctx: ExecutionContext) -> Reachability:
        if stage not in ("staging", "prod"):
            return Reachability.blocked(f"the github pipeline does not handle {stage}")
        if ctx.on_server:
            return Reachability.local()
        if ctx.env.get("GITHUB_TOKEN") or ctx.env.get("GH_TOKEN"):
            return Reachability.remote("workflow")
        return Reachability.blocked(
            "GITHUB_TOKEN not set; cannot dispatch stagedrift workflows",
            hint="export GITHUB_TOKEN=... or run `gh auth login`",
        )

    def _dispatch(self, stage: str, action: str, options: Mapping[str, Any]) -> RemoteResult | None:
        reach = self.can_reach(stage, self.ctx)
        if not reach.reachable or reach.via != "workflow":
            return None
        ref = str(options.get("branch") or "main")
        inputs = {"commit": str(options["commit"])} if options.get("commit") else None
        print(f"   Running {action} for {stage} via GitHub Actions...")
        result = run_workflow(self.ctx, action, stage, ref=ref, inputs=inputs)
        _print_remote(stage, action, result)
        return result

    def scan_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        result = self._dispatch(stage, "scan", options)
        if result is None:
            return HookResult(handled=False)
        return HookResult(handled=True, message=result.summary)

    def fix_stage(self, stage: str, options: Mapping[str, Any]) -> HookResult:
        result = self._dispatch(stage, "fix", options)
        if result is None:
            return HookResult(handled=False)
        return HookResult(handled=True, message=result.summary)

    def deploy_stage(self, stage: str, options: Mapping[str, Any]) -> DeployResult:
        reach = self.can_reach(stage, self.ctx)
        if not reach.reachable:
            return DeployResult(False, error=reach.reason)
        if reach.via == "local":
            return deploy_with_server(self.ctx, stage, options)
        result = self._dispatch(stage, "deploy", options)
        if result is None or not result.success:
            return DeployResult(False, error=(result.stderr.strip() if result else "") or "workflow deployment failed")
        return DeployResult(True, message=result.stdout.strip() or "Deployment complete via GitHub Actions")
