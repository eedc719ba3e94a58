# ABOUTME: Remote execution helpers: SSH deploy keys, running stagedrift on a server, GitHub workflow runs.
# ABOUTME: Every remote call is bounded by a timeout from settings; runner/sleep/clock are injectable for tests.
from __future__ import annotations

import json
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from stagedrift.config import env_host, environments_for_stage

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


Runner = Callable[..., "subprocess.CompletedProcess[str]"]

DEFAULT_SSH_USER = "ubuntu"
GH_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class RemoteResult:
    success: bool
    stdout: str = ""
    stderr: str = ""

    @property
    def summary(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text.splitlines()[-1] if text else ""


def deploy_key_path(ctx: ExecutionContext, stage: str) -> Path:
    return ctx.home / ".ssh" / f"{stage}_deploy_key"


def find_ssh_key(ctx: ExecutionContext, stage: str) -> Path | None:
    key = deploy_key_path(ctx, stage)
    return key if key.is_file() else None


def ssh_target(ctx: ExecutionContext, stage: str) -> str | None:
    for env in environments_for_stage(dict(ctx.config), stage).values():
        host = env_host(env)
        if host:
            user = str(env.get("ssh_user") or DEFAULT_SSH_USER)
            return f"{user}@{host}"
    return None


def remote_stagedrift_command(ctx: ExecutionContext, stage: str, command: str) -> str:
    # The stage flag keeps the remote run from routing back over SSH.
    # remote_dir stays unquoted so a leading ~ still expands on the server.
    project_dir = f"{ctx.settings.remote_dir.rstrip('/')}/{shlex.quote(ctx.project_name)}"
    return (
        f"cd {project_dir} && STAGEDRIFT_ON_SERVER=true "
        f"stagedrift {shlex.quote(command)} --{stage}"
    )


def run_remote_command(
    ctx: ExecutionContext,
    stage: str,
    command: str,
    *,
    runner: Runner = subprocess.run,
) -> RemoteResult:
    """Run `stagedrift <command> --<stage>` on the stage's server over SSH."""

    key = find_ssh_key(ctx, stage)
    if key is None:
        return RemoteResult(False, stderr=f"no deploy key at {deploy_key_path(ctx, stage)}")
    target = ssh_target(ctx, stage)
    if target is None:
        return RemoteResult(False, stderr=f"no host or domain configured for {stage}")

    cmd = [
        "ssh",
        "-i",
        str(key),
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"ConnectTimeout={ctx.settings.ssh_connect_timeout_seconds}",
        target,
        remote_stagedrift_command(ctx, stage, command),
    ]
    try:
        proc = runner(cmd, text=True, capture_output=True, timeout=ctx.settings.remote_timeout_seconds)
    except subprocess.TimeoutExpired:
        return RemoteResult(False, stderr=f"timed out after {ctx.settings.remote_timeout_seconds}s")
    except OSError as e:
        return RemoteResult(False, stderr=f"could not run ssh ({e})")
    return RemoteResult(proc.returncode == 0, stdout=proc.stdout or "", stderr=proc.stderr or "")


def workflow_name(command: str, stage: str) -> str:
    return f"stagedrift-{command}-{stage}.yml"


def _gh(
    args: list[str],
    *,
    runner: Runner,
    cwd: Path,
    timeout: int,
) -> subprocess.CompletedProcess[str]:
    return runner(["gh", *args], text=True, capture_output=True, cwd=str(cwd), timeout=timeout)


def trigger_workflow(
    ctx: ExecutionContext,
    workflow: str,
    *,
    ref: str = "main",
    inputs: dict[str, str] | None = None,
    runner: Runner = subprocess.run,
) -> RemoteResult:
    args = ["workflow", "run", workflow, "--ref", ref]
    for key, value in (inputs or {}).items():
        args.extend(["-f", f"{key}={value}"])
    repo = str(ctx.config.get("github_repo") or "")
    if repo:
        args.extend(["--repo", repo])
    try:
        proc = _gh(args, runner=runner, cwd=ctx.root_dir, timeout=GH_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        return RemoteResult(False, stderr=f"gh workflow run {workflow} timed out")
    except OSError as e:
        return RemoteResult(False, stderr=f"could not run gh ({e})")
    return RemoteResult(proc.returncode == 0, stdout=proc.stdout or "", stderr=proc.stderr or "")


def _latest_run(
    ctx: ExecutionContext,
    workflow: str,
    *,
    runner: Runner,
) -> dict[str, Any] | None:
    args = ["run", "list", "--workflow", workflow, "--limit", "1", "--json", "databaseId,status,conclusion"]
    repo = str(ctx.config.get("github_repo") or "")
    if repo:
        args.extend(["--repo", repo])
    try:
        proc = _gh(args, runner=runner, cwd=ctx.root_dir, timeout=GH_TIMEOUT_SECONDS)
    except (subprocess.TimeoutExpired, OSError):
        return None
    if proc.returncode != 0:
        return None
    try:
        runs = json.loads(proc.stdout or "[]")
    except json.JSONDecodeError:
        return None
    if not isinstance(runs, list) or not runs or not isinstance(runs[0], dict):
        return None
    return runs[0]


def wait_for_run(
    ctx: ExecutionContext,
    workflow: str,
    *,
    runner: Runner = subprocess.run,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    previous_run_id: Any = None,
) -> RemoteResult:
    """
    Poll the newest run of `workflow` until it completes.

    Runs whose id equals `previous_run_id` predate the trigger and are
    ignored. Polls every `poll_interval_seconds`; giving up after
    `remote_timeout_seconds` is a failure, not a success.
    """

    interval = ctx.settings.poll_interval_seconds
    deadline = clock() + ctx.settings.remote_timeout_seconds
    while True:
        run = _latest_run(ctx, workflow, runner=runner)
        if run is not None and previous_run_id is not None and run.get("databaseId") == previous_run_id:
            run = None
        if run is not None and str(run.get("status") or "") == "completed":
            conclusion = str(run.get("conclusion") or "")
            if conclusion == "success":
                return RemoteResult(True, stdout=f"{workflow} run {run.get('databaseId')} succeeded")
            return RemoteResult(False, stderr=f"{workflow} run {run.get('databaseId')} concluded {conclusion or 'unknown'}")
        if clock() >= deadline:
            return RemoteResult(False, stderr=f"timed out waiting for {workflow} after {ctx.settings.remote_timeout_seconds}s")
        sleep(interval)


def run_workflow(
    ctx: ExecutionContext,
    command: str,
    stage: str,
    *,
    ref: str = "main",
    inputs: dict[str, str] | None = None,
    runner: Runner = subprocess.run,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RemoteResult:
    workflow = workflow_name(command, stage)
    before = _latest_run(ctx, workflow, runner=runner)
    started = trigger_workflow(ctx, workflow, ref=ref, inputs=inputs, runner=runner)
    if not started.success:
        return started
    return wait_for_run(
        ctx,
        workflow,
        runner=runner,
        sleep=sleep,
        clock=clock,
        previous_run_id=None if before is None else before.get("databaseId"),
    )
