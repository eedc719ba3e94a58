from __future__ import annotations

from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from stagedrift.catalog import build_catalog
from stagedrift.config import env_host, environments_for_stage, extract_environments, stage_from_environment
from stagedrift.context import ExecutionContext
from stagedrift.fixer import apply_fix
from stagedrift.fixes import Fix
from stagedrift.plugins import (
    CAP_DEPLOY_STAGE,
    DeployResult,
    PipelinePlugin,
    PluginRegistry,
    PluginSet,
    load_relevant_plugins,
)
from stagedrift.reachability import StagePlan, plan_stages
from stagedrift.remote import DEFAULT_SSH_USER
from stagedrift.scan import detect_problems
from stagedrift.servers import is_placeholder


CRITICAL_BLOCK_ERROR = "Critical issues remain"


def default_environment(config: Mapping[str, Any], stage: str) -> str:
    envs = environments_for_stage(dict(config), stage)
    return next(iter(envs), stage)


def resolve_target(ctx: ExecutionContext, target: str) -> tuple[str, str]:
    """
    Map an environment name (or bare stage) to (environment, stage).

    Raises ValueError for names that map to no stage, and for staging/prod
    environments missing from the config.
    """

    stage = stage_from_environment(target)
    if stage in ("dev", "secrets"):
        return (target, stage)
    envs = extract_environments(dict(ctx.config))
    if target in envs:
        return (target, stage)
    if target == stage:
        # `--staging` / `--prod` pick the first environment of that stage.
        named = environments_for_stage(dict(ctx.config), stage)
        if named:
            return (next(iter(named)), stage)
    available = ", ".join(envs) or "none"
    raise ValueError(f"Environment '{target}' not found in config. Available: {available}")


def critical_gate(
    ctx: ExecutionContext,
    plugin_set: PluginSet,
    plan: StagePlan,
    stage: str,
) -> list[Fix]:
    """
    Detect problems for a locally reachable target stage and auto-fix the
    critical ones that have a remediator. Returns the critical problems left.
    """

    if stage not in plan.local:
        return []
    catalog = build_catalog(plugin_set)
    detection = detect_problems(ctx, catalog, [stage], silent=True)
    remaining: list[Fix] = []
    for fix in detection.problems[stage]:
        if fix.severity != "critical":
            continue
        if fix.fix is None:
            remaining.append(fix)
            continue
        outcome = apply_fix(ctx, fix, silent=True)
        if outcome.status == "fixed":
            print(f"  [OK] Fixed: {fix.description}")
        else:
            remaining.append(fix)
    return remaining


def select_pipeline(plugin_set: PluginSet, plan: StagePlan, stage: str, config: Mapping[str, Any]) -> type[PipelinePlugin] | None:
    candidates = [p for p in plugin_set.pipelines if plugin_set.supports(p.id, CAP_DEPLOY_STAGE)]
    if not candidates:
        return None
    by_id = {p.id: p for p in candidates}
    owner = plan.reachability[stage].owner
    if owner and owner in by_id:
        return by_id[owner]
    configured = str(config.get("pipeline") or "")
    if configured in by_id:
        return by_id[configured]
    return candidates[0]


def print_recovery(ctx: ExecutionContext, environment: str, stage: str) -> None:
    env = extract_environments(dict(ctx.config)).get(environment, {})
    host = env_host(env) or "<host>"
    user = str(env.get("ssh_user") or DEFAULT_SSH_USER)
    key = f"~/.ssh/{stage}_deploy_key"
    print("")
    print("RECOVERY OPTIONS:")
    print("")
    print("  1. View logs on server:")
    print(f'     ssh -i {key} {user}@{host} "docker compose logs --tail 50"')
    print("")
    print("  2. Roll back to a previous commit:")
    print("     git log --oneline -5")
    print(f"     stagedrift deploy --{stage} --commit <hash>")
    print("")
    print("  3. Manual server access:")
    print(f"     ssh -i {key} {user}@{host}")
    print("")


def health_check(domain: str, *, timeout_seconds: int = 10) -> bool:
    url = f"https://{domain}"
    print("")
    print("Running health check...")
    req = Request(url, headers={"User-Agent": "stagedrift-health-check"})
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:  # noqa: S310 (configured domain)
            status = int(getattr(resp, "status", 200))
    except HTTPError as e:
        print(f"  [!] {url} returned status {e.code}")
        return False
    except URLError as e:
        print(f"  [!] Could not reach {url}: {e.reason}")
        print("      Note: DNS or SSL may still be propagating")
        return False
    except (OSError, ValueError) as e:
        print(f"  [!] Health check failed for {url}: {e}")
        return False
    if status < 400:
        print(f"  [OK] {url} responded with status {status}")
        return True
    print(f"  [!] {url} returned status {status}")
    return False


def _print_dry_run(ctx: ExecutionContext, environment: str, stage: str, pipeline_id: str | None) -> None:
    print("[DRY RUN] Deployment plan:")
    print("")
    print(f"  Environment: {environment}")
    print(f"  Stage:       {stage}")
    print(f"  Pipeline:    {pipeline_id or 'N/A'}")
    env = extract_environments(dict(ctx.config)).get(environment)
    if env:
        print(f"  Domain:      {env.get('domain') or 'N/A'}")
        print(f"  Server:      {env.get('server') or 'N/A'}")
        print(f"  SSH User:    {env.get('ssh_user') or DEFAULT_SSH_USER}")
    print("")
    print(f"Run without --dry-run to execute: stagedrift deploy --env {environment}")


def deploy(
    ctx: ExecutionContext,
    target: str,
    *,
    options: Mapping[str, Any] | None = None,
    registry: PluginRegistry | None = None,
) -> DeployResult:
    """
    Gate the target stage on critical problems, then hand off to a pipeline.

    The pipeline is only constructed once the gate passes; its result is
    returned unchanged.
    """

    opts = dict(options or {})
    try:
        environment, stage = resolve_target(ctx, target)
    except ValueError as e:
        print(f"[ERROR] {e}")
        return DeployResult(False, error=str(e))

    print(f"Environment: {environment} ({stage} stage)")
    print("")
    print("Running pre-deploy checks...")

    plugin_set = load_relevant_plugins(ctx.root_dir, ctx.config, registry)
    plan = plan_stages(ctx, plugin_set, [stage])

    remaining = critical_gate(ctx, plugin_set, plan, stage)
    if remaining:
        print("[ERROR] Critical issues found that must be fixed before deployment:")
        print("")
        print(f"{stage.upper()}:")
        for fix in remaining:
            print(f"  [ERROR] {fix.description}")
            if fix.manual_fix:
                print(f"    Hint: {fix.manual_fix}")
        print("")
        return DeployResult(False, error=CRITICAL_BLOCK_ERROR)
    print("[OK] All pre-deploy checks passed!")
    print("")

    pipeline_cls = select_pipeline(plugin_set, plan, stage, ctx.config)

    if opts.get("dry_run"):
        _print_dry_run(ctx, environment, stage, pipeline_cls.id if pipeline_cls else None)
        return DeployResult(True, message="Dry run completed")

    if pipeline_cls is None:
        return DeployResult(False, error="No pipeline plugin found")

    print(f"DEPLOYING {environment.upper()}")
    opts["environment"] = environment
    try:
        pipeline = pipeline_cls(ctx)
        result = pipeline.deploy_stage(stage, opts)  # type: ignore[attr-defined]
    except Exception as e:
        print(f"[ERROR] Deployment error: {e}")
        print_recovery(ctx, environment, stage)
        return DeployResult(False, error=str(e) or type(e).__name__)

    if not result.success:
        print(f"[ERROR] Deployment failed: {result.error}")
        print_recovery(ctx, environment, stage)
        return result

    print(f"[OK] Deployment to {environment} complete!")
    if result.message:
        print(f"  {result.message}")
    if stage in ("staging", "prod") and ctx.settings.health_check:
        domain = str(extract_environments(dict(ctx.config)).get(environment, {}).get("domain") or "")
        if domain and not is_placeholder(domain):
            health_check(domain, timeout_seconds=ctx.settings.health_timeout_seconds)
    return result
