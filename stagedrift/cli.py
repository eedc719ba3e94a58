from __future__ import annotations

import argparse
import io
import json
import sys
from contextlib import contextmanager, redirect_stdout
from pathlib import Path
from typing import Any, Iterator

from stagedrift.catalog import CatalogError, build_catalog
from stagedrift.config import CONFIG_FILE, ConfigError, config_exists
from stagedrift.context import ExecutionContext, build_context
from stagedrift.deploy import default_environment, deploy, resolve_target
from stagedrift.fixer import fix_report
from stagedrift.plugins import PluginError, load_relevant_plugins
from stagedrift.reachability import StagePlan
from stagedrift.scan import scan_report
from stagedrift.stages import STAGES, select_stages


class ExitCode:
    ok = 0
    failed = 1
    usage = 2


def _project_dir(args: argparse.Namespace) -> Path:
    return Path(args.dir) if args.dir else Path.cwd()


def _load_context(args: argparse.Namespace, *, require_config: bool = True) -> ExecutionContext | None:
    root = _project_dir(args)
    if not root.is_dir():
        print(f"error: not a directory: {root}", file=sys.stderr)
        return None
    if require_config and not config_exists(root):
        print(f"error: {CONFIG_FILE} not found in {root.resolve()}", file=sys.stderr)
        return None
    try:
        return build_context(root)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return None


def _requested_stage(args: argparse.Namespace) -> str | None:
    for stage in STAGES:
        if getattr(args, stage, False):
            return stage
    return None


def _stages(args: argparse.Namespace) -> list[str]:
    return select_stages(
        dev=bool(getattr(args, "dev", False)),
        secrets=bool(getattr(args, "secrets", False)),
        staging=bool(getattr(args, "staging", False)),
        prod=bool(getattr(args, "prod", False)),
    )


@contextmanager
def _captured(args: argparse.Namespace) -> Iterator[io.StringIO]:
    # In --json mode stdout carries exactly one document.
    buf = io.StringIO()
    if not args.json:
        yield buf
        return
    with redirect_stdout(buf):
        yield buf


def _blocked_request(args: argparse.Namespace, plan: StagePlan) -> str | None:
    # Only a stage the user asked for by name makes an unreachable stage an error.
    stage = _requested_stage(args)
    if stage is not None and stage in plan.unreachable:
        return stage
    return None


def cmd_scan(args: argparse.Namespace) -> int:
    ctx = _load_context(args)
    if ctx is None:
        return ExitCode.usage

    silent = bool(args.silent or args.json)
    try:
        with _captured(args) as log:
            report = scan_report(ctx, _stages(args), silent=silent)
    except (CatalogError, PluginError) as e:
        print(f"error: {e}", file=sys.stderr)
        return ExitCode.usage

    blocked = _blocked_request(args, report.plan)
    if args.json:
        out = report.to_dict()
        out["blocked"] = blocked
        out["log"] = log.getvalue().splitlines()
        print(json.dumps(out, indent=2, sort_keys=False))

    if blocked is not None:
        if not args.json:
            print(f"error: {blocked} is not reachable from here", file=sys.stderr)
        return ExitCode.failed
    if report.critical():
        return ExitCode.failed
    return ExitCode.ok


def cmd_fix(args: argparse.Namespace) -> int:
    ctx = _load_context(args, require_config=False)
    if ctx is None:
        return ExitCode.usage
    if not config_exists(ctx.root_dir):
        print(f"note: {CONFIG_FILE} not found; only bootstrap fixes will apply", file=sys.stderr)

    silent = bool(args.silent or args.json)
    try:
        with _captured(args) as log:
            report = fix_report(ctx, _stages(args), silent=silent)
    except (CatalogError, PluginError) as e:
        print(f"error: {e}", file=sys.stderr)
        return ExitCode.usage

    blocked = _blocked_request(args, report.plan)
    if args.json:
        out = report.to_dict()
        out["blocked"] = blocked
        out["log"] = log.getvalue().splitlines()
        print(json.dumps(out, indent=2, sort_keys=False))

    if blocked is not None:
        if not args.json:
            print(f"error: {blocked} is not reachable from here", file=sys.stderr)
        return ExitCode.failed
    if report.result.failed:
        return ExitCode.failed
    return ExitCode.ok


def cmd_deploy(args: argparse.Namespace) -> int:
    ctx = _load_context(args)
    if ctx is None:
        return ExitCode.usage

    stage = _requested_stage(args)
    if args.env:
        target = str(args.env)
    elif stage is not None:
        target = default_environment(ctx.config, stage)
    else:
        print("error: deploy needs a stage flag (--dev/--secrets/--staging/--prod) or --env NAME", file=sys.stderr)
        return ExitCode.usage

    try:
        resolve_target(ctx, target)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return ExitCode.usage

    options: dict[str, Any] = {"dry_run": bool(args.dry_run)}
    if args.branch:
        options["branch"] = args.branch
    if args.commit:
        options["commit"] = args.commit

    try:
        with _captured(args) as log:
            result = deploy(ctx, target, options=options)
    except (CatalogError, PluginError) as e:
        print(f"error: {e}", file=sys.stderr)
        return ExitCode.usage

    if args.json:
        out = result.to_dict()
        out["log"] = log.getvalue().splitlines()
        print(json.dumps(out, indent=2, sort_keys=False))
    return ExitCode.ok if result.success else ExitCode.failed


def cmd_plugins(args: argparse.Namespace) -> int:
    ctx = _load_context(args)
    if ctx is None:
        return ExitCode.usage

    try:
        plugin_set = load_relevant_plugins(ctx.root_dir, ctx.config)
        catalog = build_catalog(plugin_set)
    except (CatalogError, PluginError) as e:
        print(f"error: {e}", file=sys.stderr)
        return ExitCode.usage

    rows = []
    for plugin_cls in plugin_set.plugins:
        rows.append(
            {
                "id": plugin_cls.id,
                "name": plugin_cls.name,
                "category": plugin_cls.category,
                "version": plugin_cls.version,
                "capabilities": sorted(plugin_set.capabilities.get(plugin_cls.id, frozenset())),
                "fixes": len([f for f in catalog if f.plugin == plugin_cls.id]),
            }
        )

    if args.json:
        print(json.dumps({"plugins": rows}, indent=2, sort_keys=False))
        return ExitCode.ok

    if not rows:
        print("No plugins loaded.")
        return ExitCode.ok
    for row in rows:
        caps = ", ".join(row["capabilities"]) or "-"
        print(f"{row['id']:<14} {row['category']:<9} fixes={row['fixes']:<3} capabilities: {caps}")
    return ExitCode.ok


def _add_stage_flags(p: argparse.ArgumentParser) -> None:
    group = p.add_mutually_exclusive_group()
    group.add_argument("--dev", action="store_true", help="Only the dev stage")
    group.add_argument("--secrets", action="store_true", help="Only the secrets stage")
    group.add_argument("--staging", action="store_true", help="Only the staging stage")
    group.add_argument("--prod", action="store_true", help="Only the prod stage")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="stagedrift")
    p.add_argument("--dir", help="Project directory containing stack.yml. Defaults to cwd.")
    p.add_argument("--json", action="store_true", help="JSON output")

    sub = p.add_subparsers(dest="cmd", required=True)

    scan = sub.add_parser("scan", help="Detect configuration drift in reachable stages")
    _add_stage_flags(scan)
    scan.add_argument("--silent", action="store_true", help="Suppress progress output")
    scan.set_defaults(func=cmd_scan)

    fix = sub.add_parser("fix", help="Apply automatic fixes in reachable stages")
    _add_stage_flags(fix)
    fix.add_argument("--silent", action="store_true", help="Suppress progress output")
    fix.set_defaults(func=cmd_fix)

    dep = sub.add_parser("deploy", help="Gate on critical problems, then deploy through the pipeline")
    _add_stage_flags(dep)
    dep.add_argument("--env", help="Environment name from stack.yml (e.g. staging2, prod)")
    dep.add_argument("--dry-run", action="store_true", help="Run the gate and print the plan without deploying")
    dep.add_argument("--branch", help="Branch to deploy (workflow pipelines)")
    dep.add_argument("--commit", help="Commit to deploy")
    dep.set_defaults(func=cmd_deploy)

    plugins = sub.add_parser("plugins", help="List plugins loaded for this project")
    plugins.set_defaults(func=cmd_plugins)

    return p


def main(argv: list[str] | None = None) -> int:
    p = _build_parser()
    args = p.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
