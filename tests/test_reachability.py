from __future__ import annotations

import io
import unittest
from contextlib import redirect_stderr
from pathlib import Path

from stagedrift.context import build_context
from stagedrift.plugins import PipelinePlugin, PluginRegistry, PluginSet
from stagedrift.reachability import Reachability, plan_stages, resolve
from stagedrift.scan import scan_report


class SshOnly(PipelinePlugin):
    id = "ssh-only"

    @classmethod
    def can_reach(cls, stage, ctx):
        if stage == "dev":
            return Reachability.local()
        if stage == "staging":
            return Reachability.remote("ssh")
        return Reachability.blocked(f"ssh-only cannot reach {stage}", hint="add a key")


class WorkflowOnly(PipelinePlugin):
    id = "workflow-only"

    @classmethod
    def can_reach(cls, stage, ctx):
        if stage == "prod":
            return Reachability.remote("workflow")
        return Reachability.blocked(f"workflow-only cannot reach {stage}")


class Nowhere(PipelinePlugin):
    id = "nowhere"

    @classmethod
    def can_reach(cls, stage, ctx):
        return Reachability.blocked("nowhere never reaches anything")


class Broken(PipelinePlugin):
    id = "broken"

    @classmethod
    def can_reach(cls, stage, ctx):
        raise PermissionError("~/.ssh not readable")


def _ctx(config: dict | None = None):
    root = Path("/tmp/stagedrift-reachability")
    return build_context(root, config=config or {}, env={}, home=root / "home")


class ReachabilityTests(unittest.TestCase):
    def test_invariants(self) -> None:
        with self.assertRaises(ValueError):
            Reachability(reachable=True)
        with self.assertRaises(ValueError):
            Reachability(reachable=False)
        self.assertTrue(Reachability.local().is_local)

    def test_no_pipeline_means_local(self) -> None:
        reach = resolve("prod", _ctx(), PluginSet.of([]))
        self.assertTrue(reach.reachable)
        self.assertEqual(reach.via, "local")

    def test_first_reachable_wins_and_is_tagged(self) -> None:
        plugins = PluginSet.of([SshOnly, WorkflowOnly])
        staging = resolve("staging", _ctx(), plugins)
        prod = resolve("prod", _ctx(), plugins)
        self.assertEqual((staging.via, staging.owner), ("ssh", "ssh-only"))
        self.assertEqual((prod.via, prod.owner), ("workflow", "workflow-only"))

    def test_unreachable_prefers_configured_pipeline_reason(self) -> None:
        plugins = PluginSet.of([SshOnly, WorkflowOnly, Nowhere])
        reach = resolve("secrets", _ctx({"pipeline": "ssh-only"}), plugins)
        self.assertFalse(reach.reachable)
        self.assertEqual(reach.reason, "ssh-only cannot reach secrets")
        self.assertEqual(reach.hint, "add a key")
        self.assertEqual(reach.owner, "ssh-only")

    def test_unreachable_falls_back_to_last_reason(self) -> None:
        plugins = PluginSet.of([SshOnly, Nowhere])
        reach = resolve("secrets", _ctx(), plugins)
        self.assertEqual(reach.reason, "nowhere never reaches anything")
        self.assertEqual(reach.owner, "nowhere")

    def test_plan_partitions_in_stage_order(self) -> None:
        plugins = PluginSet.of([SshOnly, WorkflowOnly])
        plan = plan_stages(_ctx(), plugins, ["prod", "secrets", "staging", "dev"])
        self.assertEqual(plan.stages, ["dev", "secrets", "staging", "prod"])
        self.assertEqual(plan.local, ["dev"])
        self.assertEqual(plan.remote, {"staging": "ssh-only", "prod": "workflow-only"})
        self.assertEqual(plan.unreachable, ["secrets"])
        self.assertEqual(plan.status("secrets"), "unreachable")

    def test_failing_check_is_blocked_and_next_pipeline_tried(self) -> None:
        err = io.StringIO()
        with redirect_stderr(err):
            dev = resolve("dev", _ctx(), PluginSet.of([Broken, SshOnly]))
            prod = resolve("prod", _ctx(), PluginSet.of([Broken]))

        self.assertEqual((dev.via, dev.owner), ("local", "ssh-only"))
        self.assertFalse(prod.reachable)
        self.assertEqual(prod.reason, "broken reachability check failed: ~/.ssh not readable")
        self.assertIn("note: broken could not check prod", err.getvalue())


def test_failing_check_does_not_escape_scan(tmp_path: Path) -> None:
    registry = PluginRegistry()
    registry.register(Broken)
    ctx = build_context(tmp_path, config={}, env={}, home=tmp_path)

    with redirect_stderr(io.StringIO()):
        report = scan_report(ctx, ["dev"], silent=True, registry=registry)

    assert report.plan.unreachable == ["dev"]
    assert "~/.ssh not readable" in str(report.plan.reachability["dev"].reason)
