from __future__ import annotations

import os
import stat
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from stagedrift.context import build_context
from stagedrift.secrets import AnsibleVaultSecrets
from stagedrift.servers import MacServer, UbuntuServer, is_lan_host, server_for_stage
from stagedrift.stages import ScanOutcome


@pytest.mark.parametrize(
    "host,expected",
    [("192.168.1.5", True), ("10.0.0.2", True), ("100.101.3.4", True), ("8.8.8.8", False), ("shop.test", False)],
)
def test_is_lan_host(host: str, expected: bool) -> None:
    assert is_lan_host(host) is expected


def test_server_load_rules(tmp_path: Path) -> None:
    assert UbuntuServer.should_load(tmp_path, {"prod": {"server": "ubuntu"}})
    assert not UbuntuServer.should_load(tmp_path, {"prod": {"server": "mac"}})
    assert MacServer.should_load(tmp_path, {"staging": {"server": "mac-mini"}})
    assert MacServer.should_load(tmp_path, {"staging": {"domain": "192.168.0.40"}})
    assert not MacServer.should_load(tmp_path, {"staging": {"domain": "EXAMPLE-192.168.0.40"}})
    assert not MacServer.should_load(tmp_path, {"prod": {"domain": "192.168.0.40"}})


def test_server_fixes_are_os_filtered() -> None:
    assert all(f.os_filter == ("linux",) for f in UbuntuServer.fixes)
    assert all(f.os_filter == ("darwin",) for f in MacServer.fixes)
    assert "mac-dev-docker-missing" in [f.id for f in MacServer.fixes]
    assert "ubuntu-prod-sleep-enabled" in [f.id for f in UbuntuServer.fixes]


def test_placeholder_hosts_are_not_applicable(tmp_path: Path) -> None:
    ctx = build_context(tmp_path, config={"prod": {"domain": "EXAMPLE-shop.test"}}, env={}, home=tmp_path)
    fix = [f for f in UbuntuServer.fixes if f.id == "ubuntu-prod-docker-missing"][0]
    assert fix.scan(ctx) is ScanOutcome.NOT_APPLICABLE


def test_docker_missing_detector(tmp_path: Path) -> None:
    ctx = build_context(tmp_path, config={"prod": {"domain": "shop.test"}}, env={}, home=tmp_path)
    fix = [f for f in UbuntuServer.fixes if f.id == "ubuntu-prod-docker-missing"][0]
    with patch("stagedrift.servers.shutil.which", return_value=None):
        assert fix.scan(ctx) is ScanOutcome.PROBLEM
    with patch("stagedrift.servers.shutil.which", return_value="/usr/bin/docker"):
        assert fix.scan(ctx) is ScanOutcome.CLEAN


def test_server_for_stage_prefers_configured_server() -> None:
    config = {"staging": {"server": "mac"}, "prod": {"server": "ubuntu"}}
    assert server_for_stage([UbuntuServer, MacServer], config, "staging") is MacServer
    assert server_for_stage([UbuntuServer, MacServer], config, "prod") is UbuntuServer
    assert server_for_stage([], config, "prod") is None


def test_compose_deploy(tmp_path: Path) -> None:
    ctx = build_context(tmp_path, config={}, env={}, home=tmp_path)
    done = subprocess.CompletedProcess(["docker"], 0, stdout="", stderr="")
    with patch("stagedrift.servers.subprocess.run", return_value=done) as run:
        result = UbuntuServer(ctx).deploy("staging", {"build": True})
    assert result.success
    assert run.call_args.args[0] == ["docker", "compose", "up", "-d", "--build"]
    assert run.call_args.kwargs["cwd"] == str(ctx.root_dir)

    failed = subprocess.CompletedProcess(["docker"], 1, stdout="", stderr="no such service: web\n")
    with patch("stagedrift.servers.subprocess.run", return_value=failed):
        result = UbuntuServer(ctx).deploy("staging")
    assert not result.success
    assert result.error == "no such service: web"


def test_vault_password_permissions_fix(tmp_path: Path) -> None:
    pass_file = tmp_path / ".vault_pass"
    pass_file.write_text("hunter2\n", encoding="utf-8")
    os.chmod(pass_file, 0o644)
    config = {"ansible": {"vault_path": "group_vars/all/vault.yml", "vault_password_file": "~/.vault_pass"}}
    ctx = build_context(tmp_path, config=config, env={}, home=tmp_path)
    by_id = {f.id: f for f in AnsibleVaultSecrets.fixes}

    assert AnsibleVaultSecrets.should_load(tmp_path, config)
    assert not AnsibleVaultSecrets.should_load(tmp_path, {})

    perms = by_id["vault-password-file-permissions"]
    assert perms.scan(ctx) is ScanOutcome.PROBLEM
    assert perms.fix(ctx) is True
    assert stat.S_IMODE(pass_file.stat().st_mode) == 0o600
    assert perms.scan(ctx) is ScanOutcome.CLEAN

    vault = by_id["vault-file-missing"]
    assert vault.fix is None
    assert vault.scan(ctx) is ScanOutcome.PROBLEM
    (tmp_path / "group_vars" / "all").mkdir(parents=True)
    (tmp_path / "group_vars" / "all" / "vault.yml").write_text("$ANSIBLE_VAULT;1.1;AES256\n", encoding="utf-8")
    assert vault.scan(ctx) is ScanOutcome.CLEAN
