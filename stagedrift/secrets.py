from __future__ import annotations

import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from stagedrift.fixes import Fix
from stagedrift.plugins import SecretsPlugin
from stagedrift.stages import ScanOutcome

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


DEFAULT_VAULT_PATH = "group_vars/all/vault.yml"


def ansible_settings(config: Mapping[str, Any]) -> dict[str, Any]:
    raw = config.get("ansible")
    return raw if isinstance(raw, dict) else {}


def vault_path(ctx: ExecutionContext) -> Path:
    return ctx.expand(str(ansible_settings(ctx.config).get("vault_path") or DEFAULT_VAULT_PATH))


def vault_password_file(ctx: ExecutionContext) -> Path | None:
    raw = ansible_settings(ctx.config).get("vault_password_file") or ctx.env.get("ANSIBLE_VAULT_PASSWORD_FILE")
    return ctx.expand(str(raw)) if raw else None


def _vault_missing(ctx: ExecutionContext) -> ScanOutcome:
    # Without a password there is no way to create the vault, so don't nag.
    pass_file = vault_password_file(ctx)
    if pass_file is None or not pass_file.exists():
        return ScanOutcome.NOT_APPLICABLE
    return ScanOutcome.CLEAN if vault_path(ctx).exists() else ScanOutcome.PROBLEM


def _password_file_too_open(ctx: ExecutionContext) -> ScanOutcome:
    pass_file = vault_password_file(ctx)
    if pass_file is None or not pass_file.exists():
        return ScanOutcome.NOT_APPLICABLE
    mode = stat.S_IMODE(pass_file.stat().st_mode)
    return ScanOutcome.PROBLEM if mode & 0o077 else ScanOutcome.CLEAN


def _restrict_password_file(ctx: ExecutionContext) -> bool:
    pass_file = vault_password_file(ctx)
    if pass_file is None:
        return False
    pass_file.chmod(0o600)
    return stat.S_IMODE(pass_file.stat().st_mode) == 0o600


class AnsibleVaultSecrets(SecretsPlugin):
    id = "ansible-vault"
    name = "Ansible Vault"
    fixes = (
        Fix(
            id="vault-file-missing",
            stage="secrets",
            severity="critical",
            description=f"Encrypted vault not found (ansible.vault_path, default {DEFAULT_VAULT_PATH})",
            scan=_vault_missing,
            manual_fix="Create it: ansible-vault create --vault-password-file <file> " + DEFAULT_VAULT_PATH,
        ),
        Fix(
            id="vault-password-file-permissions",
            stage="secrets",
            severity="warning",
            description="Vault password file is readable by other users",
            scan=_password_file_too_open,
            fix=_restrict_password_file,
            manual_fix="Run: chmod 600 <ansible.vault_password_file>",
        ),
    )

    @classmethod
    def should_load(cls, root_dir: Path, config: Mapping[str, Any]) -> bool:
        return bool(ansible_settings(config))
