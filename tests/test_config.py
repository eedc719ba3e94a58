from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import pytest

from stagedrift.config import (
    ConfigError,
    environments_for_stage,
    extract_environments,
    load_config,
    stage_from_environment,
    target_os_for_stage,
    used_servers,
)


class ConfigLoadingTests(unittest.TestCase):
    def test_user_values_win_over_auto_detected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "stack.yml").write_text(
                "\n".join(
                    [
                        "name: shop",
                        "staging:",
                        "  domain: staging.shop.test",
                        "  server: ubuntu",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            (root / "stackAuto.yml").write_text(
                "\n".join(
                    [
                        "name: autodetected",
                        "prisma_version: 5.1.0",
                        "staging:",
                        "  domain: ignored.test",
                        "  ssh_user: deploy",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )

            config = load_config(root)

            self.assertEqual(config["name"], "shop")
            self.assertEqual(config["prisma_version"], "5.1.0")
            self.assertEqual(config["staging"]["domain"], "staging.shop.test")
            self.assertEqual(config["staging"]["ssh_user"], "deploy")

    def test_missing_config_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_config(Path(td)), {})

    def test_non_mapping_config_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "stack.yml").write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(root)

    def test_broken_auto_config_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "stack.yml").write_text("name: shop\n", encoding="utf-8")
            (root / "stackAuto.yml").write_text("name: [unclosed\n", encoding="utf-8")
            self.assertEqual(load_config(root), {"name": "shop"})


def test_environments_skip_reserved_keys() -> None:
    config = {
        "name": "shop",
        "ansible": {"vault_path": "vault.yml"},
        "staging": {"domain": "a.test"},
        "staging2": {"domain": "b.test", "server": "mac"},
        "production": {"domain": "c.test", "server": "ubuntu"},
    }
    assert list(extract_environments(config)) == ["staging", "staging2", "production"]
    assert list(environments_for_stage(config, "staging")) == ["staging", "staging2"]
    assert list(environments_for_stage(config, "prod")) == ["production"]
    assert used_servers(config) == {"mac", "ubuntu"}


@pytest.mark.parametrize(
    "name,stage",
    [("dev", "dev"), ("secrets", "secrets"), ("staging2", "staging"), ("stage-eu", "staging"), ("prod", "prod"), ("production", "prod")],
)
def test_stage_from_environment(name: str, stage: str) -> None:
    assert stage_from_environment(name) == stage


def test_stage_from_unknown_environment() -> None:
    with pytest.raises(ValueError):
        stage_from_environment("qa")


def test_target_os_for_stage() -> None:
    config = {
        "dev_os": "macos",
        "staging": {"domain": "a.test", "server": "mac"},
        "prod": {"domain": "b.test", "server": "ubuntu", "os": "linux"},
    }
    assert target_os_for_stage(config, "dev") == "darwin"
    assert target_os_for_stage(config, "secrets") == "darwin"
    assert target_os_for_stage(config, "staging") == "darwin"
    assert target_os_for_stage(config, "prod") == "linux"
    assert target_os_for_stage({}, "prod") is None
