from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from stagedrift.settings import Settings, ensure_settings, load_settings, render_settings


class SettingsTests(unittest.TestCase):
    def test_ensure_and_load_default_settings(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)

            wrote = ensure_settings(root)
            self.assertTrue(wrote)
            self.assertTrue((root / ".stagedrift" / "settings.toml").exists())
            self.assertFalse(ensure_settings(root))

            s = load_settings(root)
            self.assertEqual(s, Settings())
            self.assertEqual(s.poll_interval_seconds, 5)
            self.assertEqual(s.remote_timeout_seconds, 900)
            self.assertEqual(s.remote_dir, "~/.stagedrift")
            self.assertTrue(s.health_check)

    def test_load_settings_sanitizes_invalid_values(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".stagedrift").mkdir()
            (root / ".stagedrift" / "settings.toml").write_text(
                "\n".join(
                    [
                        "schema = 1",
                        "",
                        "[remote]",
                        "poll_interval_seconds = -4",
                        "remote_timeout_seconds = \"soon\"",
                        "remote_dir = \"  \"",
                        "",
                        "[fix]",
                        "slow_fix_ms = -1",
                        "",
                        "[deploy]",
                        "health_check = false",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )

            s = load_settings(root)
            self.assertEqual(s.poll_interval_seconds, 1)
            self.assertEqual(s.remote_timeout_seconds, 900)
            self.assertEqual(s.remote_dir, "~/.stagedrift")
            self.assertEqual(s.slow_fix_ms, 0)
            self.assertFalse(s.health_check)

    def test_unparsable_settings_fall_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".stagedrift").mkdir()
            (root / ".stagedrift" / "settings.toml").write_text("[remote\n", encoding="utf-8")
            self.assertEqual(load_settings(root), Settings())

    def test_non_bool_health_check_keeps_default(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".stagedrift").mkdir()
            (root / ".stagedrift" / "settings.toml").write_text(
                "[deploy]\nhealth_check = \"false\"\nhealth_timeout_seconds = true\n",
                encoding="utf-8",
            )
            s = load_settings(root)
            self.assertTrue(s.health_check)
            self.assertEqual(s.health_timeout_seconds, 10)

    def test_rendered_settings_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            custom = Settings(remote_dir="/srv/apps", health_check=False, slow_fix_ms=0)
            (root / ".stagedrift").mkdir()
            (root / ".stagedrift" / "settings.toml").write_text(render_settings(custom), encoding="utf-8")
            self.assertEqual(load_settings(root), custom)
