"""
Script: tests/test_diff_core.py
What: Tests for preset code comparison between environments.
Why: Diff output drives the decision to sync; missing and identical must never be confused.
"""

from __future__ import annotations

import unittest

from fake_rally import FakeRallyAPI
from rally_tools.helpers.diff_core import diff_chain, diff_lines, diff_presets
from rally_tools.helpers.errors import TransportError
from rally_tools.helpers.rally_entities import Identity, Preset
from rally_tools.helpers.supply_chain_core import calculate_supply_chain


class DiffTests(unittest.TestCase):
    def setUp(self) -> None:
        self.api = FakeRallyAPI()
        self.api.add_env("DEV")
        self.api.add_env("PROD", first_id=900)
        same = self.api.add_preset("DEV", "Same", code="a\nb\n")
        changed = self.api.add_preset("DEV", "Changed", code="x = 1\n")
        only_dev = self.api.add_preset("DEV", "OnlyDev", code="z\n")
        self.api.add_rule("DEV", "Ingest", preset=same, pass_next=self.api.add_rule("DEV", "Transcode", preset=changed))
        self.api.add_rule("DEV", "Archive", preset=only_dev)
        self.api.add_preset("PROD", "Same", code="a\nb\n")
        self.api.add_preset("PROD", "Changed", code="x = 2\n")

    def test_results_follow_chain_order(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Ingest")
        results = diff_chain(chain, "PROD", self.api)
        self.assertEqual([(r.name, r.identical) for r in results], [("Same", True), ("Changed", False)])
        self.assertEqual(results[1].target_code, "x = 2\n")

    def test_missing_target_is_not_identical(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Archive")
        [result] = diff_chain(chain, "PROD", self.api)
        self.assertEqual(result.name, "OnlyDev")
        self.assertIsNone(result.target_code)
        self.assertFalse(result.identical)

    def test_local_preset_against_target(self) -> None:
        local = Preset(identity=Identity("Same"), code="a\nb\n")
        [result] = diff_presets([local], "PROD", self.api)
        self.assertTrue(result.identical)

    def test_ignore_same_filters_output_only(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Ingest")
        results = diff_chain(chain, "PROD", self.api)
        lines = diff_lines(results, ignore_same=True)
        self.assertEqual([l.split()[0] for l in lines], ["differs"])
        self.assertEqual(len(results), 2)

    def test_show_lines_adds_unified_diff(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Ingest")
        lines = diff_lines(diff_chain(chain, "PROD", self.api), show_lines=True)
        self.assertIn("-x = 1", lines)
        self.assertIn("+x = 2", lines)
        self.assertTrue(any(l.startswith("--- P-DEV-") for l in lines))

    def test_failed_fetch_is_recorded_per_preset(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Ingest")
        changed = self.api.preset_named("PROD", "Changed")["id"]
        self.api.fail("PROD", "GET", f"/presets/{changed}/artifacts/preset", 500)

        results = diff_chain(chain, "PROD", self.api)

        self.assertEqual([r.name for r in results], ["Same", "Changed"])
        self.assertTrue(results[0].identical)
        self.assertIsNone(results[0].error)
        self.assertFalse(results[1].identical)
        self.assertIn("HTTP 500", results[1].error)
        self.assertEqual([l.split()[0] for l in diff_lines(results)], ["same", "failed"])

    def test_unreachable_target_still_raises(self) -> None:
        chain = calculate_supply_chain(self.api, "DEV", "Ingest")
        self.api.unreachable.add("PROD")
        with self.assertRaises(TransportError):
            diff_chain(chain, "PROD", self.api)


if __name__ == "__main__":
    unittest.main()
