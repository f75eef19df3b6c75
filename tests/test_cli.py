"""
Script: tests/test_cli.py
What: Tests for the `rally` command line entry point.
Doing: Checks parser behavior and runs main() end to end against FakeRallyAPI.
Why: Exit codes and the calc | make pipe are what scripts around the tool depend on.
"""

from __future__ import annotations

import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest import mock

from fake_rally import FakeRallyAPI
from rally_tools.helpers.rally_entities import Preset
from rally_tools.helpers.supply_chain_core import calculate_supply_chain
from rally_tools.rally import build_parser, main


class ParserTests(unittest.TestCase):
    def test_supply_calc_arguments(self) -> None:
        args = build_parser().parse_args(
            ["supply", "calc", "Ingest", "Archive", "-e", "DEV", "--to", "QA", "--to", "PROD"])
        self.assertEqual((args.start, args.stop, args.env), ("Ingest", "Archive", "DEV"))
        self.assertEqual(args.to, ["QA", "PROD"])

    def test_global_option_before_subcommand_is_kept(self) -> None:
        args = build_parser().parse_args(["-e", "UAT", "--no-protect", "rule", "list"])
        self.assertEqual(args.env, "UAT")
        self.assertTrue(args.no_protect)

    def test_no_command_shows_status(self) -> None:
        args = build_parser().parse_args([])
        self.assertEqual(args.handler.__name__, "cmd_status")


@mock.patch.dict(os.environ, {}, clear=True)
class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config = os.path.join(self._tmp.name, "rallyconfig.json")
        with open(self.config, "w", encoding="utf-8") as f:
            json.dump({
                "api": {env: {"url": f"https://{env.lower()}.example", "key": "k"} for env in ("DEV", "QA", "PROD")},
                "defaultEnv": "DEV",
                "protectedEnvs": ["PROD"],
                "color": False,
            }, f)
        self.api = FakeRallyAPI()
        for env, first in (("DEV", 1), ("QA", 200), ("PROD", 500)):
            self.api.add_env(env, first_id=first)
        grade = self.api.add_preset("DEV", "ColorGrade", code="<grade/>")
        transcode = self.api.add_rule("DEV", "Transcode")
        self.api.add_rule("DEV", "Ingest", preset=grade, pass_next=transcode)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str, stdin: str = ""):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err), \
                mock.patch("sys.stdin", io.StringIO(stdin)):
            code = main(["--config", self.config, *argv], api=self.api)
        return code, out.getvalue(), err.getvalue()

    def test_calc_logs_chain(self) -> None:
        code, out, _ = self._run("supply", "calc", "Ingest")
        self.assertEqual(code, 0)
        self.assertIn("R-DEV-3: Ingest", out)
        self.assertIn("R-DEV-2: Transcode", out)
        self.assertIn("P-DEV-1: ColorGrade", out)

    def test_protected_target_aborts(self) -> None:
        code, _, err = self._run("supply", "calc", "Ingest", "--to", "PROD")
        self.assertEqual(code, 2)
        self.assertIn("CLI Aborted:", err)
        self.assertEqual(self.api.calls_for("GET", "PROD"), [])
        self.assertEqual(self.api.store["PROD"]["workflowRules"], {})

    def test_protected_target_is_rejected_before_any_call(self) -> None:
        for argv in (("supply", "calc", "Ingest", "--to", "QA", "--to", "PROD"),
                     ("supply", "make", "Ingest", "--to", "PROD"),
                     ("preset", "upload", "ColorGrade", "-e", "PROD")):
            self.api.calls.clear()
            code, _, err = self._run(*argv)
            self.assertEqual(code, 2, argv)
            self.assertIn("PROD is protected", err)
            self.assertEqual(self.api.calls, [], argv)

    def test_no_protect_allows_sync(self) -> None:
        code, out, _ = self._run("--no-protect", "supply", "calc", "Ingest", "--to", "PROD")
        self.assertEqual(code, 0)
        self.assertIsNotNone(self.api.rule_named("PROD", "Ingest"))
        self.assertIn("# Sync to PROD: 3 created", out)

    def test_unknown_start_exits_3(self) -> None:
        code, _, err = self._run("supply", "calc", "Nope")
        self.assertEqual(code, 3)
        self.assertIn("Nope", err)

    def test_unreachable_exits_4(self) -> None:
        self.api.unreachable.add("DEV")
        code, _, _ = self._run("supply", "calc", "Ingest")
        self.assertEqual(code, 4)

    def test_calc_output_pipes_into_make(self) -> None:
        log = "\n".join(calculate_supply_chain(self.api, "DEV", "Ingest").log_lines()) + "\n"
        code, out, _ = self._run("supply", "make", "-", "--to", "QA", stdin=log)
        self.assertEqual(code, 0)
        ingest = self.api.rule_named("QA", "Ingest")
        transcode = self.api.rule_named("QA", "Transcode")
        self.assertEqual(ingest["relationships"]["passNext"]["data"]["id"], transcode["id"])
        self.assertEqual(self.api.code[("QA", ingest["relationships"]["preset"]["data"]["id"])], "<grade/>")

    def test_make_with_nothing_resolvable_aborts(self) -> None:
        code, _, _ = self._run("supply", "make", "Nope")
        self.assertEqual(code, 2)

    def test_diff(self) -> None:
        self.api.add_preset("QA", "ColorGrade", code="<grade/>")
        code, out, _ = self._run("supply", "calc", "Ingest", "--diff", "QA")
        self.assertEqual(code, 0)
        self.assertIn("same", out)
        code, out, _ = self._run("supply", "calc", "Ingest", "--diff", "QA", "--ignore-same")
        self.assertNotIn("ColorGrade", out)

    def test_diff_failure_is_reported_and_exits_1(self) -> None:
        qa = self.api.add_preset("QA", "ColorGrade", code="<grade/>")
        self.api.fail("QA", "GET", f"/presets/{qa}/artifacts/preset", 500)
        code, out, _ = self._run("supply", "calc", "Ingest", "--diff", "QA")
        self.assertEqual(code, 1)
        self.assertIn("failed", out)
        self.assertIn("ColorGrade", out)

    def test_preset_grab_writes_silo_files(self) -> None:
        silo = os.path.join(self._tmp.name, "ProjectX")
        code, out, _ = self._run("preset", "grab", "ColorGrade", "-e", "DEV", "--full", "--silo", silo, "--ext", "xml")
        self.assertEqual(code, 0)
        sidecar = os.path.join(silo, "silo-metadata", "ColorGrade.json")
        self.assertIn(sidecar, out)
        self.assertIn(os.path.join(silo, "silo-presets", "ColorGrade.xml"), out)
        self.assertEqual(Preset.from_metadata(sidecar).code, "<grade/>")

        code, out, _ = self._run("supply", "make", sidecar, "--diff", "DEV")
        self.assertEqual(code, 0)
        self.assertIn("same", out)

    def test_rule_list(self) -> None:
        code, out, _ = self._run("rule", "list", "-e", "DEV")
        self.assertEqual(code, 0)
        self.assertIn("# Rules on DEV: 2", out)

    def test_status(self) -> None:
        self.api.unreachable.add("QA")
        code, out, _ = self._run()
        self.assertEqual(code, 0)
        self.assertIn("OK", out)
        self.assertIn("unreachable", out)
        self.assertIn("not configured", out)


if __name__ == "__main__":
    unittest.main()
