"""
Script: tests/test_identifiers.py
What: Tests for reference resolution (composite keys, silo paths, bare names).
Doing: Resolves references against FakeRallyAPI and a temp silo tree.
Why: Bad references must become notifications, never exceptions, during batch resolution.
"""

from __future__ import annotations

import os
import tempfile
import unittest

from fake_rally import FakeRallyAPI
from rally_tools.helpers.errors import TransportError
from rally_tools.helpers.identifiers import Missing, Resolved, categorize, clean_reference, resolve_references
from rally_tools.helpers.rally_entities import Preset, Rule


class CleanReferenceTests(unittest.TestCase):
    def test_strips_whitespace_and_one_level_of_quotes(self) -> None:
        self.assertEqual(clean_reference('  "R-DEV-55: Ingest"  '), "R-DEV-55: Ingest")
        self.assertEqual(clean_reference("Ingest"), "Ingest")
        self.assertEqual(clean_reference(None), "")

    def test_strips_local_label(self) -> None:
        self.assertEqual(clean_reference("        R-LOCAL: ProjectX/silo-rules/Ingest.json"),
                         "ProjectX/silo-rules/Ingest.json")
        self.assertEqual(clean_reference("P-LOCAL: ColorGrade"), "ColorGrade")


class CompositeKeyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.api = FakeRallyAPI()
        self.api.add_env("DEV", first_id=55)
        self.api.add_rule("DEV", "Ingest", description="first step")
        self.preset_id = self.api.add_preset("DEV", "ColorGrade")

    def test_rule_key_fetches_by_id_without_name_lookup(self) -> None:
        entities, notes = resolve_references(["R-DEV-55: Ingest"], self.api, "DEV")
        self.assertEqual(notes, [])
        self.assertEqual(len(entities), 1)
        rule = entities[0]
        self.assertIsInstance(rule, Rule)
        self.assertEqual((rule.name, rule.id, rule.environment), ("Ingest", "55", "DEV"))
        self.assertEqual([c[2] for c in self.api.calls], ["/workflowRules/55"])
        self.assertFalse(any(c[3] and "filter" in c[3] for c in self.api.calls))

    def test_preset_key(self) -> None:
        result = categorize(f"P-DEV-{self.preset_id}:", self.api)
        self.assertIsInstance(result, Resolved)
        self.assertIsInstance(result.entity, Preset)
        self.assertEqual(result.entity.name, "ColorGrade")

    def test_unknown_kind_is_missing(self) -> None:
        self.assertIsInstance(categorize("X-DEV-55: Ingest", self.api), Missing)

    def test_unknown_id_is_missing(self) -> None:
        entities, notes = resolve_references(["R-DEV-999: Gone"], self.api, "DEV")
        self.assertEqual(entities, [])
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].kind, "missing")

    def test_unconfigured_env_is_missing(self) -> None:
        entities, notes = resolve_references(["R-QA-1: Ingest"], self.api, "DEV")
        self.assertEqual(entities, [])
        self.assertEqual(notes[0].kind, "missing")

    def test_unreachable_api_propagates(self) -> None:
        self.api.unreachable.add("DEV")
        with self.assertRaises(TransportError):
            resolve_references(["R-DEV-55: Ingest"], self.api, "DEV")


class SiloPathTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.project = os.path.join(self._tmp.name, "ProjectX")
        os.makedirs(os.path.join(self.project, "silo-presets"))
        os.makedirs(os.path.join(self.project, "silo-rules"))
        self.preset_path = os.path.join(self.project, "silo-presets", "colorgrade.xml")
        with open(self.preset_path, "w", encoding="utf-8") as f:
            f.write("<!-- RALLY HEADER BEGIN -->\n"
                    "<!-- [RALLY:] name=colorgrade -->\n"
                    "<!-- RALLY HEADER END -->\n"
                    "<grade/>\n")
        self.api = FakeRallyAPI()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_local_preset_with_subproject(self) -> None:
        entities, notes = resolve_references([self.preset_path], self.api)
        self.assertEqual(notes, [])
        preset = entities[0]
        self.assertIsInstance(preset, Preset)
        self.assertEqual(preset.name, "colorgrade")
        self.assertEqual(preset.sub_project, "ProjectX")
        self.assertTrue(preset.identity.is_local)
        self.assertEqual(preset.code, "<grade/>\n")
        self.assertEqual(self.api.calls, [])

    def test_unreadable_file_is_missing(self) -> None:
        path = os.path.join(self.project, "silo-rules", "Nope.json")
        entities, notes = resolve_references([path], self.api)
        self.assertEqual(entities, [])
        self.assertEqual(notes[0].kind, "missing")

    def test_non_utf8_files_do_not_stop_the_batch(self) -> None:
        self.api.add_env("DEV")
        self.api.add_rule("DEV", "Ingest")
        bad_preset = os.path.join(self.project, "silo-presets", "grade.xml")
        with open(bad_preset, "wb") as f:
            f.write(b"caf\xe9\n")
        os.makedirs(os.path.join(self.project, "silo-metadata"))
        bad_sidecar = os.path.join(self.project, "silo-metadata", "grade.json")
        with open(bad_sidecar, "wb") as f:
            f.write('{"name": "caf\u00e9"}'.encode("latin-1"))

        entities, notes = resolve_references([bad_preset, bad_sidecar, "Ingest"], self.api, "DEV")

        self.assertEqual([e.name for e in entities], ["Ingest"])
        self.assertEqual([n.kind for n in notes], ["missing", "missing"])

    def test_unknown_category_is_missing(self) -> None:
        result = categorize(os.path.join(self.project, "silo-widgets", "thing.txt"), self.api)
        self.assertIsInstance(result, Missing)


class BareNameTests(unittest.TestCase):
    def setUp(self) -> None:
        self.api = FakeRallyAPI()
        self.api.add_env("DEV")
        self.api.add_rule("DEV", "Ingest")
        self.api.add_preset("DEV", "ColorGrade")

    def test_rule_then_preset_lookup(self) -> None:
        entities, notes = resolve_references(["Ingest", "ColorGrade"], self.api, "DEV")
        self.assertEqual(notes, [])
        self.assertEqual([type(e).__name__ for e in entities], ["Rule", "Preset"])

    def test_unknown_name_becomes_notification(self) -> None:
        entities, notes = resolve_references(["Ingest", "Archive"], self.api, "DEV")
        self.assertEqual([e.name for e in entities], ["Ingest"])
        self.assertEqual(len(notes), 1)
        self.assertIn("Archive", notes[0].message)

    def test_blank_comment_and_duplicate_lines_are_skipped(self) -> None:
        refs = ["", "# Required rules: 1", '"Ingest"', "Ingest", "   "]
        entities, notes = resolve_references(refs, self.api, "DEV")
        self.assertEqual([e.name for e in entities], ["Ingest"])
        self.assertEqual(notes, [])

    def test_no_env_means_missing(self) -> None:
        entities, notes = resolve_references(["Ingest"], self.api, None)
        self.assertEqual(entities, [])
        self.assertEqual(notes[0].kind, "missing")


if __name__ == "__main__":
    unittest.main()
