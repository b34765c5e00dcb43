from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from data_alchemist.priorities import (
    CRITERIA,
    PRESET_PROFILES,
    build_priority_config,
    load_priority_config,
    parse_weight_overrides,
    validate_ranking,
    validate_weights,
)


class PriorityConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = build_priority_config()
        self.assertEqual(config["weights"], {criterion: 50 for criterion in CRITERIA})
        self.assertEqual(config["ranking"], list(CRITERIA))
        self.assertEqual(config["presetProfile"], "")
        self.assertEqual(config["pairwiseMatrix"]["Fairness"]["CostEfficiency"], 1)
        self.assertEqual(sorted(config["pairwiseMatrix"]), sorted(CRITERIA))

    def test_preset_then_explicit_weights(self):
        config = build_priority_config(weights={"Fairness": 100}, preset_profile="fair_distribution")
        expected = dict(PRESET_PROFILES["fair_distribution"]["weights"], Fairness=100)
        self.assertEqual(config["weights"], expected)
        self.assertEqual(config["presetProfile"], "fair_distribution")

    def test_every_preset_covers_every_criterion(self):
        for name, preset in PRESET_PROFILES.items():
            with self.subTest(preset=name):
                self.assertEqual(set(preset["weights"]), set(CRITERIA))
                self.assertEqual(build_priority_config(preset_profile=name)["weights"], preset["weights"])

    def test_invalid_input(self):
        cases = [
            ({"weights": {"Fairness": 101}}, "between 0 and 100"),
            ({"weights": {"Fairness": -1}}, "between 0 and 100"),
            ({"weights": {"Fairness": "lots"}}, "must be a number"),
            ({"weights": {"Speed": 10}}, "Unknown priority criterion: Speed"),
            ({"preset_profile": "chaos"}, "Unknown preset profile: chaos"),
            ({"ranking": ["Fairness"]}, "each criterion once"),
            ({"ranking": "Fairness"}, "must be a list"),
            ({"pairwise_matrix": {"Fairness": {"CostEfficiency": 0}}}, "positive number"),
        ]
        for kwargs, message in cases:
            with self.subTest(kwargs=kwargs):
                with self.assertRaisesRegex(ValueError, message):
                    build_priority_config(**kwargs)

    def test_boundaries_and_ranking(self):
        self.assertEqual(validate_weights({"Fairness": 0, "CostEfficiency": "100"}), {"Fairness": 0, "CostEfficiency": 100})
        reversed_ranking = list(reversed(CRITERIA))
        self.assertEqual(validate_ranking(reversed_ranking), reversed_ranking)
        with self.assertRaises(ValueError):
            validate_ranking(list(CRITERIA) + ["Fairness"])

    def test_parse_weight_overrides(self):
        self.assertEqual(parse_weight_overrides(["Fairness=80", " CostEfficiency = 12.5 "]), {"Fairness": 80, "CostEfficiency": 12.5})
        self.assertEqual(parse_weight_overrides(None), {})
        with self.assertRaisesRegex(ValueError, "CRITERION=WEIGHT"):
            parse_weight_overrides(["Fairness"])


class LoadPriorityConfigTests(unittest.TestCase):
    def test_bare_config_and_rules_export(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            bare = Path(tmpdir) / "priorities.json"
            bare.write_text(json.dumps({"weights": {"Fairness": 90}, "presetProfile": "balanced"}), encoding="utf-8")
            config = load_priority_config(bare)
            self.assertEqual(config["weights"]["Fairness"], 90)
            self.assertEqual(config["weights"]["WorkloadBalance"], 65)
            self.assertEqual(config["presetProfile"], "balanced")

            exported = Path(tmpdir) / "rules.json"
            ranking = list(reversed(CRITERIA))
            exported.write_text(
                json.dumps({"rules": [], "priorityConfiguration": {"weights": {"Fairness": 10}, "ranking": ranking}}),
                encoding="utf-8",
            )
            config = load_priority_config(exported)
            self.assertEqual(config["ranking"], ranking)
            self.assertEqual(config["weights"]["Fairness"], 10)
            self.assertEqual(config["presetProfile"], "")

    def test_errors(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                load_priority_config(Path(tmpdir) / "missing.json")
            broken = Path(tmpdir) / "broken.json"
            broken.write_text("{", encoding="utf-8")
            with self.assertRaisesRegex(ValueError, "Invalid priorities JSON"):
                load_priority_config(broken)
            listed = Path(tmpdir) / "listed.json"
            listed.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaisesRegex(ValueError, "JSON object"):
                load_priority_config(listed)


if __name__ == "__main__":
    unittest.main()
