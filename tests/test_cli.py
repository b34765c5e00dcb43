from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
import zipfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
CLI = [sys.executable, "-m", "data_alchemist.cli"]
FIXED_STAMP = "20260301T010203Z"


def run_cli(*args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    merged_env = dict(os.environ)
    merged_env["DATA_ALCHEMIST_OUTPUT_STAMP"] = FIXED_STAMP
    merged_env["OPENROUTER_API_KEY"] = ""
    if env:
        merged_env.update(env)
    return subprocess.run(
        [*CLI, *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
        env=merged_env,
    )


class ValidateCommandTests(unittest.TestCase):
    def test_dirty_sample_returns_exit_5(self):
        proc = run_cli("validate", "sample-data/clients.csv", "--json")
        self.assertEqual(proc.returncode, 5, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertFalse(payload["valid"])
        report = payload["reports"][0]
        self.assertEqual(report["entity_type"], "client")
        self.assertEqual(report["run_summary"]["generated_at"], "1970-01-01T00:00:00Z")
        columns = {item["column"] for item in report["diagnostics"]}
        self.assertTrue({"PriorityLevel", "ClientID", "GroupTag", "RequestedTaskIDs"} <= columns)
        self.assertNotIn("AttributesJSON", columns)
        self.assertEqual(proc.stderr.strip(), "")

    def test_clean_file_with_loose_headers_returns_exit_0(self):
        proc = run_cli("validate", "sample-data/clients_clean.csv")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertIn("Valid: True", proc.stderr)

        proc = run_cli("validate", "sample-data/clients_clean.csv", "--json")
        mapping = json.loads(proc.stdout)["reports"][0]["header_mapping"]
        self.assertEqual(mapping["client_id"], "ClientID")
        self.assertEqual(mapping["Requested Tasks"], "RequestedTaskIDs")

    def test_headers_as_is_reports_missing_columns(self):
        proc = run_cli("validate", "sample-data/clients_clean.csv", "--headers", "as-is", "--json")
        self.assertEqual(proc.returncode, 5, proc.stderr)
        report = json.loads(proc.stdout)["reports"][0]
        self.assertEqual(report["columns"]["missing_required"], ["ClientID", "ClientName"])

    def test_multiple_inputs_check_references_and_write_reports(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            proc = run_cli(
                "validate",
                "sample-data/clients.csv",
                "sample-data/workers.csv",
                "sample-data/tasks.csv",
                "--out",
                tmpdir,
            )
            self.assertEqual(proc.returncode, 5, proc.stderr)
            self.assertIn("Validation report:", proc.stderr)
            report = json.loads((Path(tmpdir) / "clients-validation.json").read_text())
            messages = [item["message"] for item in report["diagnostics"]]
            self.assertIn("RequestedTaskIDs references unknown tasks: T9", messages)
            self.assertTrue((Path(tmpdir) / "tasks-validation.json").exists())

    def test_output_path_requires_single_input(self):
        proc = run_cli("validate", "sample-data/clients.csv", "sample-data/tasks.csv", "--output", "x.json")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("single input", proc.stderr)

    def test_unreadable_workbook_returns_exit_2(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clients.xlsx"
            path.write_bytes(b"definitely not a workbook")
            proc = run_cli("validate", str(path))
        self.assertEqual(proc.returncode, 2)
        self.assertIn("Could not open workbook", proc.stderr)

    def test_missing_file_and_unknown_entity_return_exit_1(self):
        proc = run_cli("validate", "sample-data/nope.csv")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("File not found", proc.stderr)

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "export.csv"
            path.write_text("a,b\n1,2\n", encoding="utf-8")
            proc = run_cli("validate", str(path))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("--entity", proc.stderr)

            proc = run_cli("validate", str(path), "--entity", "invoice")
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Unknown entity type", proc.stderr)


class FilterCommandTests(unittest.TestCase):
    def test_text_query_json(self):
        proc = run_cli("filter", "sample-data/tasks.csv", "duration greater than 3", "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual([row["TaskID"] for row in payload["rows"]], ["T2", "T3"])
        self.assertEqual(payload["filters"][0]["type"], "manual")
        self.assertEqual(payload["total_rows"], 5)
        self.assertIsNone(payload["error"])

    def test_presets_and_queries_stack(self):
        proc = run_cli(
            "filter",
            "sample-data/workers.csv",
            "group is GroupA",
            "--preset",
            "Has Coding Skills",
            "--json",
        )
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual([row["WorkerID"] for row in payload["rows"]], ["W1", "W3"])
        self.assertEqual([chip["label"] for chip in payload["filters"]], ["Has Coding Skills", "group is GroupA"])

    def test_csv_output(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "ml.csv"
            proc = run_cli("filter", "sample-data/tasks.csv", "category equals ML", "--output", str(output))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            lines = output.read_text().splitlines()
        self.assertEqual(lines[0].split(",")[0], "TaskID")
        self.assertEqual(len(lines), 2)
        self.assertIn("Showing 1 of 5 records.", proc.stderr)

    def test_ai_filter_without_key_fails_cleanly(self):
        proc = run_cli("filter", "sample-data/tasks.csv", "long tasks", "--ai", "--json")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Filter processing failed", proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["error"]["type"], "api")
        self.assertEqual(payload["matched_rows"], 5)

    def test_missing_query_and_unknown_preset(self):
        proc = run_cli("filter", "sample-data/tasks.csv")
        self.assertEqual(proc.returncode, 1)
        proc = run_cli("filter", "sample-data/tasks.csv", "--preset", "Nope")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Unknown quick filter", proc.stderr)


class OtherCommandTests(unittest.TestCase):
    def test_presets(self):
        proc = run_cli("presets", "--entity", "worker", "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(list(payload), ["worker"])
        self.assertIn("Has Coding Skills", [preset["label"] for preset in payload["worker"]])

        proc = run_cli("presets")
        self.assertIn("task:", proc.stdout)

    def test_map_headers(self):
        proc = run_cli("map-headers", "sample-data/clients_clean.csv", "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["entity_type"], "client")
        self.assertEqual(payload["mapping"]["Client Name"], "ClientName")
        self.assertEqual(payload["unmapped"], [])

    def test_export_bundle(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            rules_path = Path(tmpdir) / "rules.json"
            output = Path(tmpdir) / "bundle.zip"
            proc = run_cli(
                "rule",
                "--type",
                "coRun",
                "--data",
                '{"tasks": ["T1", "T2"]}',
                "--append",
                str(rules_path),
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)

            proc = run_cli(
                "export",
                str(output),
                "--clients",
                "sample-data/clients.csv",
                "--tasks",
                "sample-data/tasks.csv",
                "--rules",
                str(rules_path),
                "--json",
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            manifest = json.loads(proc.stdout)
            self.assertEqual(manifest["members"], ["clients.csv", "tasks.csv", "rules.json", "data-export.xlsx"])
            with zipfile.ZipFile(output) as archive:
                rules = json.loads(archive.read("rules.json"))
            self.assertEqual(rules["metadata"]["clientsCount"], 5)
            self.assertEqual(rules["rules"][0]["data"], {"tasks": ["T1", "T2"]})

            proc = run_cli("export", str(output), "--tasks", "sample-data/tasks.csv")
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Refusing to overwrite", proc.stderr)

    def test_export_priority_options(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "bundle.zip"
            proc = run_cli(
                "export",
                str(output),
                "--tasks",
                "sample-data/tasks.csv",
                "--preset-profile",
                "fair_distribution",
                "--weight",
                "Fairness=70",
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Priority profile: Fair Distribution", proc.stderr)
            with zipfile.ZipFile(output) as archive:
                priorities = json.loads(archive.read("rules.json"))["priorityConfiguration"]
            self.assertEqual(priorities["presetProfile"], "fair_distribution")
            self.assertEqual(priorities["weights"]["Fairness"], 70)
            self.assertEqual(priorities["weights"]["WorkloadBalance"], 90)

            reused = Path(tmpdir) / "again.zip"
            proc = run_cli("export", str(reused), "--tasks", "sample-data/tasks.csv", "--priorities", str(output.with_suffix(".json")))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Priorities file not found", proc.stderr)

            proc = run_cli("export", str(reused), "--tasks", "sample-data/tasks.csv", "--weight", "Fairness=150")
            self.assertEqual(proc.returncode, 1)
            self.assertIn("between 0 and 100", proc.stderr)
            self.assertFalse(reused.exists())

    def test_rule_append_and_validation(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            rules_path = Path(tmpdir) / "rules.json"
            for data in ('{"tasks": ["T1"]}', '{"tasks": ["T2", "T3"]}'):
                proc = run_cli("rule", "--type", "exclusion", "--data", data, "--append", str(rules_path), "--json")
                self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(rules_path.read_text())
            self.assertEqual(payload["metadata"]["totalRules"], 2)
            self.assertEqual(payload["metadata"]["ruleTypes"], ["exclusion"])

        proc = run_cli("rule", "--type", "loadLimit", "--data", "{}")
        self.assertEqual(proc.returncode, 5)
        self.assertIn("Load limit rules must specify a group", proc.stderr)

        proc = run_cli("rule", "--type", "coRun", "--data", "[1]")
        self.assertEqual(proc.returncode, 1)

    def test_rule_text_without_key_fails(self):
        proc = run_cli("rule", "T1", "and", "T2", "run", "together")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Rule parsing failed", proc.stderr)

    def test_config_init_refuses_overwrite(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "data-alchemist.json"
            proc = run_cli("config", "init", "--path", str(path))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("model", json.loads(path.read_text()))
            proc = run_cli("config", "init", "--path", str(path))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Refusing to overwrite", proc.stderr)

    def test_version_and_bad_arguments(self):
        proc = run_cli("version")
        self.assertEqual(proc.returncode, 0)
        self.assertRegex(proc.stdout.strip(), r"^\d+\.\d+\.\d+$")

        proc = run_cli("validate")
        self.assertEqual(proc.returncode, 1)
        proc = run_cli("frobnicate")
        self.assertEqual(proc.returncode, 1)


if __name__ == "__main__":
    unittest.main()
