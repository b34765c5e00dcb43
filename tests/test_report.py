from __future__ import annotations

import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from data_alchemist.contracts import CONTRACT_VERSIONS, build_contract, build_run_summary
from data_alchemist.report import MAX_TEXT_DIAGNOSTICS, build_validation_report, column_overview, score_label
from data_alchemist.validators import ValidationDiagnostic


class ContractTests(unittest.TestCase):
    def test_every_contract_is_versioned(self):
        for name in CONTRACT_VERSIONS:
            with self.subTest(name=name):
                self.assertEqual(build_contract(name), {"name": name, "version": "1.0.0"})

    def test_run_summary_shape(self):
        summary = build_run_summary(
            tool="data-alchemist",
            command="validate",
            input_path=Path("clients.csv"),
            warnings=["Decoded as latin-1"],
            metrics={"rows": 2},
        )
        self.assertEqual(summary["status"], "ok")
        self.assertEqual(summary["input_file"], "clients.csv")
        self.assertIsNone(summary["output_file"])
        self.assertEqual(summary["warnings_count"], 1)
        self.assertTrue(summary["generated_at"].endswith("Z"))


class ValidationReportTests(unittest.TestCase):
    def test_report_for_dirty_clients(self):
        rows = [
            {"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "7", "Budget": "10"},
            {"ClientID": "C1", "ClientName": "Globex", "PriorityLevel": "2", "Budget": "20"},
            {"ClientID": "C3", "ClientName": "Initech", "PriorityLevel": "1", "Budget": "30"},
        ]
        report = build_validation_report("client", rows, input_path=Path("clients.csv"))

        self.assertEqual(report["contract"]["name"], "data_alchemist.validation_report")
        self.assertFalse(report["valid"])
        self.assertEqual(report["error_count"], 2)
        self.assertEqual(report["rows_with_errors"], 2)
        self.assertEqual(report["clean_score"]["score"], 33)
        self.assertEqual(report["errors_by_column"], {"ClientID": 1, "PriorityLevel": 1})
        self.assertEqual(report["rows"], {"0": {"PriorityLevel": "PriorityLevel must be integer 1–5"}, "1": {"ClientID": "Duplicate ClientID"}})
        self.assertEqual(report["columns"]["unknown"], ["Budget"])
        self.assertIn("RequestedTaskIDs", report["columns"]["missing_optional"])
        self.assertEqual(report["run_summary"]["status"], "invalid")
        self.assertTrue(report["text_report"].startswith("data-alchemist validate\n"))
        self.assertIn("- row 1 | PriorityLevel | PriorityLevel must be integer 1–5", report["text_report"])

    def test_clean_report_and_extra_diagnostics(self):
        rows = [{"TaskID": "T1", "TaskName": "Load", "Category": "ETL"}]
        clean = build_validation_report("task", rows)
        self.assertTrue(clean["valid"])
        self.assertEqual(clean["clean_score"], {"score": 100, "label": score_label(100)})
        self.assertEqual(clean["run_summary"]["status"], "ok")

        extra = [ValidationDiagnostic(0, "RequiredSkills", "RequiredSkills not covered by any worker: x")]
        flagged = build_validation_report("task", rows, extra_diagnostics=extra)
        self.assertFalse(flagged["valid"])
        self.assertEqual(flagged["diagnostics"][0]["column"], "RequiredSkills")

    def test_text_report_is_capped(self):
        rows = [{"ClientID": f"C{i}", "ClientName": "x", "PriorityLevel": "9"} for i in range(MAX_TEXT_DIAGNOSTICS + 5)]
        report = build_validation_report("client", rows)
        self.assertIn("... 5 more in the JSON report", report["text_report"])

    def test_empty_dataset_scores_clean(self):
        report = build_validation_report("worker", [])
        self.assertTrue(report["valid"])
        self.assertEqual(report["clean_score"]["score"], 100)
        self.assertEqual(report["columns"]["missing_required"], ["WorkerID", "WorkerName"])

    def test_column_overview(self):
        overview = column_overview("task", ["TaskID", "Category", "Owner"])
        self.assertEqual(overview["missing_required"], ["TaskName"])
        self.assertEqual(overview["unknown"], ["Owner"])


if __name__ == "__main__":
    unittest.main()
