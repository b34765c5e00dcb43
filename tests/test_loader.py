from __future__ import annotations

import importlib.util
import json
import sys
import tempfile
import unittest
from pathlib import Path

from openpyxl import Workbook

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from data_alchemist.loader import guess_entity_type, load_file
from data_alchemist.validators import run_validations

_XLRD_AVAILABLE = importlib.util.find_spec("xlrd") is not None


class LoaderTests(unittest.TestCase):
    def test_csv_cells_stay_text_and_blanks_stay_empty(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tasks.csv"
            path.write_text(
                'TaskID,TaskName,Duration,PreferredPhases\nT1,Load,02,"[2,3]"\nT2, ,3,1 - 2\n',
                encoding="utf-8",
            )
            result = load_file(path)
        self.assertEqual(result["detected_format"], "csv")
        self.assertEqual(result["headers"], ["TaskID", "TaskName", "Duration", "PreferredPhases"])
        self.assertEqual(result["rows"][0], {"TaskID": "T1", "TaskName": "Load", "Duration": "02", "PreferredPhases": "[2,3]"})
        self.assertEqual(result["rows"][1]["TaskName"], "")

    def test_blank_csv_cells_reach_validators_as_present(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "workers.csv"
            path.write_text("WorkerID,WorkerName,WorkerGroup,QualificationLevel\nW1,Ada,,\n", encoding="utf-8")
            rows = load_file(path)["rows"]
        self.assertEqual(rows[0]["WorkerGroup"], "")
        messages = {item.column: item.message for item in run_validations("worker", rows)}
        self.assertEqual(messages["WorkerGroup"], "WorkerGroup cannot be empty")
        self.assertEqual(messages["QualificationLevel"], "QualificationLevel must be integer 1–10")

    def test_blank_workbook_cells_are_absent(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "workers.xlsx"
            workbook = Workbook()
            sheet = workbook.active
            sheet.append(["WorkerID", "WorkerName", "WorkerGroup"])
            sheet.append(["W1", "Ada", None])
            workbook.save(path)
            rows = load_file(path)["rows"]
        self.assertIsNone(rows[0]["WorkerGroup"])
        self.assertEqual(run_validations("worker", rows), [])

    def test_semicolon_delimiter_and_bom(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clients.csv"
            path.write_bytes("\ufeffClientID;ClientName\nC1;Acme\nC2;Globex\n".encode("utf-8"))
            result = load_file(path)
        self.assertEqual(result["delimiter"], ";")
        self.assertEqual(result["headers"], ["ClientID", "ClientName"])
        self.assertEqual(len(result["rows"]), 2)

    def test_json_records_and_nested_arrays(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "export.json"
            path.write_text(
                json.dumps({"workers": [{"WorkerID": "W1", "AvailableSlots": [1, 2]}]}),
                encoding="utf-8",
            )
            result = load_file(path)
        self.assertEqual(result["rows"], [{"WorkerID": "W1", "AvailableSlots": [1, 2]}])
        self.assertIn("workers", result["warnings"][0])

    def test_jsonl_skips_bad_lines_with_warning(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tasks.jsonl"
            path.write_text('{"TaskID": "T1"}\nnot json\n{"TaskID": "T2"}\n', encoding="utf-8")
            result = load_file(path)
        self.assertEqual([row["TaskID"] for row in result["rows"]], ["T1", "T2"])
        self.assertIn("1 lines could not be parsed", result["warnings"][0])

    def test_workbook_prefers_sheet_named_after_entity(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "data.xlsx"
            workbook = Workbook()
            first = workbook.active
            first.title = "Clients"
            first.append(["ClientID", "ClientName"])
            first.append(["C1", "Acme"])
            second = workbook.create_sheet("Workers")
            second.append(["WorkerID", "WorkerName", "QualificationLevel"])
            second.append(["W1", "Ada", 5])
            workbook.save(path)

            result = load_file(path, entity_type="worker")
            explicit = load_file(path, sheet_name="Clients")
            with self.assertRaisesRegex(ValueError, "not found"):
                load_file(path, sheet_name="Tasks")

        self.assertEqual(result["sheet_name"], "Workers")
        self.assertEqual(result["rows"], [{"WorkerID": "W1", "WorkerName": "Ada", "QualificationLevel": "5"}])
        self.assertIn("Multiple sheets found", result["warnings"][0])
        self.assertEqual(explicit["rows"], [{"ClientID": "C1", "ClientName": "Acme"}])

    @unittest.skipIf(_XLRD_AVAILABLE, "xlrd installed")
    def test_xls_without_xlrd_raises_importerror(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "legacy.xls"
            path.write_bytes(b"not-a-real-xls")
            with self.assertRaisesRegex(ImportError, "xlrd"):
                load_file(path)

    def test_errors(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                load_file(Path(tmpdir) / "missing.csv")

            unsupported = Path(tmpdir) / "notes.pdf"
            unsupported.write_bytes(b"%PDF")
            with self.assertRaisesRegex(ValueError, "Unsupported format"):
                load_file(unsupported)

            empty = Path(tmpdir) / "empty.csv"
            empty.write_text("   \n", encoding="utf-8")
            with self.assertRaisesRegex(ValueError, "empty"):
                load_file(empty)

            broken = Path(tmpdir) / "broken.json"
            broken.write_text("{", encoding="utf-8")
            with self.assertRaisesRegex(ValueError, "Invalid JSON"):
                load_file(broken)

    def test_guess_entity_type(self):
        self.assertEqual(guess_entity_type("uploads/Clients_v2.csv"), "client")
        self.assertEqual(guess_entity_type("export.csv", ["TaskID", "TaskName"]), "task")
        self.assertEqual(guess_entity_type("export.csv", ["worker id", "name"]), "worker")
        self.assertIsNone(guess_entity_type("export.csv", ["a", "b"]))

    def test_sample_data_loads(self):
        for name, entity in (("clients.csv", "client"), ("workers.csv", "worker"), ("tasks.csv", "task")):
            with self.subTest(name=name):
                path = ROOT / "sample-data" / name
                result = load_file(path)
                self.assertEqual(guess_entity_type(path, result["headers"]), entity)
                self.assertEqual(len(result["rows"]), 5)


if __name__ == "__main__":
    unittest.main()
