from __future__ import annotations

import json
import os
import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from data_alchemist.config import AlchemistConfig
from data_alchemist.llm import (
    LLMError,
    apply_header_mapping,
    clean_expression,
    complete,
    generate_expression,
    map_headers,
    parse_rule,
    suggest_header_mapping,
)

CONFIG = AlchemistConfig(api_key="test-key", api_url="https://llm.example/v1/chat", model="test-model", timeout=5.0)


def fake_session(content=None, *, status=200, body=None, error=None):
    response = mock.Mock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.text = "upstream said no"
    if body is not None:
        response.json.return_value = body
    else:
        response.json.return_value = {"choices": [{"message": {"content": content}}]}
    session = mock.Mock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    return session


class CompleteTests(unittest.TestCase):
    def test_posts_chat_completion_request(self):
        session = fake_session("hello")
        self.assertEqual(complete("Say hi", config=CONFIG, session=session), "hello")
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://llm.example/v1/chat")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer test-key")
        self.assertEqual(kwargs["json"]["model"], "test-model")
        self.assertEqual(kwargs["json"]["messages"], [{"role": "user", "content": "Say hi"}])
        self.assertEqual(kwargs["timeout"], 5.0)

    def test_missing_key_fails_before_any_request(self):
        session = fake_session("unused")
        with self.assertRaisesRegex(LLMError, "no API key"):
            complete("x", config=AlchemistConfig(), session=session)
        session.post.assert_not_called()

    def test_error_status_and_empty_content(self):
        with self.assertRaisesRegex(LLMError, "API request failed: 503"):
            complete("x", config=CONFIG, session=fake_session(status=503))
        with self.assertRaisesRegex(LLMError, "No response from AI"):
            complete("x", config=CONFIG, session=fake_session("   "))
        with self.assertRaisesRegex(LLMError, "No response from AI"):
            complete("x", config=CONFIG, session=fake_session(body={"choices": []}))


class HeaderMappingTests(unittest.TestCase):
    def test_offline_suggestions(self):
        mapping = suggest_header_mapping(["client_id", "Client Name", "priority", "Notes"], "client")
        self.assertEqual(
            mapping,
            {"client_id": "ClientID", "Client Name": "ClientName", "priority": "PriorityLevel", "Notes": "Notes"},
        )

    def test_llm_mapping_keeps_only_canonical_targets(self):
        reply = json.dumps({"mapped": {"wid": "WorkerID", "full name": "WorkerName", "notes": "Bogus"}})
        mapping = map_headers(["wid", "full name", "notes"], "worker", config=CONFIG, session=fake_session(reply))
        self.assertEqual(mapping, {"wid": "WorkerID", "full name": "WorkerName", "notes": "notes"})

    def test_llm_mapping_falls_back_to_identity(self):
        headers = ["a", "b"]
        identity = {"a": "a", "b": "b"}
        self.assertEqual(map_headers(headers, "task", config=CONFIG, session=fake_session("not json")), identity)
        self.assertEqual(
            map_headers(headers, "task", config=CONFIG, session=fake_session(error=requests.ConnectionError("down"))),
            identity,
        )
        self.assertEqual(map_headers(headers, "task", config=AlchemistConfig()), identity)
        self.assertEqual(map_headers(headers, "invoice", config=CONFIG, session=fake_session("{}")), identity)

    def test_apply_mapping_keeps_first_non_empty_value(self):
        rows = [{"id": "", "client_id": "C1", "name": "Acme"}]
        renamed = apply_header_mapping(rows, {"id": "ClientID", "client_id": "ClientID", "name": "ClientName"})
        self.assertEqual(renamed, [{"ClientID": "C1", "ClientName": "Acme"}])


class ExpressionGenerationTests(unittest.TestCase):
    def test_clean_expression(self):
        self.assertEqual(clean_expression("```javascript\nreturn row.Duration > 3;\n```"), "row.Duration > 3")
        self.assertEqual(clean_expression("Expression: row.Category === 'ML'"), "row.Category === 'ML'")

    def test_generates_safe_expression(self):
        session = fake_session("```js\nrow.Skills.includes('coding')\n```")
        result = generate_expression("skills include coding", "worker", [{"Skills": "coding"}], config=CONFIG, session=session)
        self.assertEqual(result, {"expression": "row.Skills.includes('coding')"})
        prompt = session.post.call_args.kwargs["json"]["messages"][0]["content"]
        self.assertIn("skills include coding", prompt)
        self.assertIn("Skills", prompt)

    def test_request_errors(self):
        self.assertEqual(generate_expression("", "task", config=CONFIG)["error"], "Missing required parameters")
        self.assertEqual(generate_expression("   ", "task", config=CONFIG)["error"], "Empty query")
        self.assertEqual(generate_expression("x", "invoice", config=CONFIG)["error"], "Invalid entity type")

    def test_reply_errors(self):
        cases = [
            (fake_session(error=requests.ConnectionError("down")), "AI service unavailable"),
            (fake_session(status=500), "Filter processing failed"),
            (fake_session("true"), "Invalid filter expression generated"),
            (fake_session("row.Duration >"), "Invalid filter expression generated"),
            (fake_session("eval('row.Duration > 3')"), "Unsafe filter expression detected"),
            (fake_session("row.Duration > 3; alert(1)"), "Unsafe filter expression detected"),
        ]
        for session, error in cases:
            with self.subTest(error=error):
                result = generate_expression("duration over 3", "task", config=CONFIG, session=session)
                self.assertEqual(result["error"], error)
                self.assertTrue(result["details"])

    def test_bad_environment_settings_are_reported_not_raised(self):
        with mock.patch.dict(os.environ, {"DATA_ALCHEMIST_TIMEOUT": "soon", "OPENROUTER_API_KEY": "k"}):
            result = generate_expression("duration over 3", "task", session=fake_session("row.Duration > 3"))
            rule = parse_rule("T1 and T2 run together", session=fake_session("{}"))
        self.assertEqual(result["error"], "Filter processing failed")
        self.assertIn("timeout must be a number", result["details"])
        self.assertEqual(rule["error"], "Rule parsing failed")


class RuleParsingTests(unittest.TestCase):
    def test_parses_json_object_from_reply(self):
        reply = 'Here you go: {"type": "coRun", "tasks": ["T1", "T2"]}'
        self.assertEqual(
            parse_rule("T1 and T2 run together", config=CONFIG, session=fake_session(reply)),
            {"type": "coRun", "tasks": ["T1", "T2"]},
        )

    def test_rule_errors(self):
        self.assertEqual(parse_rule("  ", config=CONFIG), {"error": "Rule text is required"})
        failed = parse_rule("x", config=CONFIG, session=fake_session(status=401))
        self.assertEqual(failed["error"], "Rule parsing failed")
        invalid = parse_rule("x", config=CONFIG, session=fake_session("no json here"))
        self.assertEqual(invalid["error"], "AI did not return valid JSON")
        self.assertEqual(invalid["raw"], "no json here")
        listed = parse_rule("x", config=CONFIG, session=fake_session("[1, 2]"))
        self.assertEqual(listed["error"], "AI did not return a JSON object")


if __name__ == "__main__":
    unittest.main()
