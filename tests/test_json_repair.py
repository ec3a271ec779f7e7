import json
import unittest

from vaultgraph.llm.json_repair import extract_json_text, loads_lenient, parse_json_array, repair_escapes


class TestJsonRepair(unittest.TestCase):
    def test_extract_from_code_fence(self):
        reply = 'Here you go:\n```json\n{"a": 1}\n```\nanything else?'
        self.assertEqual(extract_json_text(reply), '{"a": 1}')

    def test_extract_outermost_object(self):
        self.assertEqual(extract_json_text('Sure! {"a": {"b": 2}} Done.'), '{"a": {"b": 2}}')

    def test_extract_object_ignores_earlier_brackets(self):
        reply = 'Chunks [see below]:\n{"chunks": []} [end]'
        self.assertEqual(extract_json_text(reply), '{"chunks": []}')

    def test_extract_array_ignores_earlier_braces(self):
        reply = 'Keywords {curated}: ["a", "b"]'
        self.assertEqual(extract_json_text(reply, opener="["), '["a", "b"]')
        self.assertEqual(parse_json_array(reply), ["a", "b"])

    def test_unknown_opener(self):
        with self.assertRaises(ValueError):
            extract_json_text("{}", opener="(")

    def test_repair_invalid_escape(self):
        fixed = repair_escapes(r'{"text": "v1\.2 at 10\:30"}')
        self.assertEqual(json.loads(fixed)["text"], "v1.2 at 10:30")

    def test_repair_keeps_valid_escapes(self):
        raw = r'{"text": "say \"hi\"\n\tpath C:\\dir"}'
        self.assertEqual(repair_escapes(raw), raw)

    def test_escaped_backslash_before_dot_is_kept(self):
        raw = r'{"text": "a\\.b"}'
        self.assertEqual(json.loads(repair_escapes(raw))["text"], "a\\.b")

    def test_loads_lenient_tolerates_raw_newlines(self):
        self.assertEqual(loads_lenient('{"text": "line one\nline two"}')["text"], "line one\nline two")

    def test_loads_lenient_raises_on_garbage(self):
        with self.assertRaises(json.JSONDecodeError):
            loads_lenient("no json here")

    def test_parse_json_array_drops_non_strings(self):
        self.assertEqual(parse_json_array('["a", 1, "b", null]'), ["a", "b"])
        self.assertEqual(parse_json_array('{"a": 1}'), [])


if __name__ == "__main__":
    unittest.main()
