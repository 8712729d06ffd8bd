import json
import unittest

from app import normalize_row, normalize_rows, serialize_json_fields, to_json_text


class SerializeJsonFieldsTests(unittest.TestCase):
	def test_structured_values_become_text(self):
		body = {"dni": "1", "datos": {"a": [1, 2]}, "productos": [{"sku": "x"}]}
		out = serialize_json_fields(body)
		self.assertIs(out, body)
		self.assertEqual(json.loads(body["datos"]), {"a": [1, 2]})
		self.assertEqual(json.loads(body["productos"]), [{"sku": "x"}])
		self.assertEqual(body["dni"], "1")

	def test_text_and_scalars_pass_through(self):
		body = {"datos": '{"a": 1}', "productos": None, "otros": {"b": 2}}
		serialize_json_fields(body)
		self.assertEqual(body, {"datos": '{"a": 1}', "productos": None, "otros": {"b": 2}})

	def test_non_object_bodies(self):
		self.assertIsNone(serialize_json_fields(None))
		self.assertEqual(serialize_json_fields([{"datos": {}}]), [{"datos": {}}])

	def test_to_json_text(self):
		self.assertEqual(to_json_text({}), "{}")
		self.assertEqual(to_json_text([]), "[]")
		self.assertEqual(to_json_text(3), 3)


class NormalizeRowTests(unittest.TestCase):
	def test_parses_text_columns(self):
		row = {"dni": "1", "datos": '{"tier": "gold"}'}
		self.assertEqual(normalize_row(row), {"dni": "1", "datos": {"tier": "gold"}})
		row = {"id": "v1", "productos": '[{"sku": "A"}]', "total": 3.0}
		self.assertEqual(normalize_row(row)["productos"], [{"sku": "A"}])

	def test_malformed_defaults(self):
		with self.assertLogs("app", level="ERROR") as logs:
			row = normalize_row({"datos": "nope", "productos": "[oops"})
		self.assertEqual(row, {"datos": {}, "productos": []})
		self.assertEqual(len(logs.records), 2)

	def test_non_finite_constants_are_malformed(self):
		with self.assertLogs("app", level="ERROR"):
			row = normalize_row({"datos": "NaN", "productos": "[1, -Infinity]"})
		self.assertEqual(row, {"datos": {}, "productos": []})

	def test_null_and_empty_left_alone(self):
		self.assertEqual(normalize_row({"datos": None}), {"datos": None})
		self.assertEqual(normalize_row({"productos": ""}), {"productos": ""})

	def test_rows_without_json_columns(self):
		rows = [{"name": "clientes"}, {"name": "ventas"}]
		self.assertEqual(normalize_rows(rows), rows)


if __name__ == "__main__":
	unittest.main()
