import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryInstanceStore, MemorySchemaCatalog, SchemaCatalogError
from metaschema.errors import ValidationFailedError
from metaschema.table_generator import TableGenerator


def _widget(searchable=None, mandatory=False):
    return {
        "short_name": "widget",
        "fields": [{"field_short_name": "name", "mandatory": mandatory, "order": 0}],
        "display_properties": {"searchable_fields": list(searchable or [])},
    }


FIELDS = [
    {"short_name": "name", "datatype": "text"},
    {"short_name": "size", "datatype": "number"},
]


class TestMemorySchemaCatalog(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = MemorySchemaCatalog()
        self.gen = TableGenerator()
        self.catalog.apply_all(self.gen.full_create(_widget(searchable=["name"]), FIELDS))

    def test_describe(self):
        described = self.catalog.describe("instances_widget")
        self.assertEqual(described["columns"][1], {"name": "name", "type": "VARCHAR(255)", "not_null": False})
        self.assertEqual(described["indexes"], ["idx_instances_widget_name"])
        self.assertIsNone(self.catalog.describe("instances_other"))

    def test_create_existing_table_fails(self):
        with self.assertRaises(SchemaCatalogError) as ctx:
            self.catalog.apply_all(self.gen.full_create(_widget(), FIELDS))
        self.assertEqual(str(ctx.exception), 'relation "instances_widget" already exists')

    def test_dropping_column_drops_its_index(self):
        self.catalog.apply(
            {"op": "drop_column", "table": "instances_widget", "column": "name", "sql": ""}
        )
        self.assertEqual(self.catalog.describe("instances_widget")["indexes"], [])
        self.assertNotIn("name", [c["name"] for c in self.catalog.columns("instances_widget")])

    def test_transaction_restores_on_error(self):
        store = MemoryInstanceStore(self.catalog)
        store.insert("instances_widget", {"name": "a"})
        before = self.catalog.describe("instances_widget")
        statements = self.gen.migration(
            _widget(searchable=["name"]),
            FIELDS[:1],
            {
                "short_name": "widget",
                "fields": [{"field_short_name": "size", "mandatory": True, "order": 0}],
                "display_properties": {"searchable_fields": []},
            },
            FIELDS[1:],
        )
        with self.assertRaises(SchemaCatalogError) as ctx:
            with self.catalog.transaction():
                self.catalog.apply_all(statements)
        self.assertIn("contains null values", str(ctx.exception))
        self.assertEqual(ctx.exception.code, "CONSTRAINT_VIOLATION")
        self.assertEqual(self.catalog.describe("instances_widget"), before)
        self.assertEqual([r["name"] for r in self.catalog.rows("instances_widget").values()], ["a"])

    def test_unsupported_op(self):
        with self.assertRaises(SchemaCatalogError) as ctx:
            self.catalog.apply({"op": "truncate", "table": "instances_widget"})
        self.assertEqual(ctx.exception.code, "DDL_FAILED")

    def test_not_null_toggles(self):
        toggle = {"table": "instances_widget", "column": "name"}
        self.catalog.apply({"op": "set_not_null", **toggle})
        self.assertTrue(self.catalog.describe("instances_widget")["columns"][1]["not_null"])
        self.catalog.apply({"op": "drop_not_null", **toggle})
        self.assertFalse(self.catalog.describe("instances_widget")["columns"][1]["not_null"])
        with self.assertRaises(SchemaCatalogError):
            self.catalog.apply({"op": "set_not_null", "table": "instances_widget", "column": "colour"})

    def test_set_not_null_refuses_existing_nulls(self):
        store = MemoryInstanceStore(self.catalog)
        store.insert("instances_widget", {"name": "a"})
        store.insert("instances_widget", {})
        with self.assertRaises(SchemaCatalogError) as ctx:
            self.catalog.apply({"op": "set_not_null", "table": "instances_widget", "column": "name"})
        self.assertEqual(str(ctx.exception), 'column "name" of relation "instances_widget" contains null values')
        self.assertEqual(ctx.exception.code, "CONSTRAINT_VIOLATION")
        self.assertFalse(self.catalog.describe("instances_widget")["columns"][1]["not_null"])


class TestMemoryInstanceStore(unittest.TestCase):
    def setUp(self) -> None:
        catalog = MemorySchemaCatalog()
        catalog.apply_all(TableGenerator().full_create(_widget(mandatory=True), FIELDS))
        self.store = MemoryInstanceStore(catalog)

    def test_not_null_violation(self):
        with self.assertRaises(ValidationFailedError) as ctx:
            self.store.insert("instances_widget", {})
        self.assertEqual(ctx.exception.errors[0]["code"], "CONSTRAINT_VIOLATION")

    def test_unknown_column(self):
        with self.assertRaises(SchemaCatalogError):
            self.store.insert("instances_widget", {"name": "a", "colour": "red"})

    def test_null_ordering(self):
        self.store.insert("instances_widget", {"name": "b"})
        self.store.insert("instances_widget", {"name": "a", "created_by": "6f1c7f63-8cbb-4d53-9a0e-4a4b2cc1a1b0"})
        plan = {"table": "instances_widget", "order_by": {"column": "created_by", "direction": "asc"}, "limit": 10, "offset": 0}
        rows, total = self.store.list_page(plan)
        self.assertEqual(total, 2)
        self.assertEqual([r["name"] for r in rows], ["a", "b"])
        plan["order_by"]["direction"] = "desc"
        rows, _ = self.store.list_page(plan)
        self.assertEqual([r["name"] for r in rows], ["b", "a"])

    def test_update_sets_updated_at(self):
        row = self.store.insert("instances_widget", {"name": "a"})
        updated = self.store.update("instances_widget", row["id"], {"name": "b"})
        self.assertEqual(updated["name"], "b")
        self.assertGreaterEqual(updated["updated_at"], row["updated_at"])
        self.assertIsNone(self.store.update("instances_widget", "missing", {"name": "c"}))


if __name__ == "__main__":
    unittest.main()
