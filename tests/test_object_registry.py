import itertools
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryInstanceStore, MemorySchemaCatalog
from field_registry import FieldRegistry
from metaschema.errors import DuplicateKeyError, MalformedFieldGroupError, NotFoundError, ValidationFailedError
from metaschema.table_generator import TableGenerator
from object_registry import ObjectRegistry


SYSTEM = ["id", "created_at", "updated_at", "created_by", "updated_by"]


class RegistryCase(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = MemorySchemaCatalog()
        self.fields = FieldRegistry()
        self.objects = ObjectRegistry(self.fields, TableGenerator(), self.catalog)
        self.store = MemoryInstanceStore(self.catalog)
        for name, datatype in [("f1", "text"), ("f2", "number"), ("f3", "boolean"), ("f4", "date")]:
            self.fields.register_field({"short_name": name, "display_name": name.upper(), "datatype": datatype})

    def _columns(self, short_name):
        return [c["name"] for c in self.objects.describe_storage(short_name)["columns"]]


class TestRegisterObject(RegistryCase):
    def test_creates_table_and_indexes(self):
        obj = self.objects.register_object(
            {
                "short_name": "widget",
                "display_name": "Widget",
                "fields": [{"field_short_name": "f1", "mandatory": True}, "f2"],
                "display_properties": {"searchable_fields": ["f1"]},
            }
        )
        self.assertEqual([r["field_short_name"] for r in obj["fields"]], ["f1", "f2"])
        storage = self.objects.describe_storage("widget")
        self.assertEqual(storage["table"], "instances_widget")
        self.assertEqual([c["name"] for c in storage["columns"]], ["id", "f1", "f2"] + SYSTEM[1:])
        not_null = {c["name"]: c["not_null"] for c in storage["columns"]}
        self.assertTrue(not_null["f1"])
        self.assertFalse(not_null["f2"])
        self.assertEqual(storage["indexes"], ["idx_instances_widget_f1"])

    def test_zero_field_object(self):
        self.objects.register_object({"short_name": "bare", "display_name": "Bare"})
        self.assertEqual(self._columns("bare"), SYSTEM)

    def test_missing_field_leaves_nothing_behind(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["f1", "ghost"]})
        self.assertEqual(str(ctx.exception), "Field 'ghost' does not exist")
        self.assertIsNone(self.objects.get_object_by_short_name("widget"))
        self.assertFalse(self.catalog.has_table("instances_widget"))
        self.assertEqual(self.objects.schema_history("widget"), [])

    def test_duplicate_object(self):
        self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["f1"]})
        with self.assertRaises(DuplicateKeyError) as ctx:
            self.objects.register_object({"short_name": "widget", "display_name": "Other", "fields": ["f2"]})
        self.assertEqual(str(ctx.exception), "Object with short name 'widget' already exists")
        self.assertEqual(self.objects.get_object_by_short_name("widget")["display_name"], "Widget")
        self.assertEqual(self._columns("widget"), ["id", "f1"] + SYSTEM[1:])

    def test_malformed_groups_rejected_before_storage(self):
        with self.assertRaises(MalformedFieldGroupError):
            self.objects.register_object(
                {
                    "short_name": "widget",
                    "display_name": "Widget",
                    "fields": ["f1"],
                    "field_groups": [{"name": "Main", "description": "Main", "fields": ["f2"], "order": 1}],
                }
            )
        self.assertFalse(self.catalog.has_table("instances_widget"))

    def test_list_newest_first(self):
        for name in ["one", "two", "three"]:
            self.objects.register_object({"short_name": name, "display_name": name.title()})
        self.assertEqual([o["short_name"] for o in self.objects.get_all_objects()], ["three", "two", "one"])

    def test_mandatory_inherits_from_field(self):
        self.fields.register_field({"short_name": "code", "display_name": "Code", "datatype": "text", "mandatory": True})
        obj = self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["code"]})
        self.assertTrue(obj["fields"][0]["mandatory"])


class TestUpdateObject(RegistryCase):
    def setUp(self) -> None:
        super().setUp()
        self.objects.register_object(
            {
                "short_name": "widget",
                "display_name": "Widget",
                "fields": ["f1", "f2", "f3"],
                "display_properties": {"searchable_fields": ["f1", "f2"], "table_columns": ["f1", "f2"]},
            }
        )

    def test_removing_any_subset_drops_exactly_those_columns(self):
        names = ["f1", "f2", "f3"]
        for size in range(len(names) + 1):
            for removed in itertools.combinations(names, size):
                fields = FieldRegistry()
                objects = ObjectRegistry(fields, TableGenerator(), MemorySchemaCatalog())
                for name in names:
                    fields.register_field({"short_name": name, "display_name": name, "datatype": "text"})
                objects.register_object(
                    {
                        "short_name": "widget",
                        "display_name": "Widget",
                        "fields": names,
                        "display_properties": {"searchable_fields": ["f1"]},
                    }
                )
                kept = [n for n in names if n not in removed]
                objects.update_object("widget", {"fields": kept})
                columns = [c["name"] for c in objects.describe_storage("widget")["columns"]]
                self.assertEqual(columns, ["id"] + kept + SYSTEM[1:], removed)

    def test_add_field_and_searchable_index(self):
        obj = self.objects.update_object(
            "widget",
            {
                "fields": ["f1", "f2", "f3", {"field_short_name": "f4", "mandatory": True}],
                "display_properties": {"searchable_fields": ["f4"]},
            },
        )
        self.assertEqual([r["field_short_name"] for r in obj["fields"]], ["f1", "f2", "f3", "f4"])
        storage = self.objects.describe_storage("widget")
        self.assertIn("f4", [c["name"] for c in storage["columns"]])
        self.assertEqual(storage["indexes"], ["idx_instances_widget_f4"])

    def test_field_removal_prunes_display_properties(self):
        obj = self.objects.update_object("widget", {"fields": ["f2", "f3"]})
        self.assertEqual(obj["display_properties"]["searchable_fields"], ["f2"])
        self.assertEqual(obj["display_properties"]["table_columns"], ["f2"])
        self.assertEqual(self.objects.describe_storage("widget")["indexes"], ["idx_instances_widget_f2"])

    def test_metadata_only_update_emits_no_ddl(self):
        before = self.objects.describe_storage("widget")
        obj = self.objects.update_object("widget", {"display_name": "Gadget", "description": "Renamed"})
        self.assertEqual(obj["display_name"], "Gadget")
        self.assertEqual(self.objects.describe_storage("widget"), before)
        self.assertEqual(self.objects.schema_history("widget")[0]["statements"], [])

    def test_failing_ddl_rolls_back_metadata(self):
        self.store.insert("instances_widget", {"f1": "existing"})
        before_obj = self.objects.get_object_by_short_name("widget")
        before_storage = self.objects.describe_storage("widget")
        with self.assertRaises(ValidationFailedError) as ctx:
            self.objects.update_object(
                "widget",
                {
                    "fields": ["f2", "f3", {"field_short_name": "f4", "mandatory": True}],
                    "display_properties": {"searchable_fields": ["f4"]},
                },
            )
        issue = ctx.exception.errors[0]
        self.assertEqual(issue["code"], "CONSTRAINT_VIOLATION")
        self.assertEqual(issue["path"], "f4")
        self.assertEqual(issue["detail"]["op"], "add_column")
        self.assertEqual(issue["detail"]["table"], "instances_widget")
        self.assertEqual(self.objects.get_object_by_short_name("widget"), before_obj)
        self.assertEqual(self.objects.describe_storage("widget"), before_storage)
        self.assertEqual(len(self.objects.schema_history("widget")), 1)
        rows = list(self.catalog.rows("instances_widget").values())
        self.assertEqual(rows[0]["f1"], "existing")

    def test_mandatory_toggle_follows_into_storage(self):
        required = {"fields": [{"field_short_name": "f1", "mandatory": True}, "f2", "f3"]}
        self.store.insert("instances_widget", {"f2": 1})
        with self.assertRaises(ValidationFailedError) as ctx:
            self.objects.update_object("widget", required)
        self.assertEqual(ctx.exception.errors[0]["code"], "CONSTRAINT_VIOLATION")
        self.assertEqual(ctx.exception.errors[0]["detail"]["op"], "set_not_null")
        self.assertFalse(self.objects.get_object_by_short_name("widget")["fields"][0]["mandatory"])
        self.assertEqual(len(self.objects.schema_history("widget")), 1)

        for row in self.catalog.rows("instances_widget").values():
            row["f1"] = "filled"
        self.objects.update_object("widget", required)
        not_null = {c["name"]: c["not_null"] for c in self.objects.describe_storage("widget")["columns"]}
        self.assertTrue(not_null["f1"])
        self.assertEqual(
            self.objects.schema_history("widget")[0]["statements"],
            ['ALTER TABLE "instances_widget" ALTER COLUMN "f1" SET NOT NULL;'],
        )

        self.objects.update_object("widget", {"fields": ["f1", "f2", "f3"]})
        not_null = {c["name"]: c["not_null"] for c in self.objects.describe_storage("widget")["columns"]}
        self.assertFalse(not_null["f1"])
        self.assertIsNone(self.store.insert("instances_widget", {"f2": 2})["f1"])

    def test_unknown_field_in_update(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.objects.update_object("widget", {"fields": ["f1", "nope"]})
        self.assertIn("nope", str(ctx.exception))
        self.assertEqual(self._columns("widget"), ["id", "f1", "f2", "f3"] + SYSTEM[1:])

    def test_group_membership_checked_against_new_fields(self):
        self.objects.update_object(
            "widget",
            {"field_groups": [{"name": "Main", "description": "Main", "fields": ["f1"], "order": 1}]},
        )
        with self.assertRaises(MalformedFieldGroupError):
            self.objects.update_object("widget", {"fields": ["f2", "f3"]})
        self.assertEqual(self._columns("widget"), ["id", "f1", "f2", "f3"] + SYSTEM[1:])

    def test_update_missing_object(self):
        self.assertIsNone(self.objects.update_object("ghost", {"display_name": "x"}))
        self.assertIsNone(self.objects.preview_update("ghost", {"display_name": "x"}))

    def test_short_name_immutable(self):
        with self.assertRaises(ValidationFailedError):
            self.objects.update_object("widget", {"short_name": "gadget"})


class TestPreviewAndHistory(RegistryCase):
    def setUp(self) -> None:
        super().setUp()
        self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["f1"]})

    def test_preview_does_not_mutate(self):
        before = self.objects.describe_storage("widget")
        preview = self.objects.preview_update("widget", {"fields": ["f1", "f2"]})
        self.assertEqual(
            [s["sql"] for s in preview["statements"]],
            ['ALTER TABLE "instances_widget" ADD COLUMN "f2" NUMERIC;'],
        )
        self.assertEqual(self.objects.describe_storage("widget"), before)
        self.assertEqual([r["field_short_name"] for r in self.objects.get_object_by_short_name("widget")["fields"]], ["f1"])

    def test_preview_hash_matches_applied_update(self):
        preview = self.objects.preview_update("widget", {"fields": ["f1", "f2"]})
        self.objects.update_object("widget", {"fields": ["f1", "f2"]})
        latest = self.objects.schema_history("widget")[0]
        self.assertEqual(latest["action"], "update")
        self.assertEqual(latest["statements_hash"], preview["statements_hash"])

    def test_history_newest_first(self):
        self.objects.update_object("widget", {"fields": ["f1", "f2"]})
        self.objects.delete_object("widget")
        actions = [entry["action"] for entry in self.objects.schema_history("widget")]
        self.assertEqual(actions, ["delete", "update", "register"])
        self.assertTrue(self.objects.schema_history("widget")[2]["statements"][0].startswith('CREATE TABLE "instances_widget"'))


class TestDeleteObject(RegistryCase):
    def test_delete_retains_table(self):
        self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["f1"]})
        self.assertTrue(self.objects.delete_object("widget"))
        self.assertFalse(self.objects.delete_object("widget"))
        self.assertIsNone(self.objects.get_object_by_short_name("widget"))
        self.assertTrue(self.catalog.has_table("instances_widget"))
        with self.assertRaises(DuplicateKeyError) as ctx:
            self.objects.register_object({"short_name": "widget", "display_name": "Widget", "fields": ["f1"]})
        self.assertEqual(str(ctx.exception), "Table 'instances_widget' already exists")
        self.assertIsNone(self.objects.get_object_by_short_name("widget"))


if __name__ == "__main__":
    unittest.main()
