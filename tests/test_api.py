import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"

import app.main as main


def _name(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class TestMetadataApi(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(main.app)

    def _field(self, short_name, datatype="text", **extra):
        payload = {"shortName": short_name, "displayName": short_name.title(), "datatype": datatype}
        payload.update(extra)
        res = self.client.post("/metadata/fields", json=payload)
        self.assertEqual(res.status_code, 201, res.json())
        return res.json()["field"]

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body, {"ok": True, "storage": "memory"})

    def test_field_endpoints(self):
        name = _name("colour")
        created = self._field(name, description="Paint colour")
        self.assertEqual(created["description"], "Paint colour")

        dup = self.client.post("/metadata/fields", json={"short_name": name, "display_name": "Again", "datatype": "text"})
        self.assertEqual(dup.status_code, 409)
        self.assertEqual(dup.json()["errors"][0]["code"], "DUPLICATE_KEY")

        res = self.client.put(f"/metadata/fields/{name}", json={"description": "Updated"})
        self.assertEqual(res.json()["field"]["description"], "Updated")
        self.assertIn(name, [f["short_name"] for f in self.client.get("/metadata/fields").json()["fields"]])

        self.assertEqual(self.client.delete(f"/metadata/fields/{name}").json(), {"ok": True, "deleted": True, "errors": [], "warnings": []})
        missing = self.client.get(f"/metadata/fields/{name}")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["errors"][0]["code"], "FIELD_NOT_FOUND")

    def test_invalid_field_lists_all_issues(self):
        res = self.client.post("/metadata/fields", json={"short_name": "Bad", "datatype": "money"})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["message"], "Invalid field definition")
        codes = [err["code"] for err in body["errors"]]
        self.assertIn("INVALID_SHORT_NAME", codes)
        self.assertIn("INVALID_DATATYPE", codes)

    def test_non_object_body(self):
        res = self.client.post("/metadata/fields", json=["x"])
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_PAYLOAD")

    def test_object_endpoints(self):
        title = _name("title")
        extra = _name("extra")
        self._field(title)
        self._field(extra, "number")
        obj = _name("thing")

        res = self.client.post(
            "/metadata/objects",
            json={"shortName": obj, "displayName": "Thing", "fields": [{"fieldShortName": title, "mandatory": True}]},
        )
        self.assertEqual(res.status_code, 201, res.json())
        self.assertEqual(res.json()["object"]["fields"][0]["field_short_name"], title)

        preview = self.client.post(f"/metadata/objects/{obj}/preview", json={"fields": [{"field_short_name": title, "mandatory": True}, extra]}).json()["preview"]
        self.assertEqual(len(preview["statements"]), 1)
        self.assertTrue(preview["statements_hash"].startswith("sha256:"))

        res = self.client.put(f"/metadata/objects/{obj}", json={"fields": [{"field_short_name": title, "mandatory": True}, extra]})
        self.assertEqual(res.status_code, 200, res.json())
        storage = self.client.get(f"/metadata/objects/{obj}/storage").json()["storage"]
        self.assertIn(extra, [c["name"] for c in storage["columns"]])

        history = self.client.get(f"/metadata/objects/{obj}/history").json()["history"]
        self.assertEqual([h["action"] for h in history], ["update", "register"])
        self.assertEqual(history[0]["statements_hash"], preview["statements_hash"])

        in_use = self.client.delete(f"/metadata/fields/{title}")
        self.assertEqual(in_use.status_code, 409)
        self.assertEqual(in_use.json()["errors"][0]["code"], "REFERENTIAL_INTEGRITY")

        self.assertEqual(self.client.delete(f"/metadata/objects/{obj}").status_code, 200)
        self.assertEqual(self.client.get(f"/metadata/objects/{obj}").status_code, 404)
        self.assertEqual(self.client.get(f"/metadata/objects/{obj}/storage").status_code, 200)

    def test_object_with_missing_field(self):
        res = self.client.post("/metadata/objects", json={"short_name": _name("thing"), "display_name": "Thing", "fields": ["ghost_field"]})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["message"], "Field 'ghost_field' does not exist")

    def test_malformed_field_group(self):
        title = _name("title")
        self._field(title)
        res = self.client.post(
            "/metadata/objects",
            json={
                "short_name": _name("thing"),
                "display_name": "Thing",
                "fields": [title],
                "fieldGroups": [{"name": "Main", "fields": [title], "order": 1}],
            },
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "MALFORMED_FIELD_GROUP")
        self.assertEqual(res.json()["errors"][0]["message"], "Field group 'Main' must have a description")


class TestInstanceApi(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(main.app)
        self.title = _name("title")
        self.qty = _name("qty")
        for short_name, datatype in [(self.title, "text"), (self.qty, "number")]:
            res = self.client.post("/metadata/fields", json={"short_name": short_name, "display_name": "Label", "datatype": datatype})
            self.assertEqual(res.status_code, 201, res.json())
        self.obj = _name("order")
        res = self.client.post(
            "/metadata/objects",
            json={
                "short_name": self.obj,
                "display_name": "Order",
                "fields": [{"field_short_name": self.title, "mandatory": True}, self.qty],
                "display_properties": {"searchable_fields": [self.title]},
            },
        )
        self.assertEqual(res.status_code, 201, res.json())
        self.base = f"/objects/{self.obj}/instances"

    def test_instance_lifecycle(self):
        res = self.client.post(self.base, json={"data": {self.title: "First", self.qty: "3"}})
        self.assertEqual(res.status_code, 201, res.json())
        row = res.json()["instance"]
        self.assertEqual(row[self.qty], 3)

        fetched = self.client.get(f"{self.base}/{row['id']}").json()["instance"]
        self.assertEqual(fetched["id"], row["id"])

        updated = self.client.put(f"{self.base}/{row['id']}", json={self.title: "Renamed", self.qty: 4}).json()["instance"]
        self.assertEqual(updated[self.title], "Renamed")

        self.assertEqual(self.client.delete(f"{self.base}/{row['id']}").status_code, 200)
        missing = self.client.get(f"{self.base}/{row['id']}")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["errors"][0]["code"], "INSTANCE_NOT_FOUND")

    def test_list_with_query_parameters(self):
        for label, qty in [("alpha", 1), ("beta", 2), ("alphabet", 3)]:
            self.client.post(self.base, json={self.title: label, self.qty: qty})
        body = self.client.get(self.base, params={"search": "ALPHA", "sortBy": self.qty, "sortOrder": "desc"}).json()
        self.assertEqual([r[self.title] for r in body["data"]], ["alphabet", "alpha"])
        self.assertEqual(body["pagination"]["total_items"], 2)

        filtered = self.client.get(self.base, params={self.qty: "2"}).json()
        self.assertEqual([r[self.title] for r in filtered["data"]], ["beta"])

        paged = self.client.get(self.base, params={"page": 2, "page_size": 2}).json()
        self.assertEqual(paged["pagination"], {"page": 2, "page_size": 2, "total_items": 3, "total_pages": 2})
        self.assertEqual(len(paged["data"]), 1)

    def test_validation_errors(self):
        res = self.client.post(self.base, json={self.qty: "many", "bogus": 1})
        self.assertEqual(res.status_code, 400)
        codes = sorted(err["code"] for err in res.json()["errors"])
        self.assertEqual(codes, ["MANDATORY_FIELD", "TYPE_MISMATCH", "UNKNOWN_FIELD"])

    def test_bad_list_parameters(self):
        res = self.client.get(self.base, params={"page": "0"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_PAGE")

        res = self.client.get(self.base, params={"id": "not-a-uuid"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_FILTER")

    def test_schema_change_refused_by_existing_rows(self):
        self.client.post(self.base, json={self.title: "No qty"})
        res = self.client.put(
            f"/metadata/objects/{self.obj}",
            json={"fields": [{"field_short_name": self.title, "mandatory": True}, {"field_short_name": self.qty, "mandatory": True}]},
        )
        self.assertEqual(res.status_code, 400, res.json())
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "CONSTRAINT_VIOLATION")
        self.assertEqual(error["path"], self.qty)
        fields = self.client.get(f"/metadata/objects/{self.obj}").json()["object"]["fields"]
        self.assertFalse(fields[1]["mandatory"])

    def test_unknown_object_type(self):
        for method, path in [
            ("get", "/objects/nothing_here/instances"),
            ("post", "/objects/nothing_here/instances"),
            ("get", f"/objects/nothing_here/instances/{uuid.uuid4()}"),
            ("put", f"/objects/nothing_here/instances/{uuid.uuid4()}"),
            ("delete", f"/objects/nothing_here/instances/{uuid.uuid4()}"),
        ]:
            kwargs = {"json": {"x": 1}} if method in ("post", "put") else {}
            res = getattr(self.client, method)(path, **kwargs)
            self.assertEqual(res.status_code, 404, path)
            self.assertEqual(res.json()["errors"][0]["code"], "NOT_FOUND")
            self.assertEqual(res.json()["errors"][0]["message"], "Object type 'nothing_here' not found")


if __name__ == "__main__":
    unittest.main()
