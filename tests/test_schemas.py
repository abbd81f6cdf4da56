#!/usr/bin/env python3
"""
Schema tests: apply, applyWhen, applyWhenValue, applyEach, nesting and the
lenient handling of unknown schema names.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic.errors import InvalidConditionShapeError, UnknownFunctionError, UnknownSchemaError
from formlogic.form import FormRuntime
from formlogic.registry import SchemaRegistry
from formlogic.schemas import SchemaDefinition, parse_application, parse_logic

BUSINESS = {"type": "fieldValue", "fieldPath": "accountType", "operator": "equals", "value": "business"}


def registry_with(*definitions):
    registry = SchemaRegistry()
    for data in definitions:
        registry.register(SchemaDefinition.from_dict(data))
    return registry


REQUIRED_TEXT = {"name": "requiredText", "validators": ["required", {"type": "minLength", "value": 2}]}
LINE_ITEM = {
    "name": "lineItem",
    "subSchemas": [
        {"type": "apply", "path": "qty", "schema": {"name": "positive", "validators": [{"type": "min", "value": 1}]}},
    ],
}


class TestDefinitions(unittest.TestCase):

    def test_from_dict(self):
        schema = SchemaDefinition.from_dict({
            "name": "contact",
            "validators": ["email"],
            "logic": [{"type": "readonly", "condition": True}],
            "subSchemas": [{"type": "applyEach", "path": "phones", "schema": "phone"}],
        })
        self.assertEqual(schema.validators[0].type, "email")
        self.assertEqual(schema.logic[0].type, "readonly")
        self.assertEqual(schema.sub_schemas[0].type, "applyEach")

    def test_malformed(self):
        with self.assertRaises(InvalidConditionShapeError):
            SchemaDefinition.from_dict({"validators": []})
        with self.assertRaises(InvalidConditionShapeError):
            parse_application({"type": "applyWhen", "schema": "x"})
        with self.assertRaises(InvalidConditionShapeError):
            parse_application({"type": "applyWhenValue", "schema": "x"})
        with self.assertRaises(InvalidConditionShapeError):
            parse_application({"type": "applyAll", "schema": "x"})
        with self.assertRaises(InvalidConditionShapeError):
            parse_logic({"type": "invisible", "condition": True})

    def test_strict_lookup(self):
        with self.assertRaises(UnknownSchemaError) as cm:
            SchemaRegistry().get("address")
        self.assertIn("Available schemas: <none>", str(cm.exception))


class TestApplication(unittest.TestCase):

    def test_apply(self):
        form = FormRuntime({"name": ""}, schemas=registry_with(REQUIRED_TEXT))
        form.apply_schema("name", "requiredText")
        self.assertEqual(form.validate().kinds("name"), ["required"])
        form.set("name", "a")
        self.assertEqual(form.validate().kinds("name"), ["minLength"])
        form.set("name", "ab")
        self.assertTrue(form.validate().valid)

    def test_apply_when(self):
        form = FormRuntime({"accountType": "personal", "companyName": ""}, schemas=registry_with(REQUIRED_TEXT))
        form.apply_schema("companyName", {"type": "applyWhen", "condition": BUSINESS, "schema": "requiredText"})
        self.assertTrue(form.validate().valid)
        form.set("accountType", "business")
        self.assertEqual(form.validate().kinds(), ["required"])

    def test_apply_when_guard_hoists_to_tree_level(self):
        form = FormRuntime({"accountType": "business"}, schemas=registry_with(REQUIRED_TEXT))
        form.apply_schema("companyName", {"type": "applyWhen", "condition": BUSINESS, "schema": "requiredText"})
        self.assertEqual([p for p, _ in form.tree_validators()], ["companyName", "companyName"])
        self.assertEqual(form.field_validators(), [])

    def test_apply_when_value(self):
        form = FormRuntime({"nickname": 42}, schemas=registry_with(REQUIRED_TEXT))
        form.apply_schema("nickname", {"type": "applyWhenValue", "typePredicate": "string", "schema": "requiredText"})
        self.assertEqual(form.rules().validators, [])
        form.set("nickname", "")
        self.assertEqual(form.validate().kinds("nickname"), ["required"])

    def test_apply_each(self):
        form = FormRuntime({"items": [{"qty": 0}, {"qty": 2}]}, schemas=registry_with(LINE_ITEM))
        form.apply_schema("items", {"type": "applyEach", "schema": "lineItem"})
        result = form.validate()
        self.assertEqual([e.path for e in result.errors], ["items[0].qty"])
        self.assertEqual(result.errors[0].params, {"min": 1, "actual": 0})

        # Rules follow the array as it grows
        form.set("items", [{"qty": 0}, {"qty": 2}, {"qty": -1}])
        self.assertEqual([e.path for e in form.validate().errors], ["items[0].qty", "items[2].qty"])

    def test_apply_each_on_non_array(self):
        form = FormRuntime({"items": None}, schemas=registry_with(LINE_ITEM))
        form.apply_schema("items", {"type": "applyEach", "schema": "lineItem"})
        self.assertEqual(form.rules().validators, [])

    def test_inline_definition(self):
        form = FormRuntime({"email": "nope"})
        form.apply_schema("email", {"type": "apply", "schema": {"name": "inline", "validators": ["email"]}})
        self.assertEqual(form.validate().kinds("email"), ["email"])

    def test_registered_after_application(self):
        schemas = SchemaRegistry()
        form = FormRuntime({"name": ""}, schemas=schemas)
        form.apply_schema("name", "requiredText")
        schemas.register(SchemaDefinition.from_dict(REQUIRED_TEXT))
        self.assertEqual(form.validate().kinds("name"), ["required"])

    def test_unregistered_function_fails_at_application(self):
        schemas = registry_with(
            {"name": "ghostly", "validators": [{"type": "custom", "functionName": "ghost"}]},
            {
                "name": "outer",
                "subSchemas": [{"type": "apply", "path": "inner", "schema": "ghostly"}],
            },
        )
        form = FormRuntime({"a": 1}, schemas=schemas)
        with self.assertRaises(UnknownFunctionError):
            form.apply_schema("a", "ghostly")
        with self.assertRaises(UnknownFunctionError):
            form.apply_schema("b", {"type": "applyEach", "schema": "outer"})
        self.assertTrue(form.validate().valid)

    def test_late_schema_with_unregistered_function_is_skipped(self):
        schemas = SchemaRegistry()
        form = FormRuntime({"a": ""}, schemas=schemas)
        form.apply_schema("a", "late")
        schemas.register(SchemaDefinition.from_dict({
            "name": "late",
            "validators": ["required", {"type": "custom", "functionName": "ghost"}],
        }))
        with self.assertLogs("formlogic.form", level="ERROR") as logs:
            result = form.validate()
        self.assertEqual(result.kinds("a"), ["required"])
        self.assertIn("ghost", logs.output[0])

    def test_unknown_schema_is_logged_and_skipped(self):
        form = FormRuntime({"address": {}})
        form.apply_schema("address", "address")
        with self.assertLogs("formlogic.registry", level="ERROR") as logs:
            rules = form.rules()
        self.assertEqual(rules.validators, [])
        self.assertIn("Available schemas: <none>", logs.output[0])

    def test_recursive_schema_stops(self):
        schemas = registry_with({
            "name": "node",
            "validators": ["required"],
            "subSchemas": [{"type": "apply", "path": "child", "schema": "node"}],
        })
        form = FormRuntime({"tree": {}}, schemas=schemas)
        form.apply_schema("tree", "node")
        with self.assertLogs("formlogic.schemas", level="ERROR"):
            rules = form.rules()
        self.assertEqual([b.path for b in rules.validators], ["tree"])

    def test_schema_logic(self):
        schemas = registry_with({
            "name": "lockedWhenBusiness",
            "logic": [{"type": "disabled", "condition": BUSINESS}],
        })
        form = FormRuntime({"accountType": "business"}, schemas=schemas)
        form.apply_schema("vatId", "lockedWhenBusiness")
        self.assertTrue(form.field("vatId").disabled())
        self.assertFalse(form.field("vatId").hidden())


if __name__ == "__main__":
    unittest.main()
