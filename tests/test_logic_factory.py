#!/usr/bin/env python3
"""
LogicFactory tests: compiled function identity, per-form cache scopes,
dynamic values, type predicates and debounced logic.
"""

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic.cache_scope import CacheScope
from formlogic.context import context_for_path
from formlogic.errors import InvalidConditionShapeError
from formlogic.logic_factory import LogicFactory
from formlogic.registry import FunctionRegistry
from formlogic.values import UNDEFINED, get_nested_value, parse_path


class MutableField:
    """Minimal FieldState over a plain dict the test can swap out."""

    def __init__(self, root, path):
        self.root = root
        self.keys = parse_path(path)

    def current_value(self):
        return get_nested_value(self.root, self.keys)

    def path_keys(self):
        return self.keys

    def value_at(self, other_path):
        return get_nested_value(self.root, other_path)

    def root_value(self):
        return self.root


BUSINESS = {"type": "fieldValue", "fieldPath": "accountType", "operator": "equals", "value": "business"}


class TestCompile(unittest.TestCase):

    def setUp(self):
        self.factory = LogicFactory()

    def test_structurally_equal_conditions_share_one_function(self):
        c1 = {"type": "fieldValue", "fieldPath": "x", "operator": "equals", "value": 1}
        c1_copy = {"value": 1, "operator": "equals", "fieldPath": "x", "type": "fieldValue"}
        self.assertIs(self.factory.compile(c1), self.factory.compile(c1_copy))
        self.assertEqual(self.factory.scope.stats()["logic_functions"], 1)

    def test_debounced_variant_is_separate(self):
        self.assertIsNot(self.factory.compile(BUSINESS), self.factory.compile(BUSINESS, debounce_ms=100))

    def test_scopes_do_not_share(self):
        other = LogicFactory(CacheScope())
        self.assertIsNot(self.factory.compile(BUSINESS), other.compile(BUSINESS))

    def test_evaluates_against_field_state(self):
        fn = self.factory.compile(BUSINESS)
        field = MutableField({"accountType": "business"}, "companyName")
        self.assertTrue(fn(field))
        field.root = {"accountType": "personal"}
        self.assertFalse(fn(field))

    def test_literal(self):
        self.assertTrue(self.factory.compile(True)(MutableField({}, "a")))

    def test_shape_errors_raise(self):
        with self.assertRaises(InvalidConditionShapeError):
            self.factory.compile({"type": "and", "conditions": [{"type": "remote", "request": {"url": "/x"}}]})

    def test_registry_custom_functions_are_visible(self):
        registry = FunctionRegistry()
        registry.register_custom_function("isLong", lambda ctx: len(ctx.current_value) > 3, scope="field")
        factory = LogicFactory(registry=registry)
        fn = factory.compile({"type": "custom", "functionName": "isLong"})
        self.assertTrue(fn(MutableField({"name": "Grace"}, "name")))

    def test_external_data(self):
        factory = LogicFactory(external_data=lambda: {"region": "EU"})
        fn = factory.compile({"type": "expression", "expression": "externalData.region === 'EU'"})
        self.assertTrue(fn(MutableField({}, "vat")))

    def test_dispose_clears_scope(self):
        self.factory.compile(BUSINESS)
        self.factory.scope.dispose()
        self.assertEqual(self.factory.scope.stats()["logic_functions"], 0)


class TestDynamicValues(unittest.TestCase):

    def setUp(self):
        self.factory = LogicFactory()

    def test_compile_value(self):
        fn = self.factory.compile_value("formValue.minAge + 1")
        self.assertEqual(fn(context_for_path({"minAge": 17}, "age")), 18)
        self.assertIs(self.factory.compile_value("formValue.minAge + 1"), fn)

    def test_compile_value_fault_is_undefined(self):
        fn = self.factory.compile_value("formValue.constructor")
        with self.assertLogs("formlogic.logic", level="ERROR"):
            self.assertIs(fn(context_for_path({}, "age")), UNDEFINED)

    def test_type_names(self):
        is_array = self.factory.compile_type_predicate("array")
        self.assertTrue(is_array([]))
        self.assertFalse(is_array({}))
        is_object = self.factory.compile_type_predicate("object")
        self.assertTrue(is_object({"a": 1}))
        self.assertFalse(is_object(None))
        self.assertFalse(is_object([1]))
        self.assertTrue(self.factory.compile_type_predicate("null")(None))

    def test_expression_predicate(self):
        pred = self.factory.compile_type_predicate("value.length > 2")
        self.assertTrue(pred("abc"))
        self.assertFalse(pred("ab"))
        self.assertFalse(pred(None))


class TestDebounceWithoutLoop(unittest.TestCase):

    def test_follows_immediately(self):
        factory = LogicFactory()
        fn = factory.compile(BUSINESS, debounce_ms=200)
        field = MutableField({"accountType": "business"}, "companyName")
        self.assertTrue(fn(field))
        field.root = {"accountType": "personal"}
        self.assertFalse(fn(field))


class TestDebounceWithLoop(unittest.IsolatedAsyncioTestCase):

    async def test_returns_false_until_settled(self):
        factory = LogicFactory()
        fn = factory.compile(BUSINESS, debounce_ms=30)
        field = MutableField({"accountType": "business"}, "companyName")

        self.assertFalse(fn(field))
        await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))

    async def test_rapid_flips_publish_final_state(self):
        factory = LogicFactory()
        fn = factory.compile(BUSINESS, debounce_ms=30)
        field = MutableField({"accountType": "personal"}, "companyName")
        self.assertFalse(fn(field))
        await factory.scope.scheduler.wait_idle()

        for value in ("business", "personal", "business"):
            field.root = {"accountType": value}
            fn(field)
            await asyncio.sleep(0)
        self.assertFalse(fn(field))
        await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))

    async def test_occurrences_have_separate_slots(self):
        factory = LogicFactory()
        fn = factory.compile(BUSINESS, debounce_ms=10)
        fn(MutableField({"accountType": "business"}, "a"))
        fn(MutableField({"accountType": "business"}, "b"))
        self.assertEqual(factory.scope.stats()["debounced_slots"], 2)


if __name__ == "__main__":
    unittest.main()
