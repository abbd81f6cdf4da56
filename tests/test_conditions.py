#!/usr/bin/env python3
"""
Condition model tests: parsing, evaluation of every variant, array scoping
and the stable serialization used for cache keys.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic.canonical import cache_key, stable_stringify
from formlogic.condition_evaluator import evaluate_condition, resolve_field_value
from formlogic.conditions import (
    AndCondition,
    AsyncCondition,
    FieldValueCondition,
    LiteralCondition,
    RemoteCondition,
    condition_key,
    parse_condition,
    to_dict,
)
from formlogic.context import EvaluationContext, context_for_path
from formlogic.diagnostics import WarningTracker
from formlogic.errors import InvalidConditionShapeError
from formlogic.values import UNDEFINED

REMOTE = {"type": "remote", "request": {"url": "/api/check"}}


class TestParsing(unittest.TestCase):

    def test_bool_is_literal(self):
        self.assertEqual(parse_condition(True), LiteralCondition(True))

    def test_field_value(self):
        cond = parse_condition({"type": "fieldValue", "fieldPath": "age", "operator": "greater", "value": 17})
        self.assertEqual(cond, FieldValueCondition("age", "greater", 17))

    def test_aliases(self):
        self.assertEqual(parse_condition({"type": "javascript", "expression": "true"}).kind, "expression")
        self.assertIsInstance(parse_condition({"type": "http", "request": {"url": "/x"}}), RemoteCondition)

    def test_async_params(self):
        cond = parse_condition({"type": "async", "functionName": "lookup", "params": {"q": "formValue.q"}})
        self.assertIsInstance(cond, AsyncCondition)
        self.assertEqual(dict(cond.params), {"q": "formValue.q"})
        self.assertFalse(cond.pending_value)

    def test_remote_nested_in_and_is_rejected(self):
        with self.assertRaises(InvalidConditionShapeError):
            parse_condition({"type": "and", "conditions": [True, REMOTE]})

    def test_async_nested_in_or_is_rejected(self):
        with self.assertRaises(InvalidConditionShapeError):
            parse_condition({"type": "or", "conditions": [{"type": "async", "functionName": "f"}]})

    def test_deeply_nested_remote_is_rejected(self):
        with self.assertRaises(InvalidConditionShapeError):
            parse_condition({"type": "and", "conditions": [{"type": "or", "conditions": [REMOTE]}]})

    def test_malformed(self):
        bad = [
            {"type": "nope"},
            {"type": "fieldValue", "operator": "equals"},
            {"type": "fieldValue", "fieldPath": "a", "operator": "between"},
            {"type": "remote"},
            {"type": "remote", "request": {"method": "GET"}},
            {"type": "and", "conditions": "x"},
            "fieldValue",
        ]
        for data in bad:
            with self.subTest(data=data):
                with self.assertRaises(InvalidConditionShapeError):
                    parse_condition(data)

    def test_to_dict_feeds_back_into_parse(self):
        data = {"type": "and", "conditions": [{"type": "expression", "expression": "fieldValue > 1"}, False]}
        cond = parse_condition(data)
        self.assertEqual(parse_condition(to_dict(cond)), cond)


class TestEvaluation(unittest.TestCase):

    def test_account_type_not_business(self):
        cond = {"type": "fieldValue", "fieldPath": "accountType", "operator": "notEquals", "value": "business"}
        self.assertTrue(evaluate_condition(cond, EvaluationContext(form_value={"accountType": "personal"})))
        self.assertFalse(evaluate_condition(cond, EvaluationContext(form_value={"accountType": "business"})))

    def test_comparison_operators(self):
        ctx = EvaluationContext(form_value={"age": "21", "tags": ["a", "b"], "email": "x@corp.com"})
        cases = [
            ({"fieldPath": "age", "operator": "greater", "value": 18}, True),
            ({"fieldPath": "age", "operator": "lessOrEqual", "value": 20}, False),
            ({"fieldPath": "tags", "operator": "contains", "value": "b"}, True),
            ({"fieldPath": "email", "operator": "endsWith", "value": "@corp.com"}, True),
            ({"fieldPath": "email", "operator": "matches", "value": "^x@"}, True),
            ({"fieldPath": "email", "operator": "matches", "value": "(unclosed"}, False),
            ({"fieldPath": "missing", "operator": "greater", "value": 0}, False),
        ]
        for data, expected in cases:
            with self.subTest(data=data):
                cond = dict(type="fieldValue", **data)
                self.assertEqual(evaluate_condition(cond, ctx), expected)

    def test_form_value_condition(self):
        cond = {"type": "formValue", "operator": "equals", "value": {"a": 1, "b": [1, 2]}}
        self.assertTrue(evaluate_condition(cond, EvaluationContext(form_value={"b": [1, 2], "a": 1})))

    def test_empty_composites(self):
        ctx = EvaluationContext()
        self.assertTrue(evaluate_condition({"type": "and", "conditions": []}, ctx))
        self.assertFalse(evaluate_condition({"type": "or", "conditions": []}, ctx))

    def test_and_short_circuits(self):
        calls = []

        def spy(ctx):
            calls.append(ctx.path)
            return True

        ctx = EvaluationContext(custom_functions={"spy": spy})
        cond = {"type": "and", "conditions": [False, {"type": "custom", "functionName": "spy"}]}
        self.assertFalse(evaluate_condition(cond, ctx))
        self.assertEqual(calls, [])

    def test_custom_function(self):
        ctx = EvaluationContext(
            form_value={"age": 20},
            custom_functions={"isAdult": lambda c: c.form_value["age"] >= 18},
        )
        self.assertTrue(evaluate_condition({"type": "custom", "functionName": "isAdult"}, ctx))

    def test_missing_custom_function_is_false(self):
        with self.assertLogs("formlogic.conditions", level="ERROR") as logs:
            result = evaluate_condition({"type": "custom", "functionName": "ghost"}, EvaluationContext())
        self.assertFalse(result)
        self.assertIn("Registered: <none>", logs.output[0])

    def test_raising_custom_function_is_false(self):
        ctx = EvaluationContext(custom_functions={"boom": lambda c: 1 / 0})
        with self.assertLogs("formlogic.conditions", level="ERROR"):
            self.assertFalse(evaluate_condition({"type": "custom", "functionName": "boom"}, ctx))

    def test_expression_fault_is_false(self):
        with self.assertLogs("formlogic.conditions", level="ERROR"):
            result = evaluate_condition({"type": "expression", "expression": "formValue.constructor"}, EvaluationContext())
        self.assertFalse(result)

    def test_non_boolean_expression_warns_once(self):
        tracker = WarningTracker()
        cond = {"type": "expression", "expression": "formValue.name"}
        ctx = EvaluationContext(form_value={"name": "Ada"})
        with self.assertLogs("formlogic", level="WARNING") as logs:
            self.assertTrue(evaluate_condition(cond, ctx, tracker))
            self.assertTrue(evaluate_condition(cond, ctx, tracker))
        self.assertEqual(len(logs.output), 1)
        self.assertTrue(tracker.has_warned("formValue.name"))

    def test_remote_outside_factory_uses_pending_value(self):
        cond = dict(REMOTE, pendingValue=True)
        with self.assertLogs("formlogic.conditions", level="ERROR"):
            self.assertTrue(evaluate_condition(cond, EvaluationContext()))


class TestArrayScope(unittest.TestCase):

    ROOT = {"currency": "EUR", "items": [{"qty": 2, "price": 5}, {"qty": 0, "price": 9}]}

    def test_context_inside_array_item(self):
        ctx = context_for_path(self.ROOT, "items[1].qty")
        self.assertEqual(ctx.form_value, {"qty": 0, "price": 9})
        self.assertEqual(ctx.array_index, 1)
        self.assertEqual(ctx.array_path, "items")
        self.assertEqual(ctx.current_value, 0)
        self.assertIs(ctx.root_value, self.ROOT)

    def test_item_first_then_root(self):
        ctx = context_for_path(self.ROOT, "items[0].qty")
        self.assertEqual(resolve_field_value("price", ctx), 5)
        self.assertEqual(resolve_field_value("currency", ctx), "EUR")
        self.assertIs(resolve_field_value("discount", ctx), UNDEFINED)

    def test_relative_condition(self):
        ctx = context_for_path(self.ROOT, "items[1].qty")
        cond = {"type": "fieldValue", "fieldPath": "price", "operator": "greater", "value": 6}
        self.assertTrue(evaluate_condition(cond, ctx))

    def test_expression_scope(self):
        ctx = context_for_path(self.ROOT, "items[0].qty")
        cond = {"type": "expression", "expression": "formValue.qty * formValue.price === 10 && arrayIndex === 0"}
        self.assertTrue(evaluate_condition(cond, ctx))
        cond = {"type": "expression", "expression": "rootFormValue.currency === 'EUR'"}
        self.assertTrue(evaluate_condition(cond, ctx))


class TestStableKeys(unittest.TestCase):

    def test_key_order_does_not_matter(self):
        a = {"type": "fieldValue", "fieldPath": "x", "operator": "equals", "value": 1}
        b = {"value": 1, "operator": "equals", "fieldPath": "x", "type": "fieldValue"}
        self.assertEqual(condition_key(a), condition_key(b))

    def test_different_conditions_differ(self):
        a = {"type": "fieldValue", "fieldPath": "x", "operator": "equals", "value": 1}
        b = dict(a, value="1")
        self.assertNotEqual(condition_key(a), condition_key(b))

    def test_stable_stringify(self):
        value = {"url": "/api/check", "method": UNDEFINED, "body": {"b": 1, "a": [1.0, None]}}
        self.assertEqual(
            stable_stringify(value),
            '{"body":{"a":[1,null],"b":1},"method":undefined,"url":"/api/check"}',
        )

    def test_cache_key_namespaces(self):
        self.assertNotEqual(cache_key("condition", {"a": 1}), cache_key("request", {"a": 1}))

    def test_and_children_are_tuple(self):
        cond = AndCondition([LiteralCondition(True)])
        self.assertIsInstance(cond.conditions, tuple)


if __name__ == "__main__":
    unittest.main()
