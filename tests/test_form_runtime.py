#!/usr/bin/env python3
"""
FormRuntime tests: field logic, validation passes (field level and tree
level), derivations on write, reactive watchers and instance isolation.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic import FormRuntime, FunctionRegistry, UNDEFINED
from formlogic.errors import DerivationCycleError, InvalidConditionShapeError, UnknownFunctionError
from formlogic.registry import AsyncValidatorSpec

NOT_BUSINESS = {"type": "fieldValue", "fieldPath": "accountType", "operator": "notEquals", "value": "business"}
BUSINESS = {"type": "fieldValue", "fieldPath": "accountType", "operator": "equals", "value": "business"}


class TestValues(unittest.TestCase):

    def test_initial_value_is_copied(self):
        initial = {"address": {"city": "Paris"}}
        form = FormRuntime(initial)
        form.set("address.city", "Lyon")
        self.assertEqual(initial["address"]["city"], "Paris")
        self.assertEqual(form.get("address.city"), "Lyon")

    def test_patch_deep_merges(self):
        form = FormRuntime({"address": {"city": "Paris", "zip": "75001"}})
        form.patch({"address": {"city": "Lyon"}, "name": "Ada"})
        self.assertEqual(form.get(), {"address": {"city": "Lyon", "zip": "75001"}, "name": "Ada"})

    def test_replace(self):
        form = FormRuntime({"a": 1})
        form.replace({"b": 2})
        self.assertEqual(form.get(), {"b": 2})
        with self.assertRaises(TypeError):
            form.replace([1])

    def test_field_handles_are_cached(self):
        form = FormRuntime({"items": [{"qty": 1}]})
        self.assertIs(form.field("items[0].qty"), form.field("items.0.qty"))
        self.assertEqual(form.field("items[0].qty").value, 1)
        self.assertIs(form.field("missing").value, UNDEFINED)


class TestLogic(unittest.TestCase):

    def setUp(self):
        self.form = FormRuntime({"accountType": "personal", "companyName": ""})
        self.form.add_logic("companyName", {"type": "hidden", "condition": NOT_BUSINESS})
        self.form.add_logic("companyName", {"type": "required", "condition": BUSINESS})

    def test_hidden_follows_account_type(self):
        company = self.form.field("companyName")
        self.assertTrue(company.hidden())
        self.form.set("accountType", "business")
        self.assertFalse(company.hidden())

    def test_required_logic_adds_validator(self):
        self.assertTrue(self.form.validate().valid)
        self.form.set("accountType", "business")
        self.assertTrue(self.form.field("companyName").required())
        result = self.form.validate()
        self.assertEqual([(e.kind, e.path) for e in result.errors], [("required", "companyName")])

    def test_no_logic_means_false(self):
        self.assertFalse(self.form.field("companyName").disabled())
        self.assertFalse(self.form.field("accountType").hidden())

    def test_watch_notifies_on_flip(self):
        watcher = self.form.field("companyName").watch("hidden")
        self.assertIs(watcher, self.form.field("companyName").watch("hidden"))
        self.assertTrue(watcher.read())
        seen = []
        watcher.subscribe(seen.append)
        self.form.set("accountType", "business")
        self.assertEqual(seen, [False])
        self.form.set("companyName", "ACME")
        self.assertEqual(seen, [False])

    def test_malformed_logic_fails_fast(self):
        with self.assertRaises(InvalidConditionShapeError):
            self.form.add_logic("x", {"type": "hidden", "condition": {"type": "bogus"}})

    def test_ad_hoc_condition(self):
        self.assertTrue(self.form.field("companyName").evaluate(NOT_BUSINESS))

    def test_external_data_is_live(self):
        form = FormRuntime({}, external_data={"region": "EU"})
        cond = {"type": "expression", "expression": "externalData.region === 'EU'"}
        self.assertTrue(form.field("vat").evaluate(cond))
        form.set_external_data({"region": "US"})
        self.assertFalse(form.field("vat").evaluate(cond))


class TestValidation(unittest.TestCase):

    def test_cross_field_validator_is_hoisted(self):
        form = FormRuntime({"password": "secret", "confirm": "nope"})
        form.add_validator("password", "required")
        form.add_validator("confirm", {"type": "custom", "expression": "fieldValue === formValue.password", "kind": "mismatch"})

        tree = form.tree_validators()
        self.assertEqual([(p, c.kind) for p, c in tree], [("confirm", "mismatch")])
        self.assertNotIn("confirm", [p for p, _ in form.field_validators()])
        self.assertEqual(form.validate().kinds(), ["mismatch"])

        form.set("confirm", "secret")
        self.assertTrue(form.validate().valid)

    def test_collects_every_error_in_order(self):
        form = FormRuntime({"email": "bad", "age": 10})
        form.add_validator("email", "required")
        form.add_validator("email", "email")
        form.add_validator("age", {"type": "min", "value": 18})
        form.add_validator("age", {"type": "max", "value": 5})
        result = form.validate()
        self.assertEqual([(e.path, e.kind) for e in result.errors], [("email", "email"), ("age", "min"), ("age", "max")])

    def test_hidden_fields_are_still_validated(self):
        form = FormRuntime({"accountType": "personal", "companyName": ""})
        form.add_logic("companyName", {"type": "hidden", "condition": NOT_BUSINESS})
        form.add_validator("companyName", "required")
        self.assertEqual(form.validate().kinds("companyName"), ["required"])

    def test_add_validator_fails_fast(self):
        form = FormRuntime()
        with self.assertRaises(UnknownFunctionError):
            form.add_validator("x", {"type": "custom", "functionName": "ghost"})
        with self.assertRaises(InvalidConditionShapeError):
            form.add_validator("x", {"type": "nope"})

    def test_field_scoped_function_stays_field_level(self):
        functions = FunctionRegistry()
        functions.register_validator("even", lambda ctx, params: ctx.current_value % 2 == 0)
        form = FormRuntime({"n": 3}, functions=functions)
        form.add_validator("n", {"type": "custom", "functionName": "even"})
        self.assertEqual(len(form.field("n").validators()), 1)
        self.assertEqual(form.validate().kinds("n"), ["even"])


class TestAsyncValidation(unittest.IsolatedAsyncioTestCase):

    async def test_validate_async_adds_async_results(self):
        async def lookup(params):
            return {"available": False}

        functions = FunctionRegistry()
        functions.register_async_validator("uniqueUsername", AsyncValidatorSpec(
            run=lookup,
            params=lambda ctx, params: {"username": ctx.current_value},
            on_success=lambda result, ctx: None if result["available"] else "usernameTaken",
        ))
        form = FormRuntime({"username": "ada", "email": ""}, functions=functions)
        form.add_validator("email", "required")
        form.add_validator("username", {"type": "customAsync", "functionName": "uniqueUsername"})

        self.assertEqual(form.validate().kinds(), ["required"])
        result = await form.validate_async()
        self.assertEqual(result.kinds(), ["required", "usernameTaken"])

    async def test_async_condition_through_field(self):
        async def lookup(params, ctx):
            return True

        functions = FunctionRegistry()
        functions.register_async_function("lookup", lookup)
        form = FormRuntime({"username": "ada"}, functions=functions)
        cond = {"type": "async", "functionName": "lookup", "params": {"u": "fieldValue"}, "debounceMs": 0}
        handle = form.field("username")

        self.assertFalse(handle.evaluate(cond))
        await form.settle()
        self.assertTrue(handle.evaluate(cond))


class TestDerivations(unittest.TestCase):

    def test_total_updates_on_write(self):
        form = FormRuntime({"qty": 3, "price": 4})
        form.add_derivation({"target": "total", "expression": "(formValue.qty||0)*(formValue.price||0)"})
        self.assertEqual(form.get("total"), 12)
        result = form.set("qty", 5)
        self.assertEqual(result.applied, ["total"])
        self.assertEqual(form.get("total"), 20)

    def test_cycle_rejected(self):
        form = FormRuntime({})
        form.add_derivation({"target": "a", "expression": "formValue.c"})
        form.add_derivation({"target": "b", "expression": "formValue.a"})
        with self.assertRaises(DerivationCycleError):
            form.add_derivation({"target": "c", "expression": "formValue.b"})


class TestIsolation(unittest.TestCase):

    def test_instances_do_not_share_caches(self):
        first, second = FormRuntime({"accountType": "business"}), FormRuntime({"accountType": "personal"})
        self.assertIsNot(first.logic.compile(BUSINESS), second.logic.compile(BUSINESS))
        self.assertIsNot(first.scope.condition_cache, second.scope.condition_cache)
        self.assertTrue(first.field("x").evaluate(BUSINESS))
        self.assertFalse(second.field("x").evaluate(BUSINESS))

    def test_dispose(self):
        form = FormRuntime({"accountType": "business"})
        form.field("x").evaluate(BUSINESS)
        form.dispose()
        self.assertEqual(form.scope.stats()["logic_functions"], 0)


if __name__ == "__main__":
    unittest.main()
