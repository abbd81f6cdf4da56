#!/usr/bin/env python3
"""
Remote and async condition tests: pending values, TTL caching, request
supersession and failure fallbacks.
"""

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic.cache_scope import CacheScope
from formlogic.conditions import RequestSpec
from formlogic.context import context_for_path
from formlogic.errors import InvalidConditionShapeError, ResolutionFailure
from formlogic.logic_factory import LogicFactory
from formlogic.registry import FunctionRegistry
from formlogic.transport import resolve_request
from formlogic.ttl_cache import RemoteConditionCache
from formlogic.values import UNDEFINED, get_nested_value, parse_path


class MutableField:
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


class FakeTransport:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.requests = []

    async def perform_request(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.payload


def name_check(**extra):
    cond = {
        "type": "remote",
        "request": {"url": "/api/check", "queryParams": {"name": "formValue.name"}},
        "responseExpression": "response.available",
        "debounceMs": 0,
    }
    cond.update(extra)
    return cond


class TestTtlCache(unittest.TestCase):

    def setUp(self):
        self.now = 0.0
        self.cache = RemoteConditionCache(clock=lambda: self.now)

    def test_expiry(self):
        self.cache.set("k", True, 1000)
        self.now = 999
        self.assertTrue(self.cache.get("k"))
        self.now = 1001
        self.assertIsNone(self.cache.get("k"))
        self.assertNotIn("k", self.cache)
        self.cache.set("k", False, 1000)
        self.assertIs(self.cache.get("k"), False)

    def test_zero_duration_disables_caching(self):
        self.cache.set("k", True, 0)
        self.assertIsNone(self.cache.get("k"))

    def test_bounded(self):
        cache = RemoteConditionCache(clock=lambda: 0.0, max_entries=2)
        cache.set("a", True, 1000)
        cache.set("b", True, 1000)
        cache.set("c", True, 1000)
        self.assertIsNone(cache.get("a"))
        self.assertEqual(len(cache), 2)


class TestResolveRequest(unittest.TestCase):

    def test_query_params_are_evaluated(self):
        spec = RequestSpec(url="/api/check", query_params={"name": "formValue.name", "skip": "formValue.none"})
        resolved = resolve_request(spec, context_for_path({"name": "test"}, "name"))
        self.assertEqual(resolved, {"url": "/api/check?name=test", "method": UNDEFINED})

    def test_body_expressions(self):
        spec = RequestSpec(
            url="/api/check", method="POST",
            body={"user": "formValue.name", "fixed": 1}, evaluate_body_expressions=True,
        )
        resolved = resolve_request(spec, context_for_path({"name": "ada"}, "name"))
        self.assertEqual(resolved["body"], {"user": "ada", "fixed": 1})
        self.assertEqual(resolved["method"], "POST")


class TestRemoteConditions(unittest.IsolatedAsyncioTestCase):

    async def test_pending_then_resolve(self):
        transport = FakeTransport({"available": True})
        factory = LogicFactory(transport=transport)
        fn = factory.compile(name_check())
        field = MutableField({"name": "test"}, "name")

        self.assertFalse(fn(field))
        await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))
        self.assertEqual(len(transport.requests), 1)
        self.assertEqual(transport.requests[0]["url"], "/api/check?name=test")

    async def test_identical_requests_share_cache_entry(self):
        transport = FakeTransport({"available": True})
        factory = LogicFactory(transport=transport)
        fn = factory.compile(name_check())
        fn(MutableField({"name": "test"}, "name"))
        await factory.scope.scheduler.wait_idle()

        # Another field issuing the same request answers synchronously
        self.assertTrue(fn(MutableField({"name": "test"}, "nickname")))
        self.assertEqual(len(transport.requests), 1)

    async def test_failure_falls_back_to_pending_value(self):
        transport = FakeTransport(error=ResolutionFailure("GET /api/check", detail=500))
        factory = LogicFactory(transport=transport)
        fn = factory.compile(name_check(pendingValue=True))
        field = MutableField({"name": "test"}, "name")

        with self.assertLogs("formlogic.remote", level="WARNING"):
            self.assertTrue(fn(field))
            await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))
        self.assertEqual(len(factory.scope.condition_cache), 0)

    async def test_no_transport(self):
        factory = LogicFactory()
        fn = factory.compile(name_check())
        field = MutableField({"name": "test"}, "name")
        with self.assertLogs("formlogic.remote", level="WARNING"):
            fn(field)
            await factory.scope.scheduler.wait_idle()
        self.assertFalse(fn(field))

    async def test_value_change_dispatches_again(self):
        transport = FakeTransport({"available": False})
        factory = LogicFactory(transport=transport)
        fn = factory.compile(name_check(pendingValue=True))
        field = MutableField({"name": "a"}, "name")
        fn(field)
        await factory.scope.scheduler.wait_idle()
        self.assertFalse(fn(field))

        field.root = {"name": "b"}
        fn(field)
        await factory.scope.scheduler.wait_idle()
        self.assertEqual([r["url"] for r in transport.requests], ["/api/check?name=a", "/api/check?name=b"])

    async def test_debounce_coalesces_typing(self):
        transport = FakeTransport({"available": True})
        factory = LogicFactory(transport=transport)
        fn = factory.compile(name_check(debounceMs=30))
        field = MutableField({"name": ""}, "name")
        for text in ("j", "jo", "joe"):
            field.root = {"name": text}
            fn(field)
            await asyncio.sleep(0)
        await factory.scope.scheduler.wait_idle()
        self.assertEqual([r["url"] for r in transport.requests], ["/api/check?name=joe"])

    async def test_nested_remote_rejected_at_compile(self):
        factory = LogicFactory()
        with self.assertRaises(InvalidConditionShapeError):
            factory.compile({"type": "or", "conditions": [name_check()]})


class TestAsyncConditions(unittest.IsolatedAsyncioTestCase):

    async def test_pending_then_resolve(self):
        registry = FunctionRegistry()

        async def is_available(params, ctx):
            return params["q"] == "free"

        registry.register_async_function("isAvailable", is_available)
        factory = LogicFactory(registry=registry)
        fn = factory.compile({
            "type": "async", "functionName": "isAvailable",
            "params": {"q": "formValue.username"}, "debounceMs": 0,
        })
        field = MutableField({"username": "free"}, "username")

        self.assertFalse(fn(field))
        await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))

    async def test_switch_to_latest(self):
        registry = FunctionRegistry()
        gates = {"a": asyncio.Event(), "b": asyncio.Event()}
        started = []

        async def lookup(params, ctx):
            started.append(params["q"])
            await gates[params["q"]].wait()
            return True

        registry.register_async_function("lookup", lookup)
        factory = LogicFactory(CacheScope(), registry)
        fn = factory.compile({"type": "async", "functionName": "lookup", "params": {"q": "formValue.q"}, "debounceMs": 0})
        field = MutableField({"q": "a"}, "q")

        self.assertFalse(fn(field))
        await asyncio.sleep(0.05)
        field.root = {"q": "b"}
        self.assertFalse(fn(field))
        await asyncio.sleep(0.05)
        self.assertEqual(started, ["a", "b"])

        # The superseded lookup finishes first; its result is dropped
        gates["a"].set()
        await asyncio.sleep(0.05)
        self.assertFalse(fn(field))
        self.assertEqual(len(factory.scope.condition_cache), 0)

        gates["b"].set()
        await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))
        self.assertEqual(len(factory.scope.condition_cache), 1)

    async def test_unknown_async_function_falls_back(self):
        factory = LogicFactory()
        fn = factory.compile({"type": "async", "functionName": "ghost", "pendingValue": True, "debounceMs": 0})
        field = MutableField({}, "x")
        with self.assertLogs("formlogic.remote", level="WARNING"):
            fn(field)
            await factory.scope.scheduler.wait_idle()
        self.assertTrue(fn(field))


class TestWithoutEventLoop(unittest.TestCase):

    def test_async_work_fails_to_pending_value(self):
        registry = FunctionRegistry()

        async def never(params, ctx):
            return True

        registry.register_async_function("never", never)
        factory = LogicFactory(registry=registry)
        fn = factory.compile({"type": "async", "functionName": "never", "pendingValue": True, "debounceMs": 0})
        with self.assertLogs("formlogic.remote", level="WARNING"):
            self.assertTrue(fn(MutableField({}, "x")))


if __name__ == "__main__":
    unittest.main()
