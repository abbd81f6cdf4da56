#!/usr/bin/env python3
"""
Reactive substrate tests: cells, derived values, untracked reads, debounce
and switch-to-latest.
"""

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from formlogic.reactive import AsyncioScheduler, Cell, Derived, debounce, switch_latest, untracked


class TestCellsAndDerived(unittest.TestCase):

    def test_write_reports_change(self):
        cell = Cell(1)
        self.assertFalse(cell.write(1))
        self.assertTrue(cell.write(2))
        self.assertEqual(cell.version, 1)

    def test_derived_recomputes_lazily(self):
        a, b = Cell(1), Cell(2)
        calls = []

        def compute():
            calls.append(1)
            return a.read() + b.read()

        total = Derived(compute)
        self.assertEqual(total.read(), 3)
        self.assertEqual(total.read(), 3)
        self.assertEqual(len(calls), 1)
        a.write(10)
        self.assertEqual(total.read(), 12)
        self.assertEqual(len(calls), 2)

    def test_untracked_reads_register_nothing(self):
        a, b = Cell(1), Cell(2)
        total = Derived(lambda: a.read() + untracked(b.read))
        self.assertEqual(total.read(), 3)
        b.write(5)
        self.assertEqual(total.read(), 3)
        a.write(2)
        self.assertEqual(total.read(), 7)

    def test_subscribers_hear_derived_changes(self):
        a = Cell(1)
        parity = Derived(lambda: a.read() % 2)
        parity.read()
        seen = []
        parity.subscribe(seen.append)
        a.write(3)
        a.write(4)
        self.assertEqual(seen, [0])

    def test_broken_subscriber_does_not_stop_others(self):
        cell = Cell(0)
        seen = []
        cell.subscribe(lambda v: 1 / 0)
        cell.subscribe(seen.append)
        with self.assertLogs("formlogic.reactive", level="ERROR"):
            cell.write(1)
        self.assertEqual(seen, [1])

    def test_dependencies_follow_branches(self):
        flag, left, right = Cell(True), Cell("L"), Cell("R")
        pick = Derived(lambda: left.read() if flag.read() else right.read())
        self.assertEqual(pick.read(), "L")
        flag.write(False)
        self.assertEqual(pick.read(), "R")
        self.assertNotIn(pick, left._observers)


class TestScheduling(unittest.IsolatedAsyncioTestCase):

    async def test_debounce_publishes_last_value(self):
        scheduler = AsyncioScheduler()
        source = Cell(0)
        out = debounce(source, 20, scheduler)
        seen = []
        out.subscribe(seen.append)
        for value in (1, 2, 3):
            source.write(value)
        self.assertIsNone(out.peek())
        await scheduler.wait_idle()
        self.assertEqual(seen, [3])

    async def test_switch_latest_drops_superseded(self):
        scheduler = AsyncioScheduler()
        source = Cell(None)
        gates = {"a": asyncio.Event(), "b": asyncio.Event()}
        results, errors = [], []

        async def job(value):
            await gates[value].wait()
            return value.upper()

        switch_latest(source, job, lambda v, r: results.append(r), lambda v, e: errors.append(e), scheduler)
        source.write("a")
        await asyncio.sleep(0)
        source.write("b")
        gates["a"].set()
        await asyncio.sleep(0.01)
        self.assertEqual(results, [])
        gates["b"].set()
        await scheduler.wait_idle()
        self.assertEqual(results, ["B"])
        self.assertEqual(errors, [])

    async def test_cancel_all(self):
        scheduler = AsyncioScheduler()
        fired = []
        scheduler.call_later(0.05, lambda: fired.append(1))
        self.assertTrue(scheduler.busy)
        scheduler.cancel_all()
        self.assertFalse(scheduler.busy)
        await asyncio.sleep(0.08)
        self.assertEqual(fired, [])


class TestWithoutLoop(unittest.TestCase):

    def test_timers_run_at_once(self):
        scheduler = AsyncioScheduler()
        source = Cell(0)
        out = debounce(source, 500, scheduler)
        source.write(7)
        self.assertEqual(out.peek(), 7)

    def test_jobs_are_refused(self):
        scheduler = AsyncioScheduler()
        source = Cell(None)
        errors = []

        async def job(value):
            return value

        switch_latest(source, job, lambda v, r: None, lambda v, e: errors.append(e), scheduler)
        source.write("x")
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RuntimeError)


if __name__ == "__main__":
    unittest.main()
