#!/usr/bin/env python3
"""
Package import test: the public surface loads and the result types build.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

import formlogic


class TestPublicSurface(unittest.TestCase):

    def test_exports_resolve(self):
        for name in formlogic.__all__:
            with self.subTest(name=name):
                self.assertTrue(hasattr(formlogic, name))
        self.assertTrue(callable(formlogic.FormRuntime))

    def test_validation_error_defaults(self):
        err = formlogic.ValidationError("required")
        self.assertEqual(err.path, "")
        self.assertEqual(err.params, {})
        self.assertIsNot(err.params, formlogic.ValidationError("min").params)
        self.assertEqual(err.to_dict(), {"kind": "required", "field": "", "params": {}})

    def test_fresh_form_validates(self):
        self.assertTrue(formlogic.FormRuntime({"a": 1}).validate().valid)


if __name__ == "__main__":
    unittest.main()
