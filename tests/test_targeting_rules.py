import unittest

from jsonschema.exceptions import ValidationError

from src.feaclient import RuleTypeMismatchError, TargetingOperator, TargetingRule


class TestTargetingRules(unittest.TestCase):
    def test_simple(self):
        cases = [
            # attribute, operator, value, attributes, expected
            ("role", "EQUALS", "admin", {"role": "admin"}, True),
            ("role", "EQUALS", "admin", {"role": "user"}, False),
            ("sid", "EQUALS", 1, {"sid": 1}, True),
            ("sid", "EQUALS", 1, {"sid": 1.0}, False),
            ("sid", "EQUALS", 1, {"sid": True}, False),
            ("sid", "EQUALS", True, {"sid": 1}, False),
            ("sid", "EQUALS", True, {"sid": True}, True),
            ("sid", "EQUALS", 4.5, {"sid": 4.5}, True),
            ("sid", "EQUALS", "1", {"sid": 1}, False),
            ("tags", "EQUALS", ["a", "b"], {"tags": ["a", "b"]}, True),
            ("tags", "EQUALS", ["a", "b"], {"tags": ["b", "a"]}, False),
            ("role", "NOT_EQUALS", "admin", {"role": "user"}, True),
            ("role", "NOT_EQUALS", "admin", {"role": "admin"}, False),
            ("sid", "NOT_EQUALS", 1, {"sid": "1"}, True),
            ("email", "CONTAINS", "@example", {"email": "joe@example.com"}, True),
            ("email", "CONTAINS", "@other", {"email": "joe@example.com"}, False),
            ("permissions", "CONTAINS", "read", {"permissions": ["read", "write"]}, True),
            ("version", "CONTAINS", "2", {"version": 123}, True),
            ("enabled", "CONTAINS", "true", {"enabled": True}, True),
            ("email", "NOT_CONTAINS", "@other", {"email": "joe@example.com"}, True),
            ("email", "NOT_CONTAINS", "joe", {"email": "joe@example.com"}, False),
            ("email", "STARTS_WITH", "joe", {"email": "joe@example.com"}, True),
            ("email", "STARTS_WITH", "example", {"email": "joe@example.com"}, False),
            ("email", "ENDS_WITH", ".com", {"email": "joe@example.com"}, True),
            ("email", "ENDS_WITH", ".org", {"email": "joe@example.com"}, False),
            ("age", "GREATER_THAN", 18, {"age": 21}, True),
            ("age", "GREATER_THAN", 18, {"age": 18}, False),
            ("age", "GREATER_THAN", 18, {"age": 18.5}, True),
            ("age", "LESS_THAN", 18, {"age": 17}, True),
            ("age", "LESS_THAN", 18, {"age": 18}, False),
            ("age", "LESS_THAN", -8, {"age": -9}, True),
            ("country", "IN_LIST", ["NZ", "AU"], {"country": "NZ"}, True),
            ("country", "IN_LIST", ["NZ", "AU"], {"country": "US"}, False),
            ("sid", "IN_LIST", [5, 6], {"sid": 5}, True),
            ("sid", "IN_LIST", [5, 6], {"sid": 5.0}, False),
            ("sid", "IN_LIST", [1, 2], {"sid": True}, False),
            ("country", "NOT_IN_LIST", ["NZ", "AU"], {"country": "US"}, True),
            ("country", "NOT_IN_LIST", ["NZ", "AU"], {"country": "AU"}, False),
        ]
        for attribute, operator, value, attributes, expected in cases:
            with self.subTest(f"{attribute} {operator} {value!r} on {attributes}"):
                rule = TargetingRule(attribute, operator, value)
                self.assertIs(rule.evaluate(attributes), expected)

    def test_missing_attribute_never_matches(self):
        for op in TargetingOperator:
            value = [1] if op in {TargetingOperator.IN_LIST, TargetingOperator.NOT_IN_LIST} else 1
            rule = TargetingRule("missing", op, value)
            with self.subTest(op.name):
                self.assertFalse(rule.evaluate({"other": 1}))
                self.assertFalse(rule.evaluate({"missing": None}))
                self.assertFalse(rule.evaluate({"missing": None}, strict=True))

    def test_incompatible_types(self):
        cases = [
            ("GREATER_THAN", 5, "10"),
            ("LESS_THAN", 5, "1"),
            ("GREATER_THAN", 5, True),
            ("LESS_THAN", "5", 1),
            ("IN_LIST", "NZ", "NZ"),
            ("NOT_IN_LIST", "NZ", "AU"),
        ]
        for operator, value, actual in cases:
            with self.subTest(f"{operator} {value!r} on {actual!r}"):
                rule = TargetingRule("a", operator, value)
                self.assertFalse(rule.evaluate({"a": actual}))
                with self.assertRaises(RuleTypeMismatchError):
                    rule.evaluate({"a": actual}, strict=True)
                # RuleTypeMismatchError is also a TypeError.
                with self.assertRaises(TypeError):
                    rule.evaluate({"a": actual}, strict=True)

    def test_deterministic(self):
        rule = TargetingRule("age", TargetingOperator.GREATER_THAN, 30)
        attributes = {"age": 31}
        results = {rule.evaluate(attributes) for _ in range(10)}
        self.assertSetEqual(results, {True})
        self.assertDictEqual(attributes, {"age": 31})

    def test_immutable(self):
        rule = TargetingRule("role", "equals", "admin", metadata={"owner": "growth"})
        self.assertIs(rule.operator, TargetingOperator.EQUALS)
        with self.assertRaises(AttributeError):
            rule.value = "user"  # type: ignore[misc]
        with self.assertRaises(TypeError):
            rule.metadata["owner"] = "other"  # type: ignore[index]

        values = ["NZ", "AU"]
        rule = TargetingRule.in_list("country", values)
        values.append("US")
        self.assertFalse(rule.evaluate({"country": "US"}))

    def test_invalid_rules(self):
        with self.assertRaisesRegex(ValueError, "non-empty string"):
            TargetingRule("", "EQUALS", 1)
        with self.assertRaisesRegex(ValueError, "unknown operator"):
            TargetingRule("a", "MATCHES", 1)
        with self.assertRaises(TypeError):
            TargetingRule("a", 5, 1)  # type: ignore[arg-type]
        with self.assertRaises(TypeError):
            TargetingRule("a", "EQUALS", {"nested": "dict"})  # type: ignore[arg-type]

    def test_builders(self):
        self.assertEqual(TargetingRule.equals("a", 1), TargetingRule("a", TargetingOperator.EQUALS, 1))
        self.assertEqual(TargetingRule.not_equals("a", 1), TargetingRule("a", TargetingOperator.NOT_EQUALS, 1))
        self.assertEqual(TargetingRule.contains("a", "x"), TargetingRule("a", TargetingOperator.CONTAINS, "x"))
        self.assertEqual(TargetingRule.in_list("a", [1, 2]), TargetingRule("a", TargetingOperator.IN_LIST, [1, 2]))
        self.assertNotEqual(TargetingRule.equals("a", 1), TargetingRule.equals("a", True))

    def test_from_dict(self):
        rule = TargetingRule.from_dict({"attribute": "plan", "operator": "IN_LIST", "value": ["pro", "team"], "metadata": {"note": "paid"}})
        self.assertEqual(rule, TargetingRule("plan", TargetingOperator.IN_LIST, ["pro", "team"], metadata={"note": "paid"}))
        self.assertDictEqual(
            rule.to_dict(),
            {"attribute": "plan", "operator": "IN_LIST", "value": ["pro", "team"], "metadata": {"note": "paid"}},
        )

        invalid = [
            {"attribute": "plan", "operator": "IN_LIST"},
            {"attribute": "", "operator": "EQUALS", "value": 1},
            {"attribute": "plan", "operator": "MATCHES", "value": 1},
            {"attribute": "plan", "operator": "EQUALS", "value": {"a": 1}},
            {"attribute": "plan", "operator": "EQUALS", "value": 1, "extra": True},
        ]
        for d in invalid:
            with self.subTest(d):
                with self.assertRaises(ValidationError):
                    TargetingRule.from_dict(d)
