"""Unit tests for merge.py - deep merge over JSON value trees."""

from conductor.merge import ValueKind, deep_merge, kind_of, strip_dangerous_keys


class TestKindOf:
    """Test value classification."""

    def test_classifies_values(self):
        assert kind_of({"a": 1}) is ValueKind.OBJECT
        assert kind_of([1, 2]) is ValueKind.ARRAY
        assert kind_of("text") is ValueKind.SCALAR
        assert kind_of(None) is ValueKind.SCALAR


class TestDeepMerge:
    """Test recursive merge semantics."""

    def test_nested_objects_merge_recursively(self):
        """Keys present only in the base survive a nested merge."""
        base = {"db": {"host": "localhost", "port": 5432}}
        override = {"db": {"port": 6543}}

        assert deep_merge(base, override) == {"db": {"host": "localhost", "port": 6543}}

    def test_arrays_are_replaced_not_concatenated(self):
        assert deep_merge({"tags": ["a", "b"]}, {"tags": ["c"]}) == {"tags": ["c"]}

    def test_scalar_overrides_object_and_back(self):
        assert deep_merge({"x": {"y": 1}}, {"x": 5}) == {"x": 5}
        assert deep_merge({"x": 5}, {"x": {"y": 1}}) == {"x": {"y": 1}}

    def test_inputs_are_not_mutated(self):
        base = {"a": {"b": [1]}}
        override = {"a": {"c": 2}}

        merged = deep_merge(base, override)
        merged["a"]["b"].append(99)

        assert base == {"a": {"b": [1]}}
        assert override == {"a": {"c": 2}}

    def test_dangerous_keys_are_dropped(self):
        """Dangerous keys are removed from both sides at any depth."""
        base = {"__proto__": {"polluted": True}, "safe": 1}
        override = {"constructor": 1, "nested": {"prototype": 2, "ok": 3}}

        assert deep_merge(base, override) == {"safe": 1, "nested": {"ok": 3}}


class TestStripDangerousKeys:
    """Test recursive removal of dangerous keys."""

    def test_strips_inside_arrays(self):
        value = [{"__proto__": 1, "keep": 2}, "plain"]

        assert strip_dangerous_keys(value) == [{"keep": 2}, "plain"]

    def test_scalars_pass_through(self):
        assert strip_dangerous_keys(42) == 42
