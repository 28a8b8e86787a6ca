"""Tests for the path-addressed record tree."""

from __future__ import annotations

import pytest

from tree_store import InvalidPathError, join, normalize, push_key


class TestPaths:
    def test_normalize_strips_slashes(self):
        assert normalize("/classes/abc/") == "classes/abc"

    def test_join_skips_empty_parts(self):
        assert join("", "users", "/u1/") == "users/u1"

    @pytest.mark.parametrize("bad", ["a.b", "a#b", "a$b", "a[0]"])
    def test_forbidden_characters(self, bad):
        with pytest.raises(InvalidPathError):
            normalize(f"users/{bad}")

    def test_push_keys_sort_in_creation_order(self):
        keys = [push_key() for _ in range(50)]
        assert keys == sorted(keys)
        assert len(set(keys)) == 50


class TestReadWrite:
    def test_set_and_get_nested(self, tree):
        tree.set("demo/a", {"x": 1, "y": {"z": "نص"}})
        assert tree.get("demo/a") == {"x": 1, "y": {"z": "نص"}}
        assert tree.get("demo/a/y/z") == "نص"

    def test_missing_path_is_none(self, tree):
        assert tree.get("nothing/here") is None
        assert not tree.exists("nothing/here")

    def test_lists_round_trip_as_indexed_children(self, tree):
        tree.set("demo/list", ["a", "b", "c"])
        assert tree.get("demo/list") == ["a", "b", "c"]
        assert tree.get("demo/list/1") == "b"

    def test_set_replaces_subtree(self, tree):
        tree.set("demo/node", {"old": 1, "keep": 2})
        tree.set("demo/node", {"new": 3})
        assert tree.get("demo/node") == {"new": 3}

    def test_none_and_empty_containers_delete(self, tree):
        tree.set("demo/a", 1)
        tree.set("demo/b", 2)
        tree.set("demo/a", None)
        tree.set("demo/b", {})
        assert tree.get("demo") is None

    def test_writing_below_a_leaf_replaces_it(self, tree):
        tree.set("demo/leaf", "value")
        tree.set("demo/leaf/child", 1)
        assert tree.get("demo/leaf") == {"child": 1}

    def test_children_in_key_order(self, tree):
        tree.set("demo/b", {"n": 2})
        tree.set("demo/a", {"n": 1})
        assert [c["n"] for c in tree.children("demo")] == [1, 2]

    def test_push_generates_child(self, tree):
        key = tree.push("demo/feed", {"text": "hi"})
        assert tree.get(f"demo/feed/{key}") == {"text": "hi"}

    def test_remove(self, tree):
        tree.set("demo/x", {"a": 1})
        tree.remove("demo/x")
        assert not tree.exists("demo/x")


class TestMultiPathUpdate:
    def test_update_writes_every_path(self, tree):
        tree.update("", {"demo/a": 1, "demo/b/c": "x"})
        assert tree.get("demo") == {"a": 1, "b": {"c": "x"}}

    def test_update_relative_to_base(self, tree):
        tree.set("demo/rec", {"a": 1, "b": 2})
        tree.update("demo/rec", {"b": 3, "c": 4})
        assert tree.get("demo/rec") == {"a": 1, "b": 3, "c": 4}

    def test_update_deletes_with_none(self, tree):
        tree.set("demo/rec", {"a": 1, "b": 2})
        tree.update("demo/rec", {"a": None})
        assert tree.get("demo/rec") == {"b": 2}

    def test_overlapping_paths_rejected(self, tree):
        tree.set("demo/rec", {"a": 1})
        with pytest.raises(InvalidPathError):
            tree.update("", {"demo/rec": {"a": 2}, "demo/rec/b": 3})
        assert tree.get("demo/rec") == {"a": 1}

    def test_overlap_detected_across_sorting_siblings(self, tree):
        # "demo/rec!x" and "demo/rec-x" sort between "demo/rec" and "demo/rec/c"
        tree.set("demo/rec", {"a": 1})
        with pytest.raises(InvalidPathError):
            tree.update("", {"demo/rec": {"a": 2}, "demo/rec!x": 1, "demo/rec-x": 1, "demo/rec/c": 3})
        assert tree.get("demo/rec") == {"a": 1}
        assert not tree.exists("demo/rec!x")

    def test_same_path_spelled_twice_rejected(self, tree):
        with pytest.raises(InvalidPathError):
            tree.update("demo", {"rec/a": 1, "/rec/a/": 2})

    def test_prefix_siblings_are_not_overlaps(self, tree):
        tree.update("demo", {"rec": {"a": 1}, "record": {"b": 2}})
        assert tree.get("demo") == {"rec": {"a": 1}, "record": {"b": 2}}

    def test_bad_key_leaves_store_untouched(self, tree):
        tree.set("demo/rec", {"a": 1})
        with pytest.raises(InvalidPathError):
            tree.update("", {"demo/rec/a": 2, "demo/other": {"bad.key": 1}})
        assert tree.get("demo/rec") == {"a": 1}
        assert tree.get("demo/other") is None


class TestTransaction:
    def test_read_modify_write(self, tree):
        tree.set("demo/counter", 1)
        assert tree.transaction("demo/counter", lambda v: (v or 0) + 1) == 2
        assert tree.get("demo/counter") == 2

    def test_transaction_on_missing_node(self, tree):
        tree.transaction("demo/list", lambda v: (v or []) + ["x"])
        assert tree.get("demo/list") == ["x"]

    def test_exception_rolls_back(self, tree):
        tree.set("demo/value", "kept")

        def boom(_):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            tree.transaction("demo/value", boom)
        assert tree.get("demo/value") == "kept"
