"""Tests for payload encoding and the input hashes replay compares."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from rssflow.core.serialization import decode, encode, payload_hash


def test_decode_none_is_none():
    assert decode(None) is None
    assert decode(encode({"a": [1, 2]})) == {"a": [1, 2]}


def test_set_order_does_not_change_hash():
    # 0 and 8 share a slot in a small set table, so insertion order decides iteration order
    first, second = {0, 8}, {8, 0}
    assert list(first) != list(second)
    assert encode(first) != encode(second)

    assert payload_hash(first) == payload_hash(second)
    assert payload_hash(frozenset([0, 8])) == payload_hash(frozenset([8, 0]))


def test_nested_sets_are_normalized():
    first = (["feeds", {0, 8}], {"seen": frozenset([0, 8])})
    second = (["feeds", {8, 0}], {"seen": frozenset([8, 0])})

    assert payload_hash(first) == payload_hash(second)


def test_hash_still_tells_payloads_apart():
    assert payload_hash((1, 2)) != payload_hash((2, 1))
    assert payload_hash([0, 8]) != payload_hash({0, 8})
    assert payload_hash({0, 8}) != payload_hash(frozenset([0, 8]))
    assert payload_hash("FETCHING") != payload_hash("EXTRACTING")


@pytest.mark.property
@given(st.lists(st.text(max_size=8), max_size=20))
def test_set_hash_ignores_insertion_order(words):
    assert payload_hash(set(words)) == payload_hash(set(reversed(words)))
