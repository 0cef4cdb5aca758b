"""Tests for keyword extraction."""

import re

import pytest
from hypothesis import given
from hypothesis import strategies as st

from rssflow.pipeline.keywords import STOP_WORDS, count_tokens, extract_keywords, normalize


def test_cats_scenario():
    """Titles from two feeds rank ties by first occurrence."""
    texts = ["Cats are great", "Dogs are great too", "Cats win again"]

    assert count_tokens(texts) == {"cats": 2, "great": 2, "dogs": 1, "too": 1, "win": 1, "again": 1}
    assert extract_keywords(texts) == ["cats", "great", "dogs", "too", "win", "again"]


def test_punctuation_and_case_are_stripped():
    texts = ["Breaking: MARKETS rally!", "markets, markets... (again)"]

    assert extract_keywords(texts) == ["markets", "breaking", "rally", "again"]


def test_tokens_that_strip_to_empty_are_dropped():
    assert extract_keywords(["--- !!! ???", "…"]) == []


def test_stop_words_are_dropped():
    assert extract_keywords(["The cat and the dog said it was over"]) == ["cat", "dog"]


def test_at_most_ten_keywords():
    texts = [" ".join(f"word{i}" for i in range(25))]

    keywords = extract_keywords(texts)

    assert len(keywords) == 10
    # All counts tie at 1, so the first ten in order of appearance win
    assert keywords == [f"word{i}" for i in range(10)]


def test_empty_input():
    assert extract_keywords([]) == []
    assert extract_keywords([""]) == []


def test_texts_are_joined_with_a_space():
    """The last word of one title never merges with the first of the next."""
    assert extract_keywords(["cats", "dogs"]) == ["cats", "dogs"]


def test_normalize():
    assert normalize("Hello,") == "hello"
    assert normalize("U.S.") == "us"
    assert normalize("café") == "caf"


# ==============================================================================
# Properties
# ==============================================================================

words = st.sampled_from(sorted(STOP_WORDS)) | st.text(
    alphabet="abcXYZ019,.!-", min_size=1, max_size=8
)
titles = st.lists(st.lists(words, max_size=10).map(" ".join), max_size=8)


@pytest.mark.property
@given(texts=titles)
def test_keywords_are_clean(texts):
    """Property: at most 10 tokens, lowercase [a-z0-9]+, no stop words, no repeats."""
    keywords = extract_keywords(texts)

    assert len(keywords) <= 10
    assert len(set(keywords)) == len(keywords)
    for word in keywords:
        assert re.fullmatch(r"[a-z0-9]+", word)
        assert word not in STOP_WORDS


@pytest.mark.property
@given(texts=titles)
def test_keywords_sorted_by_non_increasing_frequency(texts):
    """Property: frequencies never increase along the result, and every token occurs."""
    counts = count_tokens(texts)
    keywords = extract_keywords(texts)

    frequencies = [counts[word] for word in keywords]
    assert all(f > 0 for f in frequencies)
    assert frequencies == sorted(frequencies, reverse=True)


@pytest.mark.property
@given(texts=titles)
def test_no_omitted_token_outranks_a_returned_one(texts):
    """Property: anything left out is at most as frequent as the last keyword."""
    counts = count_tokens(texts)
    keywords = extract_keywords(texts)

    if len(keywords) < 10:
        assert set(keywords) == set(counts)
    elif keywords:
        floor = counts[keywords[-1]]
        assert all(n <= floor for word, n in counts.items() if word not in keywords)


@pytest.mark.property
@given(texts=titles)
def test_extraction_is_deterministic(texts):
    assert extract_keywords(texts) == extract_keywords(list(texts))
