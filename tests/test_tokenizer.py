import pytest
from src.minisearch.tokenizer import tokenize, calculate_term_frequency, normalize_query, extract_bigrams


class TestTokenize:
    def test_strips_punctuation_urls_and_stop_words(self):
        assert tokenize("The Quick, Brown Fox! http://x.com") == ["quick", "brown", "fox"]

    def test_strips_html_tags(self):
        assert tokenize("<p>Search <b>engines</b> rank pages</p>") == ["search", "engines", "rank", "pages"]

    def test_drops_short_and_numeric_tokens(self):
        assert tokenize("a 42 x python3 2024 go") == ["python3", "go"]

    def test_empty_input(self):
        assert tokenize("") == []
        assert tokenize(None) == []
        assert tokenize("the and of") == []


def test_term_frequency_positions():
    tokens = ["crawler", "index", "crawler", "rank", "crawler"]
    tf = calculate_term_frequency(tokens)
    assert tf["crawler"] == {"count": 3, "positions": [0, 2, 4]}
    assert tf["index"] == {"count": 1, "positions": [1]}
    for entry in tf.values():
        assert len(entry["positions"]) == entry["count"]


def test_normalize_query():
    assert normalize_query("  Hello   World \n") == "hello world"
    assert normalize_query("") == ""


def test_extract_bigrams():
    assert extract_bigrams(["web", "search", "engine"]) == [("web", "search", 0), ("search", "engine", 1)]
    assert extract_bigrams(["single"]) == []
