from chatrecall.memory.text import normalize_keywords, similarity, tokenize


def test_tokenize_strips_punctuation_and_lowercases():
    assert tokenize("Hello, World!") == {"hello", "world"}
    assert tokenize("snake_case value") == {"snake", "case", "value"}


def test_tokenize_empty_inputs():
    assert tokenize("") == set()
    assert tokenize(None) == set()
    assert tokenize("  ...  ") == set()


def test_tokenize_adds_bigrams_for_dense_scripts():
    tokens = tokenize("我爱苹果")
    assert {"我爱", "爱苹", "苹果"} <= tokens
    assert "我爱苹果" in tokens


def test_tokenize_bigrams_span_words_of_dense_text():
    tokens = tokenize("苹果 香蕉")
    assert {"苹果", "香蕉", "果香"} <= tokens


def test_similarity_is_jaccard():
    assert similarity({"a", "b"}, {"b", "c"}) == 1 / 3
    assert similarity({"a"}, {"a"}) == 1.0
    assert similarity(set(), {"a"}) == 0.0
    assert similarity({"a"}, set()) == 0.0


def test_similarity_of_single_keyword_against_message():
    score = similarity(tokenize("bananas"), tokenize("Buying bananas today"))
    assert score == 1 / 3
    assert score >= 0.3


def test_normalize_keywords_trims_lowercases_and_dedupes():
    assert normalize_keywords([" Apple ", "apple", "", None, "BANANA", "   "]) == ["apple", "banana"]


def test_normalize_keywords_edge_inputs():
    assert normalize_keywords(None) == []
    assert normalize_keywords([]) == []
    assert normalize_keywords("Solo") == ["solo"]
