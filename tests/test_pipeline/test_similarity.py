"""
Tests for text normalisation and bigram similarity.
"""

from bankrecon.pipeline.similarity import bigram_similarity, bigrams, normalize_reference, normalize_text


class TestNormalize:

    def test_reference(self):
        assert normalize_reference("inv/2025-007") == "INV2025007"
        assert normalize_reference(None) == ""

    def test_text(self):
        assert normalize_text("  Najam   Ureda ") == "najam ureda"


class TestBigramSimilarity:

    def test_identical(self):
        assert bigram_similarity("Uplata po racunu", "Uplata po racunu") == 100.0

    def test_case_and_spacing_ignored(self):
        assert bigram_similarity("NAJAM  ureda", "najam ureda") == 100.0

    def test_symmetric(self):
        a, b = "Placanje racuna 42", "Placanje po racunu 42"
        assert bigram_similarity(a, b) == bigram_similarity(b, a)

    def test_both_empty(self):
        assert bigram_similarity("", None) == 100.0

    def test_one_empty(self):
        assert bigram_similarity("rent", "") == 0.0

    def test_disjoint(self):
        assert bigram_similarity("abc", "xyz") == 0.0

    def test_single_character(self):
        assert bigrams("a") == {"a"}
        assert bigram_similarity("a", "a") == 100.0

    def test_partial(self):
        score = bigram_similarity("najam ureda", "najam ureda sijecanj")
        assert 0.0 < score < 100.0
