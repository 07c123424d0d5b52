# LexicalAnalyzer のテスト

import pytest

from src.search.lexical import LexicalAnalyzer


@pytest.fixture
def analyzer() -> LexicalAnalyzer:
    return LexicalAnalyzer()


class TestNormalization:
    """正規化・トークン分割のテスト"""

    def test_nfkc_and_lowercase(self, analyzer):
        """全角英数字は半角に、英字は小文字に揃える"""
        assert analyzer.normalize("ＲＥＦＵＮＤ Agent") == "refund agent"

    def test_none_and_empty(self, analyzer):
        assert analyzer.normalize(None) == ""
        assert analyzer.tokenize("") == []

    def test_punctuation_is_dropped(self, analyzer):
        assert analyzer.tokenize("refund, billing & disputes!") == ["refund", "billing", "disputes"]

    def test_document_text_joins_name_and_frontmatter(self, analyzer):
        assert analyzer.document_text("Refund Bot", "Handles refunds") == "refund bot handles refunds"


class TestTextHash:
    """text_hash() のテスト"""

    def test_hash_ignores_case_and_punctuation(self, analyzer):
        """正規化後が同じならハッシュも同じ（再計算不要）"""
        first = analyzer.text_hash("Refund Bot", "Handles refunds.")
        second = analyzer.text_hash("refund bot", "handles   REFUNDS")

        assert first == second

    def test_hash_changes_with_content(self, analyzer):
        assert analyzer.text_hash("Refund Bot", "a") != analyzer.text_hash("Refund Bot", "b")

    def test_hash_is_sha256_hex(self, analyzer):
        assert len(analyzer.text_hash("x", None)) == 64


class TestQuery:
    """クエリ変換のテスト"""

    def test_lexical_vector_counts_tokens(self, analyzer):
        assert analyzer.lexical_vector("Refund", "refund billing") == {"refund": 2, "billing": 1}

    def test_query_terms_deduplicated_in_order(self, analyzer):
        assert analyzer.query_terms("refund Agent refund") == ["refund", "agent"]

    def test_tsquery_text_is_or_joined(self, analyzer):
        assert analyzer.tsquery_text("refund agent") == "refund | agent"

    def test_tsquery_text_strips_operators(self, analyzer):
        """演算子記号はトークンに含まれない"""
        assert analyzer.tsquery_text("refund & !agent | (billing)") == "refund | agent | billing"

    def test_tsquery_text_empty_query(self, analyzer):
        assert analyzer.tsquery_text("  !!  ") == ""
