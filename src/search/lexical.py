# 語彙インデックス用のテキスト正規化
"""
語彙（全文検索）表現の生成

agents.tsv は to_tsvector(text_search_config, document_text) で生成する。
document_text と search_text_hash は同じ正規化結果から作るため、
ハッシュが一致する限り tsv とエンベディングを再計算する必要はない。
"""

import hashlib
import re
import unicodedata
from collections import Counter
from typing import Dict, List, Optional


_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class LexicalAnalyzer:
    """名前と frontmatter から語彙表現を作る

    正規化: NFKC → 小文字化 → 英数字・文字の連続でトークン分割（空トークンは除外）
    """

    def normalize(self, text: Optional[str]) -> str:
        if not text:
            return ""
        return unicodedata.normalize("NFKC", text).lower()

    def tokenize(self, text: Optional[str]) -> List[str]:
        return _TOKEN_PATTERN.findall(self.normalize(text))

    def document_text(self, name: Optional[str], frontmatter: Optional[str]) -> str:
        """tsv とエンベディングの入力になる正規化テキスト"""
        return " ".join(self.tokenize(name) + self.tokenize(frontmatter))

    def text_hash(self, name: Optional[str], frontmatter: Optional[str]) -> str:
        """正規化テキストの SHA-256（変更検出用）"""
        document = self.document_text(name, frontmatter)
        return hashlib.sha256(document.encode("utf-8")).hexdigest()

    def lexical_vector(self, name: Optional[str], frontmatter: Optional[str]) -> Dict[str, int]:
        """トークン → 出現回数"""
        return dict(Counter(self.tokenize(name) + self.tokenize(frontmatter)))

    def query_terms(self, query: Optional[str]) -> List[str]:
        """クエリのトークン（重複除去、出現順）"""
        seen = []
        for token in self.tokenize(query):
            if token not in seen:
                seen.append(token)
        return seen

    def tsquery_text(self, query: Optional[str]) -> str:
        """to_tsquery に渡す OR 結合のクエリ文字列

        トークンは \\w+ のみで構成されるため演算子の混入はない。
        """
        return " | ".join(self.query_terms(query))
