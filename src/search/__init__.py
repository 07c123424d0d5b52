# 検索モジュール
# 語彙（tsvector）+ 意味（pgvector）のハイブリッド検索

from src.search.cache import SearchCache
from src.search.hybrid_search import HybridSearch, SearchResult
from src.search.lexical import LexicalAnalyzer
from src.search.ranking import HybridRanker, ScoredAgent, min_max_normalize
from src.search.retrieval import CandidateRetriever, RetrievalError, SearchCandidate

__all__ = [
    "CandidateRetriever",
    "HybridRanker",
    "HybridSearch",
    "LexicalAnalyzer",
    "RetrievalError",
    "ScoredAgent",
    "SearchCache",
    "SearchCandidate",
    "SearchResult",
    "min_max_normalize",
]
