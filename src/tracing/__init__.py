# トレースモジュール
# エージェント実行トレースの親子関係（フォレスト）

from src.models.trace import Trace
from src.tracing.forest import iter_ancestors, root_of, would_create_cycle
from src.tracing.trace_store import TraceStore

__all__ = [
    "Trace",
    "TraceStore",
    "iter_ancestors",
    "root_of",
    "would_create_cycle",
]
