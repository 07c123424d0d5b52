# トレースストア
# traces テーブルに対する追記と親子関係の走査
"""
トレースストア

エージェント実行のトレースを親参照付きで追記し、フォレストとして走査する。

方針:
- 親は作成時にのみ指定でき、以後変更しない（再親付けの API はない）
- 親の存在確認と INSERT は同じトランザクションで行い、親行を FOR KEY SHARE で
  ロックして確認から INSERT までの間に削除されないようにする
- children / ancestors はジェネレータで返し、必要な分だけ DB から読む
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, run_in_transaction
from src.errors import CycleDetected, NotFoundError, ParentNotFound, ValidationError
from src.models.trace import Trace
from src.tracing.forest import iter_ancestors, would_create_cycle


logger = logging.getLogger(__name__)


class TraceStore:
    """トレースの追記と走査

    使用例:
        traces = TraceStore(db)
        root = traces.create_trace({"input": "refund order 42"}, agent_id="triage-agent")
        child = traces.create_trace({"step": "lookup"}, parent_id=root.trace_id)

        for ancestor in traces.ancestors(child.trace_id):
            print(ancestor.trace_id)
    """

    _COLUMNS = "id, parent_trace_id, agent_id, name, payload, created_at"

    _LOCK_PARENT_SQL = """
        SELECT id, parent_trace_id
        FROM traces
        WHERE id = %s
        FOR KEY SHARE
    """

    _SELECT_PARENT_ID_SQL = """
        SELECT parent_trace_id
        FROM traces
        WHERE id = %s
    """

    _EXISTS_SQL = """
        SELECT 1
        FROM traces
        WHERE id = %s
    """

    _INSERT_SQL = """
        INSERT INTO traces (id, parent_trace_id, agent_id, name, payload, created_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _SELECT_BY_ID_SQL = """
        SELECT {columns}
        FROM traces
        WHERE id = %s
    """.format(columns=_COLUMNS)

    _SELECT_CHILDREN_SQL = """
        SELECT {columns}
        FROM traces
        WHERE parent_trace_id = %s
        ORDER BY created_at, id
    """.format(columns=_COLUMNS)

    _SELECT_ROOTS_SQL = """
        SELECT {columns}
        FROM traces
        WHERE parent_trace_id IS NULL
        ORDER BY created_at DESC, id
        LIMIT %s
    """.format(columns=_COLUMNS)

    def __init__(
        self,
        db: DatabaseConnection,
        config: Optional[DirectoryConfig] = None,
        batch_size: int = 100,
    ):
        """TraceStore を初期化

        Args:
            db: DatabaseConnection インスタンス
            config: ディレクトリ設定（トランザクション再試行に使用）
            batch_size: children() で1回に読む行数
        """
        self.db = db
        self.config = config or default_config
        self.batch_size = batch_size

    def create_trace(
        self,
        payload: Optional[Dict[str, Any]] = None,
        parent_id: Optional[UUID] = None,
        agent_id: Optional[str] = None,
        name: Optional[str] = None,
        trace_id: Optional[UUID] = None,
    ) -> Trace:
        """トレースを追加

        Args:
            payload: 実行メタデータ（内容は解釈しない）
            parent_id: 親トレースの ID（None ならルート）
            agent_id: 実行したエージェントの ID
            name: 表示名
            trace_id: 明示的な ID（省略時は UUID を生成）

        Returns:
            作成した Trace

        Raises:
            ParentNotFound: parent_id のトレースが存在しない（行は作成されない）
            CycleDetected: 親参照が循環する
            ValidationError: trace_id が既に使われている
            NotFoundError: agent_id のエージェントが存在しない
        """
        new_id = trace_id or uuid4()
        trace = Trace(
            trace_id=new_id,
            parent_trace_id=parent_id,
            agent_id=agent_id,
            name=name,
            payload=payload or {},
        )

        def _insert(cur) -> Trace:
            if trace_id is not None:
                cur.execute(self._EXISTS_SQL, (trace_id,))
                if cur.fetchone() is not None:
                    raise ValidationError(f"トレース ID は既に使われています: {trace_id}")

            if parent_id is not None:
                cur.execute(self._LOCK_PARENT_SQL, (parent_id,))
                if cur.fetchone() is None:
                    raise ParentNotFound(parent_id)
                # 生成した UUID は既存の祖先になりえないので、明示 ID のときだけ辿る
                if trace_id is not None and would_create_cycle(
                    new_id, parent_id, self._parent_lookup(cur)
                ):
                    raise CycleDetected(
                        f"トレース {new_id} の親を {parent_id} にすると循環します",
                        path=[new_id, parent_id],
                    )

            cur.execute(
                self._INSERT_SQL,
                (
                    trace.trace_id,
                    trace.parent_trace_id,
                    trace.agent_id,
                    trace.name,
                    Json(trace.payload),
                    datetime.now(),
                ),
            )
            return Trace.from_row(cur.fetchone())

        try:
            created = run_in_transaction(
                self.db,
                _insert,
                max_retries=self.config.transaction_max_retries,
                backoff_seconds=self.config.transaction_retry_backoff_seconds,
            )
        except pg_errors.UniqueViolation as e:
            raise ValidationError(f"トレース ID は既に使われています: {new_id}") from e
        except pg_errors.ForeignKeyViolation as e:
            # 親はロック済みなので、残る外部キーはエージェント
            raise NotFoundError(f"エージェントが存在しません: {agent_id}") from e

        logger.info(
            f"トレース作成完了: trace_id={created.trace_id}, "
            f"parent={created.parent_trace_id}, agent_id={created.agent_id}"
        )
        return created

    def _parent_lookup(self, cur):
        def parent_of(node_id):
            cur.execute(self._SELECT_PARENT_ID_SQL, (node_id,))
            row = cur.fetchone()
            return row[0] if row else None
        return parent_of

    def get(self, trace_id: UUID) -> Optional[Trace]:
        """ID でトレースを取得（見つからない場合は None）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (trace_id,))
            row = cur.fetchone()
            return Trace.from_row(row) if row else None

    def children(self, trace_id: UUID) -> Iterator[Trace]:
        """直下の子トレースを作成順に返す

        batch_size 件ずつ fetchmany で読み進める。
        イテレーションが終わるまで接続を1本保持する。
        """
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_CHILDREN_SQL, (trace_id,))
            while True:
                rows = cur.fetchmany(self.batch_size)
                if not rows:
                    break
                for row in rows:
                    yield Trace.from_row(row)

    def ancestors(self, trace_id: UUID) -> Iterator[Trace]:
        """親からルートまでの祖先を近い順に返す

        最後の要素は parent_trace_id を持たない（ルート）。
        trace_id 自身は含まない。

        Raises:
            NotFoundError: trace_id のトレースが存在しない
            CycleDetected: 親参照が循環している（データ破損）
        """
        start = self.get(trace_id)
        if start is None:
            raise NotFoundError(f"トレースが存在しません: {trace_id}")
        return self._walk_ancestors(start)

    def _walk_ancestors(self, start: Trace) -> Iterator[Trace]:
        loaded: Dict[UUID, Trace] = {start.trace_id: start}

        with self.db.get_cursor() as cur:
            def parent_of(node_id):
                parent_id = loaded[node_id].parent_trace_id
                if parent_id is None:
                    return None
                if parent_id not in loaded:
                    cur.execute(self._SELECT_BY_ID_SQL, (parent_id,))
                    row = cur.fetchone()
                    if row is None:
                        return None
                    loaded[parent_id] = Trace.from_row(row)
                return parent_id

            for ancestor_id in iter_ancestors(start.trace_id, parent_of):
                yield loaded[ancestor_id]

    def root_of(self, trace_id: UUID) -> Trace:
        """trace_id が属する木のルート（ルート自身ならそのまま返す）"""
        root = self.get(trace_id)
        if root is None:
            raise NotFoundError(f"トレースが存在しません: {trace_id}")
        for ancestor in self._walk_ancestors(root):
            root = ancestor
        return root

    def list_roots(self, limit: int = 50) -> List[Trace]:
        """ルートトレース一覧（新しい順）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_ROOTS_SQL, (limit,))
            return [Trace.from_row(row) for row in cur.fetchall()]
