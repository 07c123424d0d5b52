# エージェントレコードストア
# agents テーブルに対する CRUD と派生インデックス（tsv / embedding）の維持
"""
エージェントレコードストア

エージェントの識別情報と検索用テキストを保存し、
語彙ベクトル（tsv）とエンベディングを常に同じテキストから再生成する。

方針:
- 冪等性: 正規化テキストのハッシュが変わらない upsert は tsv もエンベディングも触らない
- 鮮度: テキストが変わったのにエンベディングを計算できない場合は NULL にして
        embedding_stale を立てる（古いテキストのベクトルを残さない）
- 可用性: エンベディング API の失敗で書き込み自体は失敗させない
- 削除: 参照が残る場合はポリシー（block / cascade）に従う
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from psycopg2 import errors as pg_errors

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, format_vector, run_in_transaction
from src.embedding.azure_client import AzureEmbeddingClient, AzureEmbeddingError
from src.errors import (
    EmbeddingUnavailable,
    ReferentialConflict,
    ValidationError,
)
from src.models.agent import AGENT_STATUSES, AgentRecord
from src.search.lexical import LexicalAnalyzer


logger = logging.getLogger(__name__)

InvalidationListener = Callable[[str, bool], None]


class AgentStore:
    """エージェントレコードの保存と派生インデックスの維持

    使用例:
        db = DatabaseConnection()
        store = AgentStore(db, AzureEmbeddingClient())

        record = store.upsert(AgentRecord(
            agent_id="refund-agent",
            display_name="Refund Agent",
            frontmatter="Handles refund requests and chargebacks",
        ))

        store.delete("refund-agent")  # 参照が残っていれば ReferentialConflict

    Attributes:
        db: DatabaseConnection インスタンス
        embedding_client: エンベディングプロバイダ（None の場合は常に stale として保存）
        config: DirectoryConfig インスタンス
    """

    _COLUMNS = """
        id, agent_key, display_name, frontmatter, search_text_hash,
        embedding, embedding_stale, status, created_at, updated_at
    """

    _SELECT_BY_ID_SQL = """
        SELECT {columns}
        FROM agents
        WHERE id = %s
    """.format(columns=_COLUMNS)

    _SELECT_FOR_UPDATE_SQL = """
        SELECT {columns}
        FROM agents
        WHERE id = %s
        FOR UPDATE
    """.format(columns=_COLUMNS)

    _SELECT_BY_KEY_SQL = """
        SELECT {columns}
        FROM agents
        WHERE agent_key = %s
    """.format(columns=_COLUMNS)

    _SELECT_BY_STATUS_SQL = """
        SELECT {columns}
        FROM agents
        WHERE status = %s
        ORDER BY display_name, id
    """.format(columns=_COLUMNS)

    _SELECT_ALL_SQL = """
        SELECT {columns}
        FROM agents
        ORDER BY display_name, id
    """.format(columns=_COLUMNS)

    _SELECT_TEXT_HASH_SQL = """
        SELECT search_text_hash
        FROM agents
        WHERE id = %s
    """

    _INSERT_SQL = """
        INSERT INTO agents (
            id, agent_key, display_name, frontmatter, search_text_hash,
            tsv, embedding, embedding_stale, status, created_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s,
            to_tsvector(%s::regconfig, %s), %s::vector, %s, %s, %s, %s
        )
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_INDEXED_SQL = """
        UPDATE agents SET
            agent_key = %s,
            display_name = %s,
            frontmatter = %s,
            search_text_hash = %s,
            tsv = to_tsvector(%s::regconfig, %s),
            embedding = %s::vector,
            embedding_stale = %s,
            status = %s,
            updated_at = %s
        WHERE id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_METADATA_SQL = """
        UPDATE agents SET
            agent_key = %s,
            display_name = %s,
            frontmatter = %s,
            status = %s,
            updated_at = %s
        WHERE id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_EMBEDDING_SQL = """
        UPDATE agents SET
            embedding = %s::vector,
            embedding_stale = false
        WHERE id = %s AND search_text_hash = %s
    """

    _SELECT_STALE_SQL = """
        SELECT id, display_name, frontmatter, search_text_hash
        FROM agents
        WHERE embedding_stale
        ORDER BY updated_at
        LIMIT %s
    """

    _COUNT_REFERENCES_SQL = """
        SELECT
            (SELECT COUNT(*) FROM agent_links
              WHERE source_agent_id = %s OR target_agent_id = %s),
            (SELECT COUNT(*) FROM agent_teams WHERE lead_agent_id = %s),
            (SELECT COUNT(*) FROM agent_team_members WHERE agent_id = %s),
            (SELECT COUNT(*) FROM team_tasks WHERE owner_agent_id = %s),
            (SELECT COUNT(*) FROM traces WHERE agent_id = %s)
    """

    _REFERENCE_KEYS = ("links", "team_leads", "memberships", "owned_tasks", "traces")

    _CASCADE_SQL = (
        "DELETE FROM agent_links WHERE source_agent_id = %(id)s OR target_agent_id = %(id)s",
        "DELETE FROM agent_team_members WHERE agent_id = %(id)s",
        "UPDATE team_tasks SET owner_agent_id = NULL, updated_at = NOW() WHERE owner_agent_id = %(id)s",
        "UPDATE traces SET agent_id = NULL WHERE agent_id = %(id)s",
    )

    _DELETE_SQL = """
        DELETE FROM agents
        WHERE id = %s
    """

    def __init__(
        self,
        db: DatabaseConnection,
        embedding_client: Optional[AzureEmbeddingClient] = None,
        config: Optional[DirectoryConfig] = None,
        analyzer: Optional[LexicalAnalyzer] = None,
    ):
        """AgentStore を初期化

        Args:
            db: DatabaseConnection インスタンス
            embedding_client: エンベディングプロバイダ
            config: ディレクトリ設定（省略時はデフォルト設定）
            analyzer: 語彙アナライザ（省略時は LexicalAnalyzer()）
        """
        self.db = db
        self.embedding_client = embedding_client
        self.config = config or default_config
        self.analyzer = analyzer or LexicalAnalyzer()
        self._listeners: List[InvalidationListener] = []
        self._executor: Optional[ThreadPoolExecutor] = None

        logger.info(
            f"AgentStore 初期化完了: embedding_mode={self.config.embedding_mode}, "
            f"delete_policy={self.config.agent_delete_policy}, "
            f"embedding_provider={'あり' if embedding_client else 'なし'}"
        )

    # === リスナー ===
    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        """upsert / delete のコミット後に呼ばれるリスナーを登録

        listener(agent_id, candidates_changed) の形で呼ばれる。candidates_changed は
        どのクエリの候補集合も変わりうる変更（作成・削除、検索テキスト・status・
        エンベディングの変更）で True になる。
        検索結果キャッシュの無効化に使用する。
        """
        self._listeners.append(listener)

    def _notify(self, agent_id: str, candidates_changed: bool) -> None:
        for listener in self._listeners:
            listener(agent_id, candidates_changed)

    # === Upsert ===
    def upsert(self, record: AgentRecord) -> AgentRecord:
        """エージェントを作成または更新

        display_name / frontmatter の正規化テキストが変わった場合のみ
        tsv を再生成し、エンベディングを再計算する（sync は同期、background は後追い）。

        Args:
            record: 保存する AgentRecord（embedding 系の項目は無視される）

        Returns:
            保存後の AgentRecord

        Raises:
            ValidationError: agent_id / display_name が空、status が不正、agent_key が重複
            EmbeddingUnavailable: raise_on_embedding_failure=True でエンベディングに失敗した場合
                                  （書き込みはコミット済み、例外の record に保存結果が入る）
        """
        self._validate(record)

        document_text = self.analyzer.document_text(record.display_name, record.frontmatter)
        text_hash = self.analyzer.text_hash(record.display_name, record.frontmatter)

        # ネットワーク呼び出しは行ロックの外で行う
        embedding: Optional[List[float]] = None
        embedding_error: Optional[EmbeddingUnavailable] = None
        stored_hash = self._fetch_text_hash(record.agent_id)
        if (
            stored_hash != text_hash
            and document_text
            and self.config.embedding_mode == "sync"
        ):
            try:
                embedding = self._embed(document_text)
            except EmbeddingUnavailable as e:
                embedding_error = e
                logger.warning(
                    f"エンベディングを計算できないため劣化状態で保存します: "
                    f"agent_id={record.agent_id}, error={e}"
                )

        def _write(cur) -> Tuple[AgentRecord, bool, bool, bool]:
            return self._write_record(cur, record, document_text, text_hash, embedding)

        try:
            saved, text_changed, status_changed, written = run_in_transaction(
                self.db,
                _write,
                max_retries=self.config.transaction_max_retries,
                backoff_seconds=self.config.transaction_retry_backoff_seconds,
            )
        except pg_errors.UniqueViolation as e:
            raise ValidationError(f"agent_key が重複しています: {record.agent_key}") from e

        if written:
            self._notify(saved.agent_id, text_changed or status_changed)

        if text_changed and saved.embedding_stale and self.config.embedding_mode == "background":
            self._schedule_refresh(saved.agent_id, text_hash, document_text)

        logger.info(
            f"エージェント保存完了: agent_id={saved.agent_id}, "
            f"text_changed={text_changed}, embedding_stale={saved.embedding_stale}"
        )

        if embedding_error is not None and self.config.raise_on_embedding_failure:
            raise EmbeddingUnavailable(str(embedding_error), record=saved) from embedding_error

        return saved

    def _validate(self, record: AgentRecord) -> None:
        if not isinstance(record.agent_id, str) or not record.agent_id.strip():
            raise ValidationError("agent_id は必須です")
        if not isinstance(record.display_name, str) or not record.display_name.strip():
            raise ValidationError("display_name は必須です")
        if not record.agent_key or not str(record.agent_key).strip():
            raise ValidationError("agent_key は空にできません")
        if record.status not in AGENT_STATUSES:
            raise ValidationError(
                f"status は {'/'.join(AGENT_STATUSES)} のいずれかです: {record.status}"
            )

    def _fetch_text_hash(self, agent_id: str) -> Optional[str]:
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_TEXT_HASH_SQL, (agent_id,))
            row = cur.fetchone()
            return row[0] if row else None

    def _write_record(
        self,
        cur,
        record: AgentRecord,
        document_text: str,
        text_hash: str,
        embedding: Optional[List[float]],
    ) -> Tuple[AgentRecord, bool, bool, bool]:
        """トランザクション内の書き込み本体

        Returns:
            (保存後レコード, テキスト変更の有無, status 変更の有無, 書き込みの有無)
        """
        now = datetime.now()
        ts_config = self.config.text_search_config
        # 空テキストはエンベディング対象外なので stale にしない
        stale = embedding is None and bool(document_text)

        cur.execute(self._SELECT_FOR_UPDATE_SQL, (record.agent_id,))
        row = cur.fetchone()

        if row is None:
            cur.execute(
                self._INSERT_SQL,
                (
                    record.agent_id,
                    record.agent_key,
                    record.display_name,
                    record.frontmatter,
                    text_hash,
                    ts_config,
                    document_text,
                    format_vector(embedding),
                    stale,
                    record.status,
                    now,
                    now,
                ),
            )
            return AgentRecord.from_row(cur.fetchone()), True, False, True

        existing = AgentRecord.from_row(row)

        if existing.search_text_hash == text_hash:
            unchanged = (
                existing.agent_key == record.agent_key
                and existing.display_name == record.display_name
                and existing.frontmatter == record.frontmatter
                and existing.status == record.status
            )
            if unchanged:
                return existing, False, False, False

            cur.execute(
                self._UPDATE_METADATA_SQL,
                (
                    record.agent_key,
                    record.display_name,
                    record.frontmatter,
                    record.status,
                    now,
                    record.agent_id,
                ),
            )
            return AgentRecord.from_row(cur.fetchone()), False, existing.status != record.status, True

        cur.execute(
            self._UPDATE_INDEXED_SQL,
            (
                record.agent_key,
                record.display_name,
                record.frontmatter,
                text_hash,
                ts_config,
                document_text,
                format_vector(embedding),
                stale,
                record.status,
                now,
                record.agent_id,
            ),
        )
        return AgentRecord.from_row(cur.fetchone()), True, existing.status != record.status, True

    # === エンベディング ===
    def _embed(self, text: str) -> List[float]:
        if self.embedding_client is None:
            raise EmbeddingUnavailable("エンベディングプロバイダが設定されていません")
        try:
            return self.embedding_client.get_embedding(text)
        except AzureEmbeddingError as e:
            raise EmbeddingUnavailable(f"エンベディング取得に失敗しました: {e}") from e

    def _schedule_refresh(self, agent_id: str, text_hash: str, document_text: str) -> None:
        if self.embedding_client is None:
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.background_workers,
                thread_name_prefix="agent-embedding",
            )
        self._executor.submit(self._refresh_embedding, agent_id, text_hash, document_text)

    def _refresh_embedding(self, agent_id: str, text_hash: str, document_text: str) -> bool:
        """エンベディングを計算し、テキストが変わっていなければ保存する

        Returns:
            保存した場合 True
        """
        try:
            embedding = self._embed(document_text)
        except EmbeddingUnavailable as e:
            logger.warning(f"エンベディング再計算に失敗（バックフィル待ち）: agent_id={agent_id}, error={e}")
            return False

        return self._store_embedding(agent_id, text_hash, embedding)

    def _store_embedding(self, agent_id: str, text_hash: str, embedding: List[float]) -> bool:
        with self.db.get_cursor() as cur:
            # 計算中にテキストが更新されていたら古いベクトルは書かない
            cur.execute(self._UPDATE_EMBEDDING_SQL, (format_vector(embedding), agent_id, text_hash))
            updated = cur.rowcount > 0

        if updated:
            # 意味検索の候補に新たに入りうるので全件無効化
            self._notify(agent_id, True)
        else:
            logger.debug(f"テキストが更新済みのためエンベディングを破棄: agent_id={agent_id}")
        return updated

    def backfill_embeddings(self, limit: Optional[int] = None) -> int:
        """embedding_stale のエージェントのエンベディングを再計算

        対象をまとめて1回のバッチ呼び出しで計算する。失敗した場合は
        stale のまま残し、次回に再試行する。

        Args:
            limit: 処理件数の上限（省略時は backfill_batch_size）

        Returns:
            エンベディングを更新した件数
        """
        if self.embedding_client is None:
            logger.warning("エンベディングプロバイダが未設定のためバックフィルをスキップします")
            return 0

        batch_size = limit or self.config.backfill_batch_size
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_STALE_SQL, (batch_size,))
            rows = cur.fetchall()

        pending = []
        for agent_id, display_name, frontmatter, text_hash in rows:
            document_text = self.analyzer.document_text(display_name, frontmatter)
            if document_text:
                pending.append((agent_id, text_hash, document_text))

        logger.info(f"エンベディングのバックフィル開始: count={len(pending)}")
        if not pending:
            return 0

        try:
            embeddings = self.embedding_client.get_embeddings([text for _, _, text in pending])
        except AzureEmbeddingError as e:
            logger.warning(f"バックフィルのエンベディング取得に失敗（stale のまま残します）: {e}")
            return 0

        updated = 0
        for (agent_id, text_hash, _), embedding in zip(pending, embeddings):
            if self._store_embedding(agent_id, text_hash, embedding):
                updated += 1

        logger.info(f"エンベディングのバックフィル完了: updated={updated}/{len(pending)}")
        return updated

    # === Read ===
    def get(self, agent_id: str) -> Optional[AgentRecord]:
        """ID でエージェントを取得（見つからない場合は None）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (agent_id,))
            row = cur.fetchone()
            if row is None:
                return None
            return AgentRecord.from_row(row)

    def get_by_key(self, agent_key: str) -> Optional[AgentRecord]:
        """agent_key でエージェントを取得（見つからない場合は None）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_KEY_SQL, (agent_key,))
            row = cur.fetchone()
            if row is None:
                return None
            return AgentRecord.from_row(row)

    def resolve(self, id_or_key: str) -> Optional[AgentRecord]:
        """ID または agent_key でエージェントを取得"""
        return self.get(id_or_key) or self.get_by_key(id_or_key)

    def list(self, status: Optional[str] = "active") -> List[AgentRecord]:
        """エージェント一覧（status=None で全件、表示名順）"""
        with self.db.get_cursor() as cur:
            if status is None:
                cur.execute(self._SELECT_ALL_SQL)
            else:
                cur.execute(self._SELECT_BY_STATUS_SQL, (status,))
            return [AgentRecord.from_row(row) for row in cur.fetchall()]

    # === Delete ===
    def find_references(self, agent_id: str, cur=None) -> Dict[str, int]:
        """エージェントを参照しているレコード数をテーブル種別ごとに返す"""
        if cur is None:
            with self.db.get_cursor() as own_cur:
                return self.find_references(agent_id, own_cur)

        cur.execute(self._COUNT_REFERENCES_SQL, (agent_id,) * 6)
        row = cur.fetchone() or (0,) * len(self._REFERENCE_KEYS)
        return {key: int(count) for key, count in zip(self._REFERENCE_KEYS, row)}

    def delete(self, agent_id: str, policy: Optional[str] = None) -> bool:
        """エージェントを削除

        Args:
            agent_id: 削除するエージェントの ID
            policy: "block" | "cascade"（省略時は config.agent_delete_policy）
                - block: 参照が1件でも残っていれば拒否
                - cascade: リンクとメンバーシップを削除し、タスク所有者と
                           トレースのエージェント参照を NULL にする。
                           チームリーダーの場合は lead 不在になるため拒否。

        Returns:
            True: 削除した、False: 対象が存在しない

        Raises:
            ReferentialConflict: 参照が残っていて削除できない場合
            ValidationError: policy が不正な場合
        """
        policy = policy or self.config.agent_delete_policy
        if policy not in ("block", "cascade"):
            raise ValidationError(f"削除ポリシーは block/cascade のいずれかです: {policy}")

        def _delete(cur) -> bool:
            cur.execute(self._SELECT_FOR_UPDATE_SQL, (agent_id,))
            if cur.fetchone() is None:
                return False

            references = self.find_references(agent_id, cur)
            live = {k: v for k, v in references.items() if v > 0}

            if policy == "block" and live:
                raise ReferentialConflict(
                    f"エージェント {agent_id} は参照されているため削除できません: {live}",
                    references=live,
                )
            if live.get("team_leads"):
                raise ReferentialConflict(
                    f"エージェント {agent_id} はチームリーダーのため削除できません"
                    f"（先にリーダーを交代してください）",
                    references=live,
                )

            for sql in self._CASCADE_SQL:
                cur.execute(sql, {"id": agent_id})
            cur.execute(self._DELETE_SQL, (agent_id,))
            return cur.rowcount > 0

        deleted = run_in_transaction(
            self.db,
            _delete,
            max_retries=self.config.transaction_max_retries,
            backoff_seconds=self.config.transaction_retry_backoff_seconds,
        )

        if deleted:
            self._notify(agent_id, True)
            logger.info(f"エージェント削除完了: agent_id={agent_id}, policy={policy}")
        return deleted

    def close(self) -> None:
        """バックグラウンドのエンベディング計算を終了"""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
