# 検索結果キャッシュ
# ランキング済みの結果を LRU で保持し、エージェントの更新で無効化する

import logging
import threading
from collections import OrderedDict
from typing import Hashable, Optional, Set, Tuple


logger = logging.getLogger(__name__)


class SearchCache:
    """ランキング済み検索結果の LRU キャッシュ（スレッドセーフ）

    エントリごとに結果に含まれる agent_id を保持し、
    invalidate() で該当エントリだけを落とす。

    無効化のたびに世代番号を進める。検索前に読んだ世代で put() し、
    検索中に無効化が入っていればその結果は保存しない。

    使用例:
        cache = SearchCache(max_size=256)
        store.add_invalidation_listener(cache.invalidate)

        generation = cache.generation
        result = run_search()
        cache.put(key, result, agent_ids, generation)
    """

    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, Tuple[object, Set[str]]]" = OrderedDict()
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_size > 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: Hashable) -> Optional[object]:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry[0]

    def put(
        self,
        key: Hashable,
        value: object,
        agent_ids: Set[str],
        generation: Optional[int] = None,
    ) -> bool:
        """結果を保存

        Args:
            generation: 検索開始時に読んだ世代（None なら常に保存）

        Returns:
            保存した場合 True（検索中に無効化された場合は False）
        """
        if not self.enabled:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"検索中に無効化されたため結果を保存しません: key={key!r}")
                return False
            self._entries[key] = (value, set(agent_ids))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
        return True

    def invalidate(self, agent_id: str, candidates_changed: bool) -> None:
        """エージェントの変更をキャッシュに反映

        候補集合が変わりうる変更（作成・削除、検索テキスト・status・
        エンベディングの変更）は全件破棄する。それ以外は agent_id を含む
        エントリだけ破棄する。
        """
        with self._lock:
            self._generation += 1
            if candidates_changed:
                dropped = len(self._entries)
                self._entries.clear()
            else:
                stale_keys = [k for k, (_, ids) in self._entries.items() if agent_id in ids]
                for key in stale_keys:
                    del self._entries[key]
                dropped = len(stale_keys)

        if dropped:
            logger.debug(f"検索キャッシュ無効化: agent_id={agent_id}, dropped={dropped}")

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
