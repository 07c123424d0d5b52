# トレースフォレストの純粋ロジック
"""
親参照で表現したフォレストを辿る関数群（DB非依存）

parent_of は「ID → 親 ID（ルートなら None）」を返す関数。
TraceStore はカーソルを使う parent_of を渡し、テストでは dict.get を渡す。
"""

from typing import Callable, Hashable, Iterator, List, Optional

from src.errors import CycleDetected


ParentLookup = Callable[[Hashable], Optional[Hashable]]


def iter_ancestors(node_id: Hashable, parent_of: ParentLookup) -> Iterator[Hashable]:
    """node_id の祖先を近い順に返す（node_id 自身は含まない）

    Raises:
        CycleDetected: 親参照が循環している場合（データ破損）
    """
    visited = {node_id}
    path: List[Hashable] = [node_id]
    current = parent_of(node_id)
    while current is not None:
        if current in visited:
            path.append(current)
            raise CycleDetected(
                f"親参照が循環しています: {' -> '.join(str(p) for p in path)}",
                path=path,
            )
        visited.add(current)
        path.append(current)
        yield current
        current = parent_of(current)


def would_create_cycle(
    node_id: Hashable,
    new_parent_id: Optional[Hashable],
    parent_of: ParentLookup,
) -> bool:
    """node_id の親を new_parent_id にすると循環するか"""
    if new_parent_id is None:
        return False
    if new_parent_id == node_id:
        return True
    try:
        return any(ancestor == node_id for ancestor in iter_ancestors(new_parent_id, parent_of))
    except CycleDetected:
        return True


def root_of(node_id: Hashable, parent_of: ParentLookup) -> Hashable:
    """node_id が属する木のルート"""
    root = node_id
    for ancestor in iter_ancestors(node_id, parent_of):
        root = ancestor
    return root
