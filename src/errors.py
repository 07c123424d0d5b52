# エージェントディレクトリの例外定義
"""
例外階層

DirectoryError
├── ValidationError          呼び出し側で修正可能な入力エラー
│   └── InvalidTransition    許可されていないタスク状態遷移
├── NotFoundError            参照先が存在しない
│   ├── ParentNotFound       親トレースが存在しない
│   └── UnknownBlocker       ブロッキングタスクが存在しない
├── ReferentialConflict      他テーブルからの参照が残っている
├── EmbeddingUnavailable     エンベディングを計算できない（劣化して継続）
└── IntegrityViolation       グラフ整合性違反
    ├── SelfBlock
    ├── CrossTeamBlock
    └── CycleDetected

整合性違反はミューテーション全体を拒否し、部分的な状態変更を残さない。
"""

from typing import Any, Dict, Iterable, Optional


class DirectoryError(Exception):
    """エージェントディレクトリの基底例外"""
    pass


class ValidationError(DirectoryError):
    """入力値が不正"""
    pass


class InvalidTransition(ValidationError):
    """タスクの状態遷移が許可されていない"""

    def __init__(self, task_id: Any, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"タスク {task_id} を {current} から {target} へ遷移できません"
        )


class NotFoundError(DirectoryError):
    """参照先のレコードが存在しない"""
    pass


class ParentNotFound(NotFoundError):
    """親トレースが存在しない"""

    def __init__(self, parent_id: Any):
        self.parent_id = parent_id
        super().__init__(f"親トレースが存在しません: {parent_id}")


class UnknownBlocker(NotFoundError):
    """ブロッキングタスクが存在しない"""

    def __init__(self, blocker_ids: Iterable[Any]):
        self.blocker_ids = list(blocker_ids)
        super().__init__(
            f"存在しないブロッキングタスク: {', '.join(str(b) for b in self.blocker_ids)}"
        )


class ReferentialConflict(DirectoryError):
    """他のレコードから参照されているため操作できない"""

    def __init__(self, message: str, references: Optional[Dict[str, int]] = None):
        self.references = references or {}
        super().__init__(message)


class EmbeddingUnavailable(DirectoryError):
    """エンベディングを計算できない

    record には劣化状態でコミット済みのレコードが入る（コミット前の失敗では None）。
    """

    def __init__(self, message: str, record: Any = None):
        self.record = record
        super().__init__(message)


class IntegrityViolation(DirectoryError):
    """グラフ整合性違反の基底例外"""
    pass


class SelfBlock(IntegrityViolation):
    """タスクが自分自身をブロッカーに含めている"""

    def __init__(self, task_id: Any):
        self.task_id = task_id
        super().__init__(f"タスク {task_id} は自分自身をブロックできません")


class CrossTeamBlock(IntegrityViolation):
    """別チームのタスクをブロッカーに指定している"""

    def __init__(self, task_id: Any, blocker_ids: Iterable[Any]):
        self.task_id = task_id
        self.blocker_ids = list(blocker_ids)
        super().__init__(
            f"タスク {task_id} に別チームのブロッカーは指定できません: "
            f"{', '.join(str(b) for b in self.blocker_ids)}"
        )


class CycleDetected(IntegrityViolation):
    """親子関係またはブロッキング関係が循環する"""

    def __init__(self, message: str, path: Optional[Iterable[Any]] = None):
        self.path = list(path) if path is not None else []
        super().__init__(message)
