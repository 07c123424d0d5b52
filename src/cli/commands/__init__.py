# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .agent import agent_command
from .search import search_command
from .task import task_command
from .trace import trace_command

__all__ = [
    "agent_command",
    "search_command",
    "task_command",
    "trace_command",
]
