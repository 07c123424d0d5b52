# Config モジュール
from src.config.directory_config import DirectoryConfig, config

__all__ = [
    "DirectoryConfig",
    "config",
]
