"""YAML loading and minimal schema validation for CLI."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from src.models.agent import AGENT_STATUSES


class YamlValidationError(ValueError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def validate_agent_record(data: Dict[str, Any]) -> None:
    """Validate agent record YAML data.

    frontmatter は文字列、またはマッピング（YAML として文字列化する）を受け付ける。
    省略した項目（agent_key / frontmatter / status）は登録済みの値を引き継ぐ。
    """
    _require_fields(data, ["agent_id", "display_name"])

    if not isinstance(data["agent_id"], str) or not data["agent_id"].strip():
        raise YamlValidationError("agent_id は文字列で指定してください")
    if not isinstance(data["display_name"], str) or not data["display_name"].strip():
        raise YamlValidationError("display_name は文字列で指定してください")

    if data.get("agent_key") is not None:
        if not isinstance(data["agent_key"], str) or not data["agent_key"].strip():
            raise YamlValidationError("agent_key は文字列で指定してください")

    frontmatter = data.get("frontmatter")
    if isinstance(frontmatter, dict):
        data["frontmatter"] = yaml.safe_dump(frontmatter, allow_unicode=True, sort_keys=False).strip()
    elif frontmatter is not None and not isinstance(frontmatter, str):
        raise YamlValidationError("frontmatter は文字列またはオブジェクトで指定してください")

    status = data.get("status")
    if status is not None and status not in AGENT_STATUSES:
        raise YamlValidationError(f"status は {'/'.join(AGENT_STATUSES)} のいずれかです")


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
