"""Output formatting helpers for CLI."""

from __future__ import annotations

import json
import sys
from typing import Iterable, List, NoReturn, Sequence
from uuid import UUID

import click

from src.errors import DirectoryError

# DirectoryError は呼び出し側で直せる失敗、それ以外は想定外
EXIT_UNEXPECTED = 1
EXIT_REJECTED = 2


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Format a simple table with padded columns."""
    rows_list: List[List[str]] = [list(map(str, row)) for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(len(cell))
            else:
                widths[idx] = max(widths[idx], len(cell))

    header_line = " ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-" * len(header_line)
    body_lines = [
        " ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row))
        for row in rows_list
    ]
    return "\n".join([header_line, separator] + body_lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def echo_json(data) -> None:
    """Echo JSON with UTF-8 characters preserved."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def fail(action: str, error: Exception) -> NoReturn:
    """Report a failed command and exit with a code matching the error kind."""
    click.echo(f"[エラー] {action}に失敗しました: {error}", err=True)
    code = EXIT_REJECTED if isinstance(error, DirectoryError) else EXIT_UNEXPECTED
    sys.exit(code)


def parse_uuid(value: str) -> UUID:
    """Parse a UUID argument or exit with a usage error."""
    try:
        return UUID(value)
    except ValueError:
        click.echo(f"[エラー] UUID の形式が不正です: {value}", err=True)
        sys.exit(EXIT_REJECTED)
