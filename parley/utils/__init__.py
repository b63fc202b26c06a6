"""Utility helpers."""

from parley.utils.helpers import ensure_dir, get_data_path, now_ms
from parley.utils.retry import retry_with_backoff
from parley.utils.structured_json import ParseResult, parse_structured_json

__all__ = [
    "ensure_dir",
    "get_data_path",
    "now_ms",
    "retry_with_backoff",
    "ParseResult",
    "parse_structured_json",
]
