"""
Response shaping for tool results.

Paths are dotted (``data.items``) with optional list indices (``items[0]``)
and fan-out (``items[*].name``). The input body is never mutated.
"""

import copy
import re
from typing import Any, List, Optional, Union

from ..types import OutputTransformConfig

_SEGMENT = re.compile(r"([^.\[\]]+)|\[(\d+|\*)\]")

PathToken = Union[str, int]


def parse_path(path: str) -> List[PathToken]:
    """Split ``a.b[0].c[*]`` into ``["a", "b", 0, "c", "*"]``."""
    tokens: List[PathToken] = []
    for name, index in _SEGMENT.findall(path or ""):
        if name:
            tokens.append(name)
        elif index == "*":
            tokens.append("*")
        else:
            tokens.append(int(index))
    return tokens


def _walk(value: Any, tokens: List[PathToken]) -> Any:
    if not tokens:
        return value
    head, rest = tokens[0], tokens[1:]

    if head == "*":
        if not isinstance(value, list):
            return None
        return [_walk(item, rest) for item in value]

    if isinstance(head, int):
        if isinstance(value, list) and -len(value) <= head < len(value):
            return _walk(value[head], rest)
        return None

    if isinstance(value, dict):
        if head not in value:
            return None
        return _walk(value[head], rest)

    return None


def extract_path(value: Any, path: str) -> Any:
    """Return the value at ``path`` or None when any segment is missing."""
    return _walk(value, parse_path(path))


def _apply_mapping(value: Any, mapping: dict) -> Any:
    if isinstance(value, list):
        return [_apply_mapping(item, mapping) for item in value]
    if isinstance(value, dict):
        return {key: extract_path(value, path) for key, path in mapping.items()}
    return value


def _truncate(value: Any, max_items: Optional[int], max_length: Optional[int]) -> Any:
    if isinstance(value, list) and max_items is not None:
        value = value[:max_items]
    if isinstance(value, str) and max_length is not None and len(value) > max_length:
        value = value[:max_length]
    return value


def transform_output(body: Any, config: Optional[OutputTransformConfig]) -> Any:
    """
    Shape a response body per the tool's output transform.

    Order: extract, then mapping, then ``max_items``/``max_length`` caps.
    Without a config the body passes through unchanged.
    """
    if config is None:
        return body

    result = copy.deepcopy(body)

    if config.extract:
        result = extract_path(result, config.extract)

    if config.mapping:
        result = _apply_mapping(result, config.mapping)

    return _truncate(result, config.max_items, config.max_length)
