"""
Recursive traversal of JSON-like request payloads.

Payloads are closed trees of dict / list / str / int / float / bool / None.
``scan`` stops at the first flagged string leaf and reports its path;
``transform`` rebuilds the tree, applying a function to every string leaf.
Paths use dots for object keys and brackets for array indices, e.g.
``guardian.phones[1]``.
"""
from typing import Any, Callable, Dict, List, Optional, Union

JsonScalar = Union[str, int, float, bool, None]
JsonValue = Union[JsonScalar, Dict[str, "JsonValue"], List["JsonValue"]]

LeafCheck = Callable[[str], bool]
LeafTransform = Callable[[str], str]


def format_path(prefix: str, key: Union[str, int]) -> str:
    """Join a parent path and a child key or index."""
    if isinstance(key, int):
        return f"{prefix}[{key}]"
    return f"{prefix}.{key}" if prefix else str(key)


def scan(node: JsonValue, leaf_check: LeafCheck, path: str = "") -> Optional[str]:
    """
    Depth-first search for the first string leaf flagged by ``leaf_check``.

    Returns the path of that leaf, or None when nothing is flagged. Numbers,
    booleans and None are never flagged. A flagged top-level string returns
    ``path`` itself.
    """
    if isinstance(node, str):
        return path if leaf_check(node) else None

    if isinstance(node, dict):
        for key, value in node.items():
            found = scan(value, leaf_check, format_path(path, str(key)))
            if found is not None:
                return found
        return None

    if isinstance(node, (list, tuple)):
        for index, value in enumerate(node):
            found = scan(value, leaf_check, format_path(path, index))
            if found is not None:
                return found
        return None

    return None


def transform(node: JsonValue, leaf_fn: LeafTransform) -> JsonValue:
    """Return a copy of ``node`` with ``leaf_fn`` applied to every string leaf."""
    if isinstance(node, str):
        return leaf_fn(node)

    if isinstance(node, dict):
        return {key: transform(value, leaf_fn) for key, value in node.items()}

    if isinstance(node, (list, tuple)):
        return [transform(value, leaf_fn) for value in node]

    return node


def get_field(node: Any, key: str) -> Any:
    """Top-level lookup that tolerates non-dict payloads."""
    if isinstance(node, dict):
        return node.get(key)
    return None
