from __future__ import annotations

from dataclasses import fields, is_dataclass
from enum import Enum
import json
from typing import Any

from cbackend.env import Env
from cbackend.type_model import (
    ArrayType,
    FunctionType,
    IncompleteArrayType,
    PointerType,
    PrimitiveType,
    StructOrUnionType,
    type_name,
)


_TYPE_CLASSES = (PrimitiveType, PointerType, ArrayType, IncompleteArrayType, FunctionType, StructOrUnionType)


def _variable_binding(name: str, env: Env) -> Any:
    entry = env.find(name)
    if entry is None:
        return None
    return {"kind": entry.kind.value, "offset": entry.offset}


def tree_to_debug_data(node: Any) -> Any:
    if node is None:
        return None

    if isinstance(node, Enum):
        return node.value

    if isinstance(node, (str, int, float, bool)):
        return node

    if isinstance(node, (list, tuple)):
        return [tree_to_debug_data(item) for item in node]

    if isinstance(node, _TYPE_CLASSES):
        return type_name(node)

    if is_dataclass(node):
        result: dict[str, Any] = {"node": type(node).__name__}
        for field in fields(node):
            value = getattr(node, field.name)
            if isinstance(value, Env):
                result["binding"] = _variable_binding(getattr(node, "name"), value)
                continue
            result[field.name] = tree_to_debug_data(value)
        return result

    if isinstance(node, dict):
        return {str(k): tree_to_debug_data(v) for k, v in node.items()}

    raise TypeError(f"Unsupported tree debug serialization value: {type(node).__name__}")


def tree_to_debug_json(node: Any) -> str:
    data = tree_to_debug_data(node)
    return json.dumps(data, indent=2, sort_keys=True)
