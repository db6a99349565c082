from __future__ import annotations

from cbackend.codegen_model import WORD_SIZE
from cbackend.type_model import ExprType, ExprTypeKind, FieldInfo, StructOrUnionType


def round_up(value: int, align: int) -> int:
    if align <= 0:
        raise ValueError(f"alignment must be positive, got {align}")
    return (value + align - 1) // align * align


def _argument_size(ty: ExprType) -> int:
    # Arrays and functions are passed as pointers after decay.
    if ty.kind in (ExprTypeKind.ARRAY, ExprTypeKind.INCOMPLETE_ARRAY, ExprTypeKind.FUNCTION):
        return WORD_SIZE
    return ty.size_of


def _argument_alignment(ty: ExprType) -> int:
    if ty.kind in (ExprTypeKind.ARRAY, ExprTypeKind.INCOMPLETE_ARRAY, ExprTypeKind.FUNCTION):
        return WORD_SIZE
    return max(ty.alignment, WORD_SIZE)


def pack_arguments(types: list[ExprType]) -> tuple[int, list[int]]:
    """Lay out call arguments left to right from offset 0.

    Each argument starts at its own alignment and occupies at least one word.
    Returns the packed size and the offset of every argument.
    """
    offsets: list[int] = []
    pack_size = 0
    for ty in types:
        pack_size = round_up(pack_size, _argument_alignment(ty))
        offsets.append(pack_size)
        pack_size += round_up(_argument_size(ty), WORD_SIZE)
    return pack_size, offsets


def struct_layout(name: str, members: list[tuple[str, ExprType]]) -> StructOrUnionType:
    fields: list[FieldInfo] = []
    seen: set[str] = set()
    offset = 0
    align = 1
    for member_name, member_type in members:
        if member_name in seen:
            raise ValueError(f"duplicate member '{member_name}' in struct {name}")
        seen.add(member_name)
        offset = round_up(offset, member_type.alignment)
        fields.append(FieldInfo(name=member_name, type=member_type, offset=offset))
        offset += member_type.size_of
        align = max(align, member_type.alignment)
    return StructOrUnionType(
        name=name,
        is_union=False,
        fields=tuple(fields),
        size=round_up(offset, align),
        align=align,
    )


def union_layout(name: str, members: list[tuple[str, ExprType]]) -> StructOrUnionType:
    fields: list[FieldInfo] = []
    seen: set[str] = set()
    size = 0
    align = 1
    for member_name, member_type in members:
        if member_name in seen:
            raise ValueError(f"duplicate member '{member_name}' in union {name}")
        seen.add(member_name)
        fields.append(FieldInfo(name=member_name, type=member_type, offset=0))
        size = max(size, member_type.size_of)
        align = max(align, member_type.alignment)
    return StructOrUnionType(
        name=name,
        is_union=True,
        fields=tuple(fields),
        size=round_up(size, align),
        align=align,
    )
