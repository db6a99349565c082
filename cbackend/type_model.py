from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cbackend.codegen_model import POINTER_SIZE


class ExprTypeKind(str, Enum):
    VOID = "VOID"
    CHAR = "CHAR"
    UCHAR = "UCHAR"
    SHORT = "SHORT"
    USHORT = "USHORT"
    LONG = "LONG"
    ULONG = "ULONG"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    POINTER = "POINTER"
    FUNCTION = "FUNCTION"
    ARRAY = "ARRAY"
    INCOMPLETE_ARRAY = "INCOMPLETE_ARRAY"
    STRUCT_OR_UNION = "STRUCT_OR_UNION"


INTEGRAL_KINDS = frozenset(
    {
        ExprTypeKind.CHAR,
        ExprTypeKind.UCHAR,
        ExprTypeKind.SHORT,
        ExprTypeKind.USHORT,
        ExprTypeKind.LONG,
        ExprTypeKind.ULONG,
    }
)
UNSIGNED_KINDS = frozenset({ExprTypeKind.UCHAR, ExprTypeKind.USHORT, ExprTypeKind.ULONG})
FLOATING_KINDS = frozenset({ExprTypeKind.FLOAT, ExprTypeKind.DOUBLE})

# Sizes in words. Every integral kind fits one machine word.
PRIMITIVE_SIZES: dict[ExprTypeKind, int] = {
    ExprTypeKind.VOID: 1,
    ExprTypeKind.CHAR: 1,
    ExprTypeKind.UCHAR: 1,
    ExprTypeKind.SHORT: 1,
    ExprTypeKind.USHORT: 1,
    ExprTypeKind.LONG: 1,
    ExprTypeKind.ULONG: 1,
    ExprTypeKind.FLOAT: 2,
    ExprTypeKind.DOUBLE: 4,
}

PRIMITIVE_NAMES: dict[str, ExprTypeKind] = {
    "void": ExprTypeKind.VOID,
    "char": ExprTypeKind.CHAR,
    "uchar": ExprTypeKind.UCHAR,
    "short": ExprTypeKind.SHORT,
    "ushort": ExprTypeKind.USHORT,
    "int": ExprTypeKind.LONG,
    "uint": ExprTypeKind.ULONG,
    "long": ExprTypeKind.LONG,
    "ulong": ExprTypeKind.ULONG,
    "float": ExprTypeKind.FLOAT,
    "double": ExprTypeKind.DOUBLE,
}


@dataclass(frozen=True)
class PrimitiveType:
    kind: ExprTypeKind

    def __post_init__(self) -> None:
        if self.kind not in PRIMITIVE_SIZES:
            raise ValueError(f"'{self.kind.value}' is not a primitive type kind")

    @property
    def size_of(self) -> int:
        return PRIMITIVE_SIZES[self.kind]

    @property
    def alignment(self) -> int:
        return min(self.size_of, 2) if self.kind in FLOATING_KINDS else 1


@dataclass(frozen=True)
class PointerType:
    ref_type: "ExprType"
    kind: ExprTypeKind = ExprTypeKind.POINTER

    @property
    def size_of(self) -> int:
        return POINTER_SIZE

    @property
    def alignment(self) -> int:
        return POINTER_SIZE


@dataclass(frozen=True)
class ArrayType:
    elem_type: "ExprType"
    num_elems: int
    kind: ExprTypeKind = ExprTypeKind.ARRAY

    @property
    def size_of(self) -> int:
        return self.elem_type.size_of * self.num_elems

    @property
    def alignment(self) -> int:
        return self.elem_type.alignment


@dataclass(frozen=True)
class IncompleteArrayType:
    elem_type: "ExprType"
    kind: ExprTypeKind = ExprTypeKind.INCOMPLETE_ARRAY

    @property
    def size_of(self) -> int:
        raise ValueError("incomplete array type has no size")

    @property
    def alignment(self) -> int:
        return self.elem_type.alignment


@dataclass(frozen=True)
class FunctionType:
    return_type: "ExprType"
    args: tuple["ExprType", ...] = ()
    has_varargs: bool = False
    kind: ExprTypeKind = ExprTypeKind.FUNCTION

    @property
    def size_of(self) -> int:
        raise ValueError("function type has no size")

    @property
    def alignment(self) -> int:
        return 1


@dataclass(frozen=True)
class FieldInfo:
    name: str
    type: "ExprType"
    offset: int


@dataclass(frozen=True)
class StructOrUnionType:
    name: str
    is_union: bool
    fields: tuple[FieldInfo, ...]
    size: int
    align: int
    kind: ExprTypeKind = ExprTypeKind.STRUCT_OR_UNION

    @property
    def size_of(self) -> int:
        return self.size

    @property
    def alignment(self) -> int:
        return self.align

    def find_field(self, name: str) -> FieldInfo | None:
        return next((field for field in self.fields if field.name == name), None)


ExprType = (
    PrimitiveType
    | PointerType
    | ArrayType
    | IncompleteArrayType
    | FunctionType
    | StructOrUnionType
)


VOID = PrimitiveType(ExprTypeKind.VOID)
CHAR = PrimitiveType(ExprTypeKind.CHAR)
UCHAR = PrimitiveType(ExprTypeKind.UCHAR)
SHORT = PrimitiveType(ExprTypeKind.SHORT)
USHORT = PrimitiveType(ExprTypeKind.USHORT)
LONG = PrimitiveType(ExprTypeKind.LONG)
ULONG = PrimitiveType(ExprTypeKind.ULONG)
FLOAT = PrimitiveType(ExprTypeKind.FLOAT)
DOUBLE = PrimitiveType(ExprTypeKind.DOUBLE)


def is_unsigned(ty: ExprType) -> bool:
    return ty.kind in UNSIGNED_KINDS or ty.kind is ExprTypeKind.POINTER


def is_scalar(ty: ExprType) -> bool:
    return ty.kind in INTEGRAL_KINDS or ty.kind is ExprTypeKind.POINTER


def type_name(ty: ExprType) -> str:
    if isinstance(ty, PrimitiveType):
        return ty.kind.value.lower()
    if isinstance(ty, PointerType):
        return f"ptr({type_name(ty.ref_type)})"
    if isinstance(ty, ArrayType):
        return f"{type_name(ty.elem_type)}[{ty.num_elems}]"
    if isinstance(ty, IncompleteArrayType):
        return f"{type_name(ty.elem_type)}[]"
    if isinstance(ty, FunctionType):
        args = ", ".join(type_name(arg) for arg in ty.args)
        return f"fn({args})->{type_name(ty.return_type)}"
    keyword = "union" if ty.is_union else "struct"
    return f"{keyword} {ty.name}"
