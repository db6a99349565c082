"""Load a typed translation unit from its YAML description.

The document is a mapping with optional `structs`, `enums`, `globals` and
`functions` lists. Types are written as strings (`long`, `ptr(char)`,
`long[4]`, `struct point`, `fn(long, ptr(char))->long`); expressions and
statements are single-key mappings such as `{var: x}` or
`{assign: [{var: x}, 5]}`. The loader assigns every node its semantic type and
builds the symbol environment each `Variable` resolves against.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from cbackend.ast_nodes import (
    Assign,
    AssignList,
    Attribute,
    BinaryOp,
    BitwiseNot,
    BreakStmt,
    CaseStmt,
    CompoundStmt,
    ConditionalExpr,
    ContinueStmt,
    DefaultStmt,
    Dereference,
    DoWhileStmt,
    Expression,
    ExprStmt,
    ForStmt,
    FuncCall,
    FunctionDef,
    GlobalDecl,
    GotoStmt,
    IfStmt,
    IntLiteral,
    LabeledStmt,
    LocalDecl,
    LogicalNot,
    Negative,
    PostDecrement,
    PostIncrement,
    PreDecrement,
    PreIncrement,
    Reference,
    ReturnStmt,
    Statement,
    StringLiteral,
    SwitchStmt,
    TranslationUnit,
    TypeCast,
    Variable,
    WhileStmt,
)
from cbackend.env import Env
from cbackend.layout import struct_layout, union_layout
from cbackend.type_model import (
    CHAR,
    LONG,
    PRIMITIVE_NAMES,
    ULONG,
    ArrayType,
    ExprType,
    FunctionType,
    IncompleteArrayType,
    PointerType,
    PrimitiveType,
    StructOrUnionType,
    is_unsigned,
)


class TreeFormatError(ValueError):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


BINARY_OPERATORS = frozenset(
    {"+", "-", "*", "/", "%", "&", "|", "^", "<<", ">>", "==", "!=", "<", ">", "<=", ">=", "&&", "||"}
)
_BOOLEAN_OPERATORS = frozenset({"==", "!=", "<", ">", "<=", ">=", "&&", "||"})

_UNARY_NODES: dict[str, type] = {
    "pre_inc": PreIncrement,
    "pre_dec": PreDecrement,
    "post_inc": PostIncrement,
    "post_dec": PostDecrement,
    "neg": Negative,
    "bit_not": BitwiseNot,
}


def _require_type(value: object, expected_type: type, label: str) -> None:
    if not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool)):
        raise TreeFormatError(f"{label} must be {expected_type.__name__}")


def _require_pair(value: object, label: str) -> tuple[object, object]:
    _require_type(value, list, label)
    if len(value) != 2:  # type: ignore[arg-type]
        raise TreeFormatError(f"{label} must have exactly 2 items")
    return value[0], value[1]  # type: ignore[index]


def _single_key(raw: dict[str, object], label: str) -> tuple[str, object]:
    if len(raw) != 1:
        raise TreeFormatError(f"{label} must have exactly one key, got {sorted(raw)}")
    key, value = next(iter(raw.items()))
    return key, value


# ----------------------------------------------------------------------
# types


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    start = 0
    for index, char in enumerate(text):
        if char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append(text[start:index].strip())
            start = index + 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def _closing_paren(text: str, open_index: int) -> int:
    depth = 0
    for index in range(open_index, len(text)):
        if text[index] == "(":
            depth += 1
        elif text[index] == ")":
            depth -= 1
            if depth == 0:
                return index
    raise TreeFormatError(f"unbalanced parentheses in type '{text}'")


def parse_type(text: str, aggregates: dict[str, StructOrUnionType]) -> ExprType:
    text = text.strip()

    if text.endswith("]"):
        open_index = text.rfind("[")
        if open_index <= 0:
            raise TreeFormatError(f"malformed array type '{text}'")
        elem_type = parse_type(text[:open_index], aggregates)
        count_text = text[open_index + 1 : -1].strip()
        if not count_text:
            return IncompleteArrayType(elem_type)
        if not count_text.isdigit():
            raise TreeFormatError(f"array length must be a non-negative integer in '{text}'")
        return ArrayType(elem_type, int(count_text))

    if text.startswith("ptr(") and _closing_paren(text, 3) == len(text) - 1:
        return PointerType(parse_type(text[4:-1], aggregates))

    if text.startswith("fn("):
        close_index = _closing_paren(text, 2)
        rest = text[close_index + 1 :].strip()
        if not rest.startswith("->"):
            raise TreeFormatError(f"function type '{text}' is missing '-> RETURN'")
        arg_texts = _split_top_level(text[3:close_index])
        has_varargs = bool(arg_texts) and arg_texts[-1] == "..."
        if has_varargs:
            arg_texts = arg_texts[:-1]
        args = tuple(parse_type(arg, aggregates) for arg in arg_texts)
        return FunctionType(parse_type(rest[2:], aggregates), args, has_varargs)

    keyword, _, name = text.partition(" ")
    if keyword in ("struct", "union"):
        aggregate = aggregates.get(f"{keyword} {name.strip()}")
        if aggregate is None:
            raise TreeFormatError(f"unknown type '{text}'")
        return aggregate

    kind = PRIMITIVE_NAMES.get(text)
    if kind is None:
        raise TreeFormatError(f"unknown type '{text}'")
    return PrimitiveType(kind)


def _decayed(ty: ExprType) -> ExprType:
    if isinstance(ty, (ArrayType, IncompleteArrayType)):
        return PointerType(ty.elem_type)
    if isinstance(ty, FunctionType):
        return PointerType(ty)
    return ty


def _binary_result_type(op: str, left: ExprType, right: ExprType) -> ExprType:
    if op in _BOOLEAN_OPERATORS:
        return LONG
    left = _decayed(left)
    right = _decayed(right)
    left_is_pointer = isinstance(left, PointerType)
    right_is_pointer = isinstance(right, PointerType)
    if op in ("+", "-") and left_is_pointer and not right_is_pointer:
        return left
    if op == "+" and right_is_pointer and not left_is_pointer:
        return right
    if op == "-" and left_is_pointer and right_is_pointer:
        return LONG
    if op in ("<<", ">>"):
        return ULONG if is_unsigned(left) and not left_is_pointer else LONG
    return ULONG if is_unsigned(left) or is_unsigned(right) else LONG


# ----------------------------------------------------------------------
# loader


@dataclass
class _FunctionScope:
    frame_size: int = 0


@dataclass
class _Loader:
    path: str
    aggregates: dict[str, StructOrUnionType] = field(default_factory=dict)

    def type_of(self, raw: object, label: str) -> ExprType:
        _require_type(raw, str, label)
        try:
            return parse_type(raw, self.aggregates)  # type: ignore[arg-type]
        except TreeFormatError as error:
            raise TreeFormatError(f"{label}: {error.message}") from error

    # -- expressions ----------------------------------------------------

    def expr(self, raw: object, env: Env, label: str) -> Expression:
        if isinstance(raw, bool):
            raise TreeFormatError(f"{label} must be an expression, got a boolean")
        if isinstance(raw, int):
            return IntLiteral(raw)
        _require_type(raw, dict, label)
        raw_obj: dict[str, object] = raw  # type: ignore[assignment]

        if "call" in raw_obj:
            return self._call(raw_obj, env, label)

        key, value = _single_key(raw_obj, label)
        sub_label = f"{label}.{key}"

        if key == "var":
            _require_type(value, str, sub_label)
            entry = env.find(value)  # type: ignore[arg-type]
            if entry is None:
                raise TreeFormatError(f"{sub_label}: unknown identifier '{value}'")
            return Variable(name=value, type=entry.type, env=env)  # type: ignore[arg-type]

        if key == "int":
            _require_type(value, int, sub_label)
            return IntLiteral(value)  # type: ignore[arg-type]

        if key == "str":
            _require_type(value, str, sub_label)
            return StringLiteral(value, ArrayType(CHAR, len(value.encode("utf-8")) + 1))  # type: ignore[union-attr]

        if key == "assign":
            left_raw, right_raw = _require_pair(value, sub_label)
            left = self.expr(left_raw, env, f"{sub_label}[0]")
            right = self.expr(right_raw, env, f"{sub_label}[1]")
            return Assign(left=left, right=right, type=left.type)

        if key == "seq":
            _require_type(value, list, sub_label)
            exprs = [self.expr(item, env, f"{sub_label}[{index}]") for index, item in enumerate(value)]  # type: ignore[arg-type]
            if not exprs:
                raise TreeFormatError(f"{sub_label} must not be empty")
            return AssignList(exprs=exprs, type=exprs[-1].type)

        if key == "cond":
            _require_type(value, list, sub_label)
            if len(value) != 3:  # type: ignore[arg-type]
                raise TreeFormatError(f"{sub_label} must have exactly 3 items")
            cond, true_expr, false_expr = (
                self.expr(item, env, f"{sub_label}[{index}]") for index, item in enumerate(value)  # type: ignore[arg-type]
            )
            return ConditionalExpr(cond=cond, true_expr=true_expr, false_expr=false_expr, type=true_expr.type)

        if key == "member":
            base_raw, name = _require_pair(value, sub_label)
            _require_type(name, str, f"{sub_label}[1]")
            base = self.expr(base_raw, env, f"{sub_label}[0]")
            if not isinstance(base.type, StructOrUnionType):
                raise TreeFormatError(f"{sub_label}: member access on a non-aggregate")
            member = base.type.find_field(name)  # type: ignore[arg-type]
            if member is None:
                raise TreeFormatError(f"{sub_label}: no member '{name}'")
            return Attribute(expr=base, name=name, type=member.type)  # type: ignore[arg-type]

        if key == "ref":
            operand = self.expr(value, env, sub_label)
            return Reference(expr=operand, type=PointerType(operand.type))

        if key == "deref":
            operand = self.expr(value, env, sub_label)
            if not isinstance(operand.type, PointerType):
                raise TreeFormatError(f"{sub_label}: dereference of a non-pointer")
            return Dereference(expr=operand, type=operand.type.ref_type)

        if key == "cast":
            type_raw, operand_raw = _require_pair(value, sub_label)
            target = self.type_of(type_raw, f"{sub_label}[0]")
            return TypeCast(expr=self.expr(operand_raw, env, f"{sub_label}[1]"), type=target)

        if key == "not":
            return LogicalNot(expr=self.expr(value, env, sub_label), type=LONG)

        node_type = _UNARY_NODES.get(key)
        if node_type is not None:
            operand = self.expr(value, env, sub_label)
            return node_type(expr=operand, type=operand.type)

        if key == "binary":
            _require_type(value, list, sub_label)
            if len(value) != 3:  # type: ignore[arg-type]
                raise TreeFormatError(f"{sub_label} must be [OP, LEFT, RIGHT]")
            op, left_raw, right_raw = value  # type: ignore[misc]
            if op not in BINARY_OPERATORS:
                raise TreeFormatError(f"{sub_label}: unknown operator '{op}'")
            left = self.expr(left_raw, env, f"{sub_label}[1]")
            right = self.expr(right_raw, env, f"{sub_label}[2]")
            return BinaryOp(op=op, left=left, right=right, type=_binary_result_type(op, left.type, right.type))

        raise TreeFormatError(f"{label}: unknown expression kind '{key}'")

    def _call(self, raw_obj: dict[str, object], env: Env, label: str) -> FuncCall:
        unknown = sorted(set(raw_obj) - {"call", "args"})
        if unknown:
            raise TreeFormatError(f"{label}: unexpected keys {unknown} in call")
        func = self.expr(raw_obj["call"], env, f"{label}.call")
        args_raw = raw_obj.get("args", [])
        _require_type(args_raw, list, f"{label}.args")
        args = [self.expr(item, env, f"{label}.args[{index}]") for index, item in enumerate(args_raw)]  # type: ignore[arg-type]

        func_type = func.type
        if isinstance(func_type, PointerType):
            func_type = func_type.ref_type
        if not isinstance(func_type, FunctionType):
            raise TreeFormatError(f"{label}.call: called object is not a function")
        return FuncCall(func=func, args=args, type=func_type.return_type)

    # -- statements -----------------------------------------------------

    def block(self, raw: object, env: Env, scope: _FunctionScope, label: str) -> CompoundStmt:
        _require_type(raw, list, label)
        stmts: list[Statement] = []
        for index, item in enumerate(raw):  # type: ignore[arg-type]
            stmt, env = self.stmt(item, env, scope, f"{label}[{index}]")
            stmts.append(stmt)
        return CompoundStmt(stmts)

    def stmt(self, raw: object, env: Env, scope: _FunctionScope, label: str) -> tuple[Statement, Env]:
        if raw == "break":
            return BreakStmt(), env
        if raw == "continue":
            return ContinueStmt(), env
        if raw == "return":
            return ReturnStmt(), env
        _require_type(raw, dict, label)
        raw_obj: dict[str, object] = raw  # type: ignore[assignment]

        if "local" in raw_obj:
            return self._local(raw_obj, env, scope, label)
        if "if" in raw_obj:
            cond = self.expr(raw_obj["if"], env, f"{label}.if")
            then_stmt = self.body(raw_obj.get("then"), env, scope, f"{label}.then")
            else_stmt = None
            if raw_obj.get("else") is not None:
                else_stmt = self.body(raw_obj["else"], env, scope, f"{label}.else")
            return IfStmt(cond=cond, then_stmt=then_stmt, else_stmt=else_stmt), env
        if "while" in raw_obj:
            cond = self.expr(raw_obj["while"], env, f"{label}.while")
            return WhileStmt(cond=cond, body=self.body(raw_obj.get("body"), env, scope, f"{label}.body")), env
        if "do_while" in raw_obj:
            cond = self.expr(raw_obj["do_while"], env, f"{label}.do_while")
            return DoWhileStmt(body=self.body(raw_obj.get("body"), env, scope, f"{label}.body"), cond=cond), env
        if "for" in raw_obj:
            parts = raw_obj["for"]
            _require_type(parts, list, f"{label}.for")
            if len(parts) != 3:  # type: ignore[arg-type]
                raise TreeFormatError(f"{label}.for must be [INIT, COND, LOOP]")
            init, cond, loop = (
                None if part is None else self.expr(part, env, f"{label}.for[{index}]")
                for index, part in enumerate(parts)  # type: ignore[arg-type]
            )
            body = self.body(raw_obj.get("body"), env, scope, f"{label}.body")
            return ForStmt(init=init, cond=cond, loop=loop, body=body), env
        if "switch" in raw_obj:
            quantity = self.expr(raw_obj["switch"], env, f"{label}.switch")
            return SwitchStmt(expr=quantity, body=self.body(raw_obj.get("body"), env, scope, f"{label}.body")), env
        if "case" in raw_obj:
            value = raw_obj["case"]
            _require_type(value, int, f"{label}.case")
            return CaseStmt(value=value, stmt=self.body(raw_obj.get("stmt", []), env, scope, f"{label}.stmt")), env  # type: ignore[arg-type]
        if "label" in raw_obj:
            name = raw_obj["label"]
            _require_type(name, str, f"{label}.label")
            return LabeledStmt(label=name, stmt=self.body(raw_obj.get("stmt", []), env, scope, f"{label}.stmt")), env  # type: ignore[arg-type]

        key, value = _single_key(raw_obj, label)
        sub_label = f"{label}.{key}"
        if key == "expr":
            return ExprStmt(self.expr(value, env, sub_label)), env
        if key == "block":
            return self.block(value, env, scope, sub_label), env
        if key == "default":
            return DefaultStmt(self.body(value, env, scope, sub_label)), env
        if key == "goto":
            _require_type(value, str, sub_label)
            return GotoStmt(value), env  # type: ignore[arg-type]
        if key == "return":
            return ReturnStmt(None if value is None else self.expr(value, env, sub_label)), env
        raise TreeFormatError(f"{label}: unknown statement kind '{key}'")

    def body(self, raw: object, env: Env, scope: _FunctionScope, label: str) -> Statement:
        if raw is None:
            raise TreeFormatError(f"{label} is required")
        if isinstance(raw, list):
            return self.block(raw, env, scope, label)
        stmt, _ = self.stmt(raw, env, scope, label)
        return stmt

    def _local(self, raw_obj: dict[str, object], env: Env, scope: _FunctionScope, label: str) -> tuple[Statement, Env]:
        name = raw_obj["local"]
        _require_type(name, str, f"{label}.local")
        local_type = self.type_of(raw_obj.get("type"), f"{label}.type")
        env = env.add_local(name, local_type)  # type: ignore[arg-type]
        scope.frame_size = max(scope.frame_size, env.frame_size)
        initializer = None
        if raw_obj.get("init") is not None:
            initializer = self.expr(raw_obj["init"], env, f"{label}.init")
        target = Variable(name=name, type=local_type, env=env)  # type: ignore[arg-type]
        return LocalDecl(target=target, initializer=initializer), env

    # -- top level ------------------------------------------------------

    def aggregates_from(self, raw: object) -> None:
        _require_type(raw, list, f"{self.path}: structs")
        for index, item in enumerate(raw):  # type: ignore[arg-type]
            label = f"{self.path}: structs[{index}]"
            _require_type(item, dict, label)
            name = item.get("name")
            _require_type(name, str, f"{label}.name")
            is_union = item.get("union", False)
            _require_type(is_union, bool, f"{label}.union")
            members_raw = item.get("members", [])
            _require_type(members_raw, list, f"{label}.members")
            members: list[tuple[str, ExprType]] = []
            for member_index, member in enumerate(members_raw):
                member_label = f"{label}.members[{member_index}]"
                member_name, member_type = _require_pair(member, member_label)
                _require_type(member_name, str, f"{member_label}[0]")
                members.append((member_name, self.type_of(member_type, f"{member_label}[1]")))  # type: ignore[arg-type]
            keyword = "union" if is_union else "struct"
            try:
                layout = union_layout(name, members) if is_union else struct_layout(name, members)
            except ValueError as error:
                raise TreeFormatError(f"{label}: {error}") from error
            self.aggregates[f"{keyword} {name}"] = layout

    def load(self, document: object) -> TranslationUnit:
        _require_type(document, dict, f"{self.path}: document")
        doc: dict[str, object] = document  # type: ignore[assignment]
        unknown = sorted(set(doc) - {"structs", "enums", "globals", "functions"})
        if unknown:
            raise TreeFormatError(f"{self.path}: unknown top-level keys {unknown}")

        self.aggregates_from(doc.get("structs") or [])

        env = Env()
        enums_raw = doc.get("enums") or {}
        _require_type(enums_raw, dict, f"{self.path}: enums")
        for name, value in enums_raw.items():  # type: ignore[union-attr]
            _require_type(value, int, f"{self.path}: enums.{name}")
            env = env.add_enum(str(name), value)

        global_decls: list[GlobalDecl] = []
        globals_raw = doc.get("globals") or []
        _require_type(globals_raw, list, f"{self.path}: globals")
        for index, item in enumerate(globals_raw):  # type: ignore[arg-type]
            label = f"{self.path}: globals[{index}]"
            _require_type(item, dict, label)
            name = item.get("name")
            _require_type(name, str, f"{label}.name")
            global_type = self.type_of(item.get("type"), f"{label}.type")
            initializer = item.get("init", 0)
            _require_type(initializer, int, f"{label}.init")
            env = env.add_global(name, global_type)
            global_decls.append(GlobalDecl(name=name, type=global_type, initializer=initializer))

        functions_raw = doc.get("functions") or []
        _require_type(functions_raw, list, f"{self.path}: functions")

        # Declare every function first so bodies may call later ones.
        signatures: list[tuple[str, FunctionType, list[str], object]] = []
        for index, item in enumerate(functions_raw):  # type: ignore[arg-type]
            label = f"{self.path}: functions[{index}]"
            _require_type(item, dict, label)
            name = item.get("name")
            _require_type(name, str, f"{label}.name")
            return_type = self.type_of(item.get("returns", "long"), f"{label}.returns")
            params_raw = item.get("params", [])
            _require_type(params_raw, list, f"{label}.params")
            param_names: list[str] = []
            param_types: list[ExprType] = []
            for param_index, param in enumerate(params_raw):
                param_label = f"{label}.params[{param_index}]"
                param_name, param_type = _require_pair(param, param_label)
                _require_type(param_name, str, f"{param_label}[0]")
                param_names.append(param_name)  # type: ignore[arg-type]
                param_types.append(self.type_of(param_type, f"{param_label}[1]"))
            func_type = FunctionType(return_type, tuple(param_types))
            env = env.add_global(name, func_type)
            signatures.append((name, func_type, param_names, item.get("body")))

        functions: list[FunctionDef] = []
        for index, (name, func_type, param_names, body_raw) in enumerate(signatures):
            label = f"{self.path}: functions[{index}]"
            func_env = env.in_function()
            for param_name, param_type in zip(param_names, func_type.args):
                func_env = func_env.add_param(param_name, param_type)
            scope = _FunctionScope()
            body = self.block(body_raw if body_raw is not None else [], func_env, scope, f"{label}.body")
            functions.append(FunctionDef(name=name, type=func_type, body=body, frame_size=scope.frame_size))

        return TranslationUnit(globals=global_decls, functions=functions)


def load_tree_text(text: str, *, path: str = "<input>") -> TranslationUnit:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise TreeFormatError(f"{path}: invalid YAML: {error}") from error
    return _Loader(path=path).load(document)


def load_tree(path: Path) -> TranslationUnit:
    return load_tree_text(path.read_text(encoding="utf-8"), path=str(path))
