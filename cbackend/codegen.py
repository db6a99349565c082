from __future__ import annotations

import logging
from dataclasses import dataclass

from cbackend.ast_nodes import (
    Assign,
    AssignList,
    Attribute,
    BinaryOp,
    BitwiseNot,
    ConditionalExpr,
    Dereference,
    Expression,
    FuncCall,
    IntLiteral,
    LogicalNot,
    Negative,
    PostDecrement,
    PostIncrement,
    PreDecrement,
    PreIncrement,
    Reference,
    StringLiteral,
    TypeCast,
    Variable,
)
from cbackend.codegen_model import (
    FLOATS_AND_STRUCTS_UNSUPPORTED,
    POINTER_SIZE,
    InvalidProgramError,
    Reg,
    UnsupportedFeatureError,
)
from cbackend.codegen_state import CodegenState
from cbackend.env import EntryKind, EnvEntry
from cbackend.layout import pack_arguments, round_up
from cbackend.type_model import (
    FLOATING_KINDS,
    ExprType,
    ExprTypeKind,
    FieldInfo,
    FunctionType,
    PointerType,
    StructOrUnionType,
    is_scalar,
    is_unsigned,
    type_name,
)


LOGGER = logging.getLogger(__name__)

_DECAYING_KINDS = frozenset({ExprTypeKind.ARRAY, ExprTypeKind.INCOMPLETE_ARRAY})
_UNSUPPORTED_VALUE_KINDS = FLOATING_KINDS | {ExprTypeKind.STRUCT_OR_UNION}

# operator -> (signed set form, unsigned set form)
_COMPARISON_SETS: dict[str, tuple[str, str]] = {
    "==": ("sete", "sete"),
    "!=": ("setne", "setne"),
    "<": ("setl", "setb"),
    ">": ("setg", "seta"),
    "<=": ("setle", "setna"),
    ">=": ("setge", "setnb"),
}
_ARITHMETIC_OPS = frozenset({"+", "-", "*", "/", "%", "&", "|", "^", "<<", ">>"})

# node type -> (adds, returns the original value)
_INC_DEC_FORMS: dict[type, tuple[bool, bool]] = {
    PostIncrement: (True, True),
    PostDecrement: (False, True),
    PreIncrement: (True, False),
    PreDecrement: (False, False),
}


@dataclass(frozen=True)
class CallLayout:
    # Words carved below the current stack for an aggregate result.
    result_space: int
    # Words of the argument area, hidden result pointer included.
    pack_size: int
    offsets: list[int]
    hidden_pointer_offset: int | None


def _unsupported() -> UnsupportedFeatureError:
    return UnsupportedFeatureError(FLOATS_AND_STRUCTS_UNSUPPORTED)


def _reject_floating(ty: ExprType) -> None:
    if ty.kind in FLOATING_KINDS:
        raise UnsupportedFeatureError("floating-point operands are not supported")


def _require_value_type(ty: ExprType) -> None:
    if ty.kind in _UNSUPPORTED_VALUE_KINDS:
        raise _unsupported()


def _find_entry(expr: Variable) -> EnvEntry:
    entry = expr.env.find(expr.name)
    if entry is None:
        raise InvalidProgramError(f"unknown identifier '{expr.name}'")
    return entry


def _find_field(struct_type: ExprType, name: str) -> FieldInfo:
    if not isinstance(struct_type, StructOrUnionType):
        raise InvalidProgramError(f"member access on non-aggregate type '{type_name(struct_type)}'")
    field = struct_type.find_field(name)
    if field is None:
        raise InvalidProgramError(f"'{type_name(struct_type)}' has no member '{name}'")
    return field


def _pointee_size(ty: ExprType) -> int:
    if not isinstance(ty, PointerType):
        raise InvalidProgramError(f"expected a pointer, got '{type_name(ty)}'")
    try:
        return ty.ref_type.size_of
    except ValueError as error:
        raise InvalidProgramError(f"arithmetic on pointer to '{type_name(ty.ref_type)}': {error}") from error


def _load_through(state: CodegenState, ty: ExprType, offset: int, base: Reg) -> None:
    # Every integral width and pointers fit one word on this machine.
    if is_scalar(ty):
        state.load(offset, base, Reg.AX)
        return
    if ty.kind in _DECAYING_KINDS:
        if base is not Reg.AX or offset != 0:
            state.lea_offset(offset, base, Reg.AX)
        return
    if ty.kind in _UNSUPPORTED_VALUE_KINDS:
        raise _unsupported()
    raise InvalidProgramError(f"cannot load a value of type '{type_name(ty)}'")


def _restore_stack(state: CodegenState, saved_size: int) -> None:
    if state.stack_size != saved_size:
        state.force_stack_size_to(saved_size)


# ----------------------------------------------------------------------
# variables and literals


def _variable_value(expr: Variable, state: CodegenState) -> Reg:
    entry = _find_entry(expr)
    kind = expr.type.kind

    if entry.kind is EntryKind.ENUM:
        state.mov(entry.offset, Reg.AX)
        return Reg.AX

    if entry.kind in (EntryKind.FRAME, EntryKind.STACK):
        if kind is ExprTypeKind.VOID:
            raise InvalidProgramError(f"variable '{expr.name}' cannot be void")
        if kind is ExprTypeKind.FUNCTION:
            raise InvalidProgramError(f"frame variable '{expr.name}' cannot be a function designator")
        _load_through(state, expr.type, entry.offset, Reg.BP)
        return Reg.AX

    if entry.kind is EntryKind.GLOBAL:
        if is_scalar(expr.type):
            state.mov(expr.name, Reg.AX)
            return Reg.AX
        if kind is ExprTypeKind.FUNCTION or kind in _DECAYING_KINDS:
            state.lea(expr.name, Reg.AX)
            return Reg.AX
        if kind in _UNSUPPORTED_VALUE_KINDS:
            raise _unsupported()
        raise InvalidProgramError(f"cannot get the value of '{expr.name}' of type '{type_name(expr.type)}'")

    raise InvalidProgramError(f"cannot get the value of {entry.kind.value.lower()} '{expr.name}'")


def _variable_address(expr: Variable, state: CodegenState) -> None:
    entry = _find_entry(expr)
    if entry.kind in (EntryKind.FRAME, EntryKind.STACK):
        state.lea_offset(entry.offset, Reg.BP, Reg.AX)
        return
    if entry.kind is EntryKind.GLOBAL:
        state.lea(expr.name, Reg.AX)
        return
    raise InvalidProgramError(f"cannot get the address of {entry.kind.value.lower()} '{expr.name}'")


def _string_address(expr: StringLiteral, state: CodegenState) -> None:
    state.lea(state.intern_string(expr.value), Reg.AX)


# ----------------------------------------------------------------------
# assignment, sequencing, conditional


def _assign_value(expr: Assign, state: CodegenState) -> Reg:
    target_type = expr.left.type
    if target_type.kind in _UNSUPPORTED_VALUE_KINDS:
        raise UnsupportedFeatureError("structures and floats are not supported")
    if not is_scalar(target_type):
        raise InvalidProgramError(f"cannot assign to a {type_name(target_type)}")

    gen_address(expr.left, state)
    saved = state.push_long(Reg.AX)

    gen_value(expr.right, state)

    state.pop_long(saved, Reg.BX)
    state.store(Reg.AX, 0, Reg.BX)
    return Reg.AX


def _assign_list_value(expr: AssignList, state: CodegenState) -> Reg:
    if not expr.exprs:
        raise InvalidProgramError("empty assignment list")
    reg = Reg.AX
    for sub_expr in expr.exprs:
        reg = gen_value(sub_expr, state)
    return reg


#          test cond
#          jz false ---+
#          true_expr   |
# +------- jmp finish  |
# |    false: <--------+
# |        false_expr
# +--> finish:
def _conditional_value(expr: ConditionalExpr, state: CodegenState) -> Reg:
    _reject_floating(expr.cond.type)
    stack_size = state.stack_size
    gen_value(expr.cond, state)
    state.force_stack_size_to(stack_size)

    state.test(Reg.AX, Reg.AX)

    false_label = state.request_label()
    finish_label = state.request_label()

    state.jz(false_label)
    gen_value(expr.true_expr, state)
    # Both arms must reach finish at the depth the false path starts from.
    _restore_stack(state, stack_size)
    state.jmp(finish_label)

    state.label(false_label)
    reg = gen_value(expr.false_expr, state)
    _restore_stack(state, stack_size)

    state.label(finish_label)
    return reg


# ----------------------------------------------------------------------
# calls


def plan_call(result_type: ExprType, arg_types: list[ExprType], stack_size: int) -> CallLayout:
    """Argument layout for one call site made at `stack_size`.

    An aggregate result gets storage carved (aligned) below the current stack
    and a hidden pointer argument at offset 0; declared arguments shift up by
    one pointer.
    """
    pack_size, offsets = pack_arguments(arg_types)
    if not isinstance(result_type, StructOrUnionType):
        return CallLayout(result_space=0, pack_size=pack_size, offsets=offsets, hidden_pointer_offset=None)

    result_space = round_up(stack_size + result_type.size_of, result_type.alignment) - stack_size
    return CallLayout(
        result_space=result_space,
        pack_size=pack_size + POINTER_SIZE,
        offsets=[offset + POINTER_SIZE for offset in offsets],
        hidden_pointer_offset=0,
    )


# Caller evaluates arguments right to left into the argument area:
#
# +--------+
# |  argn  |
# +--------+
# |  ....  |
# +--------+
# |  arg1  |
# +--------+ <- sp before call
def _call_value(expr: FuncCall, state: CodegenState) -> Reg:
    _reject_floating(expr.type)

    state.newline()
    state.comment(f"Before pushing the arguments, stack size = {state.stack_size}.")

    layout = plan_call(expr.type, [arg.type for arg in expr.args], state.stack_size)
    if layout.hidden_pointer_offset is not None:
        state.comment("Allocate space for the returned aggregate.")
        state.expand_stack_by(layout.result_space)
        raise UnsupportedFeatureError("returning structs or unions by value is not supported")

    state.comment(f"Arguments take {layout.pack_size} words.")
    state.expand_stack_by(layout.pack_size)
    state.newline()

    header_base = -state.stack_size

    for index in range(len(expr.args) - 1, -1, -1):
        arg = expr.args[index]
        pos = header_base + layout.offsets[index]
        state.comment(f"Argument {index} is at {pos}")

        arg_kind = arg.type.kind
        if arg_kind in _UNSUPPORTED_VALUE_KINDS:
            raise _unsupported()
        if not is_scalar(arg.type) and arg_kind not in _DECAYING_KINDS and arg_kind is not ExprTypeKind.FUNCTION:
            raise InvalidProgramError(f"cannot pass an argument of type '{type_name(arg.type)}'")

        gen_value(arg, state)
        state.store(Reg.AX, pos, Reg.BP)
        state.newline()

    # Argument evaluation may have left temporaries on the stack.
    state.force_stack_size_to(-header_base)

    func_type = expr.func.type
    if isinstance(func_type, FunctionType):
        gen_address(expr.func, state)
    elif isinstance(func_type, PointerType) and isinstance(func_type.ref_type, FunctionType):
        gen_value(expr.func, state)
    else:
        raise InvalidProgramError(f"called object of type '{type_name(func_type)}' is not a function")

    state.call(Reg.AX)

    state.comment("Function returned.")
    state.newline()
    return Reg.AX


# ----------------------------------------------------------------------
# member access, reference, dereference, cast


def _attribute_value(expr: Attribute, state: CodegenState) -> Reg:
    field = _find_field(expr.expr.type, expr.name)
    gen_address(expr.expr, state)

    if field.type.kind in _DECAYING_KINDS:
        state.add(field.offset, Reg.AX)
        return Reg.AX
    _load_through(state, field.type, field.offset, Reg.AX)
    return Reg.AX


def _attribute_address(expr: Attribute, state: CodegenState) -> None:
    field = _find_field(expr.expr.type, expr.name)
    gen_address(expr.expr, state)
    state.add(field.offset, Reg.AX)


def _dereference_value(expr: Dereference, state: CodegenState) -> Reg:
    pointer_type = expr.expr.type
    if not isinstance(pointer_type, PointerType):
        raise InvalidProgramError(f"cannot dereference a value of type '{type_name(pointer_type)}'")
    ref_type = pointer_type.ref_type

    if ref_type.kind in _UNSUPPORTED_VALUE_KINDS:
        raise _unsupported()
    if ref_type.kind is ExprTypeKind.VOID:
        raise InvalidProgramError("cannot dereference a void pointer")

    gen_value(expr.expr, state)
    if ref_type.kind in _DECAYING_KINDS or ref_type.kind is ExprTypeKind.FUNCTION:
        return Reg.AX
    _load_through(state, ref_type, 0, Reg.AX)
    return Reg.AX


def _dereference_address(expr: Dereference, state: CodegenState) -> None:
    if not isinstance(expr.expr.type, PointerType):
        raise InvalidProgramError(f"cannot dereference a value of type '{type_name(expr.expr.type)}'")
    gen_value(expr.expr, state)


def _cast_value(expr: TypeCast, state: CodegenState) -> Reg:
    # No representation-changing conversions exist on this machine.
    _reject_floating(expr.type)
    _reject_floating(expr.expr.type)
    return gen_value(expr.expr, state)


# ----------------------------------------------------------------------
# increment / decrement
#
# Before the step:  ax = expr, bx = expr, cx = &expr.
# After the step:   ax = result, memory updated.


def _inc_dec_value(expr: PreIncrement | PreDecrement | PostIncrement | PostDecrement, state: CodegenState) -> Reg:
    operand_type = expr.expr.type
    _reject_floating(operand_type)
    if not is_scalar(operand_type):
        raise InvalidProgramError(f"cannot increment or decrement a {type_name(operand_type)}")
    step = _pointee_size(operand_type) if isinstance(operand_type, PointerType) else 1

    gen_address(expr.expr, state)
    saved = state.push_long(Reg.AX)

    gen_value(expr.expr, state)
    state.pop_long(saved, Reg.CX)
    state.mov(Reg.AX, Reg.BX)

    adds, returns_original = _INC_DEC_FORMS[type(expr)]
    target = Reg.BX if returns_original else Reg.AX
    if adds:
        state.add(step, target)
    else:
        state.sub(step, target)
    state.store(target, 0, Reg.CX)
    return Reg.AX


# ----------------------------------------------------------------------
# unary arithmetic


def _negative_value(expr: Negative, state: CodegenState) -> Reg:
    _reject_floating(expr.expr.type)
    gen_value(expr.expr, state)
    state.neg(Reg.AX)
    return Reg.AX


def _bitwise_not_value(expr: BitwiseNot, state: CodegenState) -> Reg:
    _reject_floating(expr.expr.type)
    gen_value(expr.expr, state)
    state.not_(Reg.AX)
    return Reg.AX


def _logical_not_value(expr: LogicalNot, state: CodegenState) -> Reg:
    if expr.expr.type.kind in FLOATING_KINDS:
        raise UnsupportedFeatureError("FP comparison is not supported")
    gen_value(expr.expr, state)
    # Only the flags reflect the operand; ax still holds the operand itself.
    state.test(Reg.AX, Reg.AX)
    LOGGER.warning("logical-not sets flags only; no 0/1 result is materialized in ax")
    return Reg.AX


# ----------------------------------------------------------------------
# binary operators


def _scale_ax(state: CodegenState, factor: int) -> None:
    if factor != 1:
        state.mov(factor, Reg.CX)
        state.mul(Reg.CX)


def _signed_exact_divide(state: CodegenState, divisor: int) -> None:
    # div is unsigned only; divide the magnitude and restore the sign.
    positive_label = state.request_label()
    finish_label = state.request_label()

    state.mov(divisor, Reg.CX)
    state.test(Reg.AX, Reg.AX)
    state.jge(positive_label)
    state.neg(Reg.AX)
    state.xor(Reg.DX, Reg.DX)
    state.div(Reg.CX)
    state.neg(Reg.AX)
    state.jmp(finish_label)

    state.label(positive_label)
    state.xor(Reg.DX, Reg.DX)
    state.div(Reg.CX)
    state.label(finish_label)


def _short_circuit_value(expr: BinaryOp, state: CodegenState) -> Reg:
    is_and = expr.op == "&&"
    stack_size = state.stack_size
    short_label = state.request_label()
    finish_label = state.request_label()

    gen_value(expr.left, state)
    _restore_stack(state, stack_size)
    state.test(Reg.AX, Reg.AX)
    if is_and:
        state.jz(short_label)
    else:
        state.jnz(short_label)

    gen_value(expr.right, state)
    _restore_stack(state, stack_size)
    state.test(Reg.AX, Reg.AX)
    state.setne(Reg.AX)
    state.jmp(finish_label)

    state.label(short_label)
    state.mov(0 if is_and else 1, Reg.AX)
    state.label(finish_label)
    return Reg.AX


def _binary_value(expr: BinaryOp, state: CodegenState) -> Reg:
    op = expr.op
    if op in ("&&", "||"):
        _reject_floating(expr.left.type)
        _reject_floating(expr.right.type)
        return _short_circuit_value(expr, state)

    if op not in _ARITHMETIC_OPS and op not in _COMPARISON_SETS:
        raise InvalidProgramError(f"unknown binary operator '{op}'")

    left_type = expr.left.type
    right_type = expr.right.type
    for operand_type in (left_type, right_type):
        _reject_floating(operand_type)
        if operand_type.kind is ExprTypeKind.STRUCT_OR_UNION:
            raise _unsupported()

    left_is_pointer = left_type.kind is ExprTypeKind.POINTER or left_type.kind in _DECAYING_KINDS
    right_is_pointer = right_type.kind is ExprTypeKind.POINTER or right_type.kind in _DECAYING_KINDS
    left_scale = 1
    right_scale = 1
    result_divisor = 1
    if op in ("+", "-") and left_is_pointer and not right_is_pointer:
        right_scale = _element_size(left_type)
    elif op == "+" and right_is_pointer and not left_is_pointer:
        left_scale = _element_size(right_type)
    elif op == "-" and left_is_pointer and right_is_pointer:
        result_divisor = _element_size(left_type)

    # ax = left, cx = right
    gen_value(expr.left, state)
    _scale_ax(state, left_scale)
    saved = state.push_long(Reg.AX)

    gen_value(expr.right, state)
    _scale_ax(state, right_scale)
    state.mov(Reg.AX, Reg.CX)
    state.pop_long(saved, Reg.AX)

    if op in _COMPARISON_SETS:
        signed_form, unsigned_form = _COMPARISON_SETS[op]
        use_unsigned = is_unsigned(left_type) or is_unsigned(right_type) or left_is_pointer or right_is_pointer
        state.cmp(Reg.CX, Reg.AX)
        getattr(state, unsigned_form if use_unsigned else signed_form)(Reg.AX)
        return Reg.AX

    if op == "+":
        state.add(Reg.CX, Reg.AX)
    elif op == "-":
        state.sub(Reg.CX, Reg.AX)
        if result_divisor != 1:
            _signed_exact_divide(state, result_divisor)
    elif op == "&":
        state.and_(Reg.CX, Reg.AX)
    elif op == "|":
        state.or_(Reg.CX, Reg.AX)
    elif op == "^":
        state.xor(Reg.CX, Reg.AX)
    elif op == "<<":
        state.shl(Reg.CX, Reg.AX)
    elif op == ">>":
        if is_unsigned(left_type):
            state.shr(Reg.CX, Reg.AX)
        else:
            state.sar(Reg.CX, Reg.AX)
    elif op == "*":
        state.mul(Reg.CX)
    else:
        state.xor(Reg.DX, Reg.DX)
        state.div(Reg.CX)
        if op == "%":
            state.mov(Reg.DX, Reg.AX)
    return Reg.AX


def _element_size(ty: ExprType) -> int:
    if ty.kind in _DECAYING_KINDS:
        return ty.elem_type.size_of
    return _pointee_size(ty)


# ----------------------------------------------------------------------
# dispatch


def gen_value(expr: Expression, state: CodegenState) -> Reg:
    """Emit code leaving the value of `expr` in ax."""
    if isinstance(expr, Variable):
        return _variable_value(expr, state)
    if isinstance(expr, IntLiteral):
        state.mov(expr.value, Reg.AX)
        return Reg.AX
    if isinstance(expr, StringLiteral):
        _string_address(expr, state)
        return Reg.AX
    if isinstance(expr, Assign):
        return _assign_value(expr, state)
    if isinstance(expr, AssignList):
        return _assign_list_value(expr, state)
    if isinstance(expr, ConditionalExpr):
        return _conditional_value(expr, state)
    if isinstance(expr, FuncCall):
        return _call_value(expr, state)
    if isinstance(expr, Attribute):
        return _attribute_value(expr, state)
    if isinstance(expr, Reference):
        gen_address(expr.expr, state)
        return Reg.AX
    if isinstance(expr, Dereference):
        return _dereference_value(expr, state)
    if isinstance(expr, TypeCast):
        return _cast_value(expr, state)
    if isinstance(expr, (PreIncrement, PreDecrement, PostIncrement, PostDecrement)):
        return _inc_dec_value(expr, state)
    if isinstance(expr, Negative):
        return _negative_value(expr, state)
    if isinstance(expr, BitwiseNot):
        return _bitwise_not_value(expr, state)
    if isinstance(expr, LogicalNot):
        return _logical_not_value(expr, state)
    if isinstance(expr, BinaryOp):
        return _binary_value(expr, state)
    raise InvalidProgramError(f"cannot generate code for {type(expr).__name__}")


def gen_address(expr: Expression, state: CodegenState) -> None:
    """Emit code leaving the address of `expr` in ax."""
    if isinstance(expr, Variable):
        _variable_address(expr, state)
        return
    if isinstance(expr, StringLiteral):
        _string_address(expr, state)
        return
    if isinstance(expr, Attribute):
        _attribute_address(expr, state)
        return
    if isinstance(expr, Dereference):
        _dereference_address(expr, state)
        return
    raise InvalidProgramError(f"cannot get the address of {_describe(expr)}")


def _describe(expr: Expression) -> str:
    descriptions: dict[type, str] = {
        IntLiteral: "an integer constant",
        Assign: "an assignment expression",
        AssignList: "an assignment list",
        ConditionalExpr: "a conditional expression",
        FuncCall: "a function call",
        Reference: "a pointer value",
        TypeCast: "a cast expression",
        PreIncrement: "an increment/decrement expression",
        PreDecrement: "an increment/decrement expression",
        PostIncrement: "an increment/decrement expression",
        PostDecrement: "an increment/decrement expression",
        Negative: "an unary arithmetic operator",
        BitwiseNot: "an unary arithmetic operator",
        LogicalNot: "an unary arithmetic operator",
        BinaryOp: "a binary expression",
    }
    return descriptions.get(type(expr), f"a {type(expr).__name__}")
