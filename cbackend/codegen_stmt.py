from __future__ import annotations

import logging
from collections.abc import Iterator

from cbackend.ast_nodes import (
    Assign,
    BreakStmt,
    CaseStmt,
    CompoundStmt,
    ContinueStmt,
    DefaultStmt,
    DoWhileStmt,
    Expression,
    ExprStmt,
    ForStmt,
    FunctionDef,
    GlobalDecl,
    GotoStmt,
    IfStmt,
    LabeledStmt,
    LocalDecl,
    ReturnStmt,
    Statement,
    SwitchStmt,
    TranslationUnit,
    WhileStmt,
)
from cbackend.codegen import gen_value
from cbackend.codegen_model import (
    FLOATS_AND_STRUCTS_UNSUPPORTED,
    CodegenOptions,
    InvalidProgramError,
    Reg,
    UnsupportedFeatureError,
)
from cbackend.codegen_state import CodegenState
from cbackend.type_model import FLOATING_KINDS, ExprType, ExprTypeKind, is_scalar


LOGGER = logging.getLogger(__name__)


def _child_statements(stmt: Statement) -> Iterator[Statement]:
    if isinstance(stmt, CompoundStmt):
        yield from stmt.stmts
    elif isinstance(stmt, IfStmt):
        yield stmt.then_stmt
        if stmt.else_stmt is not None:
            yield stmt.else_stmt
    elif isinstance(stmt, (WhileStmt, DoWhileStmt, ForStmt, SwitchStmt)):
        yield stmt.body
    elif isinstance(stmt, (CaseStmt, DefaultStmt, LabeledStmt)):
        yield stmt.stmt


def _collect_goto_labels(stmt: Statement, out: list[str]) -> None:
    if isinstance(stmt, LabeledStmt):
        out.append(stmt.label)
    for child in _child_statements(stmt):
        _collect_goto_labels(child, out)


def _collect_switch_cases(stmt: Statement, values: list[int], defaults: list[DefaultStmt]) -> None:
    # Cases of a nested switch belong to that switch.
    if isinstance(stmt, SwitchStmt):
        return
    if isinstance(stmt, CaseStmt):
        if stmt.value in values:
            raise InvalidProgramError(f"duplicate case value {stmt.value}")
        values.append(stmt.value)
    elif isinstance(stmt, DefaultStmt):
        if defaults:
            raise InvalidProgramError("multiple default labels in one switch")
        defaults.append(stmt)
    for child in _child_statements(stmt):
        _collect_switch_cases(child, values, defaults)


def _check_condition_type(ty: ExprType) -> None:
    if ty.kind in FLOATING_KINDS:
        raise UnsupportedFeatureError("FP comparison is not supported")
    if ty.kind is ExprTypeKind.STRUCT_OR_UNION:
        raise InvalidProgramError("a condition must have scalar type")


def _gen_discarded(expr: Expression, state: CodegenState) -> None:
    stack_size = state.stack_size
    gen_value(expr, state)
    if state.stack_size != stack_size:
        state.force_stack_size_to(stack_size)


def _gen_condition(expr: Expression, state: CodegenState) -> None:
    _check_condition_type(expr.type)
    _gen_discarded(expr, state)
    state.test(Reg.AX, Reg.AX)


def gen_stmt(stmt: Statement, state: CodegenState) -> None:
    if isinstance(stmt, ExprStmt):
        _gen_discarded(stmt.expr, state)
        return

    if isinstance(stmt, CompoundStmt):
        for nested in stmt.stmts:
            gen_stmt(nested, state)
        return

    if isinstance(stmt, LocalDecl):
        if stmt.initializer is None:
            return
        target_type = stmt.target.type
        if not is_scalar(target_type):
            if target_type.kind in FLOATING_KINDS or target_type.kind is ExprTypeKind.STRUCT_OR_UNION:
                raise UnsupportedFeatureError(FLOATS_AND_STRUCTS_UNSUPPORTED)
            raise InvalidProgramError(f"cannot initialize '{stmt.target.name}' with a single expression")
        _gen_discarded(Assign(left=stmt.target, right=stmt.initializer, type=target_type), state)
        return

    if isinstance(stmt, IfStmt):
        else_label = state.request_label()
        end_label = state.request_label()

        _gen_condition(stmt.cond, state)
        state.jz(else_label)
        gen_stmt(stmt.then_stmt, state)
        state.jmp(end_label)
        state.label(else_label)
        if stmt.else_stmt is not None:
            gen_stmt(stmt.else_stmt, state)
        state.label(end_label)
        return

    if isinstance(stmt, WhileStmt):
        start_label = state.request_label()
        end_label = state.request_label()

        state.label(start_label)
        _gen_condition(stmt.cond, state)
        state.jz(end_label)
        with state.enter_loop(continue_label=start_label, break_label=end_label):
            gen_stmt(stmt.body, state)
        state.jmp(start_label)
        state.label(end_label)
        return

    if isinstance(stmt, DoWhileStmt):
        start_label = state.request_label()
        continue_label = state.request_label()
        end_label = state.request_label()

        state.label(start_label)
        with state.enter_loop(continue_label=continue_label, break_label=end_label):
            gen_stmt(stmt.body, state)
        state.label(continue_label)
        _gen_condition(stmt.cond, state)
        state.jnz(start_label)
        state.label(end_label)
        return

    if isinstance(stmt, ForStmt):
        start_label = state.request_label()
        continue_label = state.request_label()
        end_label = state.request_label()

        if stmt.init is not None:
            _gen_discarded(stmt.init, state)
        state.label(start_label)
        if stmt.cond is not None:
            _gen_condition(stmt.cond, state)
            state.jz(end_label)
        with state.enter_loop(continue_label=continue_label, break_label=end_label):
            gen_stmt(stmt.body, state)
        state.label(continue_label)
        if stmt.loop is not None:
            _gen_discarded(stmt.loop, state)
        state.jmp(start_label)
        state.label(end_label)
        return

    if isinstance(stmt, SwitchStmt):
        _gen_switch(stmt, state)
        return

    if isinstance(stmt, CaseStmt):
        state.label(state.case_label(stmt.value))
        gen_stmt(stmt.stmt, state)
        return

    if isinstance(stmt, DefaultStmt):
        state.label(state.default_label)
        gen_stmt(stmt.stmt, state)
        return

    if isinstance(stmt, BreakStmt):
        state.jmp(state.break_label)
        return

    if isinstance(stmt, ContinueStmt):
        state.jmp(state.continue_label)
        return

    if isinstance(stmt, GotoStmt):
        state.jmp(state.goto_label(stmt.label))
        return

    if isinstance(stmt, LabeledStmt):
        state.label(state.goto_label(stmt.label))
        gen_stmt(stmt.stmt, state)
        return

    if isinstance(stmt, ReturnStmt):
        if stmt.expr is not None:
            return_kind = stmt.expr.type.kind
            if return_kind in FLOATING_KINDS or return_kind is ExprTypeKind.STRUCT_OR_UNION:
                raise UnsupportedFeatureError(FLOATS_AND_STRUCTS_UNSUPPORTED)
            _gen_discarded(stmt.expr, state)
        state.jmp(state.return_label)
        return

    raise InvalidProgramError(f"cannot generate code for {type(stmt).__name__}")


def _gen_switch(stmt: SwitchStmt, state: CodegenState) -> None:
    _check_condition_type(stmt.expr.type)
    if not is_scalar(stmt.expr.type):
        raise InvalidProgramError("switch quantity must have integral type")

    values: list[int] = []
    defaults: list[DefaultStmt] = []
    _collect_switch_cases(stmt.body, values, defaults)

    case_labels = {value: state.request_label() for value in values}
    default_label = state.request_label() if defaults else None
    break_label = state.request_label()

    _gen_discarded(stmt.expr, state)
    for value, label in case_labels.items():
        state.cmp(value, Reg.AX)
        state.je(label)
    state.jmp(break_label if default_label is None else default_label)

    with state.enter_switch(break_label, default_label, case_labels):
        gen_stmt(stmt.body, state)
    state.label(break_label)


def gen_function(func: FunctionDef, state: CodegenState) -> None:
    return_kind = func.type.return_type.kind
    if return_kind in FLOATING_KINDS or return_kind is ExprTypeKind.STRUCT_OR_UNION:
        raise UnsupportedFeatureError(f"function '{func.name}': {FLOATS_AND_STRUCTS_UNSUPPORTED}")

    goto_labels: list[str] = []
    _collect_goto_labels(func.body, goto_labels)

    LOGGER.debug("generating function %s (frame %d words)", func.name, func.frame_size)
    state.func_start(func.name)
    state.expand_stack_to(func.frame_size, "locals")

    with state.enter_function(goto_labels) as return_label:
        gen_stmt(func.body, state)
        state.label(return_label)
        state.leave()
        state.ret()
    state.newline()


def _declare_global(decl: GlobalDecl, state: CodegenState) -> None:
    if decl.type.kind is ExprTypeKind.FUNCTION:
        return
    if is_scalar(decl.type):
        state.declare_word(decl.name, decl.initializer)
        return
    if decl.initializer != 0:
        raise InvalidProgramError(f"global '{decl.name}' of aggregate type cannot have a scalar initializer")
    state.declare_zeroed(decl.name, decl.type.size_of)


def emit_program(unit: TranslationUnit, options: CodegenOptions = CodegenOptions()) -> str:
    state = CodegenState()

    if options.entry_point is not None:
        state.mov(options.entry_point, Reg.AX)
        state.call(options.entry_point)
        state.newline()

    for decl in unit.globals:
        _declare_global(decl, state)

    for func in unit.functions:
        gen_function(func, state)

    LOGGER.info("generated %d functions, %d lines", len(unit.functions), len(state.asm.lines))
    return state.asm.render()
