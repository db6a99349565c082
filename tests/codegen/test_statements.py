from __future__ import annotations

import pytest

from cbackend.ast_nodes import (
    Assign,
    BinaryOp,
    BreakStmt,
    CaseStmt,
    CompoundStmt,
    ContinueStmt,
    DefaultStmt,
    DoWhileStmt,
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
    PostIncrement,
    ReturnStmt,
    SwitchStmt,
    TranslationUnit,
    Variable,
    WhileStmt,
)
from cbackend.codegen_model import CodegenOptions, InvalidProgramError, ScopingError, UnsupportedFeatureError
from cbackend.codegen_state import CodegenState
from cbackend.codegen_stmt import emit_program, gen_function, gen_stmt
from cbackend.env import EntryKind, Env, EnvEntry
from cbackend.type_model import DOUBLE, LONG, ArrayType, FunctionType


def _env() -> Env:
    return Env(
        {
            "i": EnvEntry(kind=EntryKind.STACK, type=LONG, offset=-1),
            "f": EnvEntry(kind=EntryKind.GLOBAL, type=FunctionType(LONG, (LONG,))),
        }
    )


def _i() -> Variable:
    return Variable(name="i", type=LONG, env=_env())


def _call_f(arg) -> FuncCall:
    return FuncCall(func=Variable(name="f", type=FunctionType(LONG, (LONG,)), env=_env()), args=[arg], type=LONG)


def _texts(state: CodegenState) -> list[str]:
    return [line.text for line in state.asm.lines if line.text]


def _in_function(stmt, goto_labels: list[str] | None = None) -> CodegenState:
    state = CodegenState()
    state.func_start("f")
    state.expand_stack_to(1)
    with state.enter_function(goto_labels or []):
        gen_stmt(stmt, state)
        assert state.stack_size == 1
    return state


def test_statements_leave_stack_depth_unchanged() -> None:
    statements = [
        ExprStmt(Assign(left=_i(), right=IntLiteral(1), type=LONG)),
        ExprStmt(_call_f(IntLiteral(1))),
        ExprStmt(BinaryOp(op="+", left=_call_f(IntLiteral(1)), right=_call_f(IntLiteral(2)), type=LONG)),
        IfStmt(cond=_call_f(IntLiteral(0)), then_stmt=ExprStmt(_call_f(IntLiteral(1)))),
        WhileStmt(cond=_call_f(_i()), body=CompoundStmt([ExprStmt(PostIncrement(expr=_i(), type=LONG)), BreakStmt()])),
        DoWhileStmt(body=ContinueStmt(), cond=_call_f(_i())),
        ForStmt(init=None, cond=None, loop=_call_f(_i()), body=BreakStmt()),
        ReturnStmt(_call_f(IntLiteral(3))),
    ]

    for stmt in statements:
        _in_function(stmt)


def test_expression_statement_forces_stack_back_after_call() -> None:
    state = _in_function(ExprStmt(_call_f(IntLiteral(1))))

    texts = _texts(state)
    assert texts[texts.index("call ax") + 2] == "lea sp, -1[bp]"


def test_local_initializer_is_lowered_as_assignment() -> None:
    state = _in_function(LocalDecl(target=_i(), initializer=IntLiteral(4)))

    assert _texts(state)[-5:] == ["lea ax, -1[bp]", "push ax", "mov ax, 4", "pop bx", "mov 0[bx], ax"]


def test_local_without_initializer_emits_nothing() -> None:
    state = _in_function(LocalDecl(target=_i()))

    assert _texts(state) == ["f:", "push bp", "mov bp, sp", "sub sp, 1"]


def test_if_else_layout() -> None:
    stmt = IfStmt(cond=_i(), then_stmt=ReturnStmt(IntLiteral(1)), else_stmt=ReturnStmt(IntLiteral(2)))

    state = _in_function(stmt)

    assert _texts(state)[4:] == [
        "mov ax, -1[bp]",
        "test ax, ax",
        "jz L3",
        "mov ax, 1",
        "jmp L2",
        "jmp L4",
        "L3:",
        "mov ax, 2",
        "jmp L2",
        "L4:",
    ]


def test_for_loop_continue_targets_step_expression() -> None:
    stmt = ForStmt(
        init=Assign(left=_i(), right=IntLiteral(0), type=LONG),
        cond=BinaryOp(op="<", left=_i(), right=IntLiteral(3), type=LONG),
        loop=PostIncrement(expr=_i(), type=LONG),
        body=ContinueStmt(),
    )

    texts = _texts(_in_function(stmt))

    # start L3, continue L4, end L5
    assert "jz L5" in texts
    assert texts[texts.index("L4:") - 1] == "jmp L4"
    assert texts[-2:] == ["jmp L3", "L5:"]


def test_switch_collects_cases_without_entering_nested_switch() -> None:
    inner = SwitchStmt(expr=_i(), body=CompoundStmt([CaseStmt(1, BreakStmt())]))
    outer = SwitchStmt(
        expr=_i(),
        body=CompoundStmt([CaseStmt(1, inner), CaseStmt(2, BreakStmt()), DefaultStmt(BreakStmt())]),
    )

    texts = _texts(_in_function(outer))

    # outer: case 1 L3, case 2 L4, default L5, break L6; inner: case 1 L7, break L8
    assert texts[4:11] == ["mov ax, -1[bp]", "cmp ax, 1", "je L3", "cmp ax, 2", "je L4", "jmp L5", "L3:"]
    assert texts[11:15] == ["mov ax, -1[bp]", "cmp ax, 1", "je L7", "jmp L8"]
    assert texts[-5:] == ["L4:", "jmp L6", "L5:", "jmp L6", "L6:"]


def test_switch_without_default_jumps_to_break() -> None:
    stmt = SwitchStmt(expr=_i(), body=CompoundStmt([CaseStmt(5, BreakStmt())]))

    texts = _texts(_in_function(stmt))

    assert texts[4:8] == ["mov ax, -1[bp]", "cmp ax, 5", "je L3", "jmp L4"]


def test_switch_rejects_duplicate_cases() -> None:
    stmt = SwitchStmt(expr=_i(), body=CompoundStmt([CaseStmt(1, BreakStmt()), CaseStmt(1, BreakStmt())]))

    with pytest.raises(InvalidProgramError, match="duplicate case value 1"):
        _in_function(stmt)


def test_continue_inside_switch_without_loop_is_rejected() -> None:
    stmt = SwitchStmt(expr=_i(), body=CompoundStmt([CaseStmt(1, ContinueStmt())]))

    with pytest.raises(ScopingError, match="continue statement not within a loop"):
        _in_function(stmt)


def test_case_outside_switch_is_rejected() -> None:
    with pytest.raises(ScopingError, match="case label not within a switch statement"):
        _in_function(CaseStmt(1, BreakStmt()))


def test_goto_and_labeled_statement_share_label() -> None:
    stmt = CompoundStmt([GotoStmt("out"), LabeledStmt("out", ReturnStmt())])

    texts = _texts(_in_function(stmt, ["out"]))

    assert texts[-3:] == ["jmp L3", "L3:", "jmp L2"]


def test_goto_to_undefined_label_is_rejected() -> None:
    with pytest.raises(ScopingError, match="label 'nowhere' used but not defined"):
        _in_function(GotoStmt("nowhere"))


def test_function_emits_prologue_and_single_return_label() -> None:
    func = FunctionDef(
        name="main",
        type=FunctionType(LONG),
        body=CompoundStmt([ReturnStmt(IntLiteral(1)), ReturnStmt(IntLiteral(2))]),
        frame_size=2,
    )
    state = CodegenState()

    gen_function(func, state)

    assert _texts(state) == [
        "main:",
        "push bp",
        "mov bp, sp",
        "sub sp, 2",
        "# locals",
        "mov ax, 1",
        "jmp L2",
        "mov ax, 2",
        "jmp L2",
        "L2:",
        "leave",
        "ret",
    ]
    assert state.scope_depth == 0


def test_function_scope_is_released_after_failure() -> None:
    func = FunctionDef(name="main", type=FunctionType(LONG), body=CompoundStmt([BreakStmt()]))
    state = CodegenState()

    with pytest.raises(ScopingError):
        gen_function(func, state)

    with pytest.raises(ScopingError, match="not inside a function"):
        state.return_label


def test_function_returning_double_is_unsupported() -> None:
    func = FunctionDef(name="avg", type=FunctionType(DOUBLE), body=CompoundStmt([]))

    with pytest.raises(UnsupportedFeatureError, match="function 'avg'"):
        gen_function(func, CodegenState())


def test_emit_program_renders_entry_stub_globals_and_functions() -> None:
    unit = TranslationUnit(
        globals=[GlobalDecl("count", LONG, 4), GlobalDecl("buf", ArrayType(LONG, 2))],
        functions=[FunctionDef(name="main", type=FunctionType(LONG), body=CompoundStmt([ReturnStmt()]))],
    )

    asm = emit_program(unit)

    assert asm == (
        ".PROGRAM\n"
        "        mov ax, main\n"
        "        call main\n"
        "\n"
        "main:   push bp\n"
        "        mov bp, sp\n"
        "        jmp L2\n"
        "L2:     leave\n"
        "        ret\n"
        "\n"
        "\n"
        ".DATA\n"
        "\n"
        "count:    4\n"
        "buf:    0, 0\n"
    )


def test_emit_program_without_entry_stub() -> None:
    unit = TranslationUnit(globals=[], functions=[])

    assert emit_program(unit, CodegenOptions(entry_point=None)) == ".PROGRAM\n\n.DATA\n\n"
