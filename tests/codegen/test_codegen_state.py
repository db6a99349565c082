from __future__ import annotations

import pytest

from cbackend.codegen_model import Reg, ScopingError
from cbackend.codegen_state import CodegenState


def _texts(state: CodegenState) -> list[str]:
    return [line.text for line in state.asm.lines]


def test_labels_start_at_two_and_never_repeat() -> None:
    state = CodegenState()

    labels = [state.request_label() for _ in range(5)]

    assert labels == [2, 3, 4, 5, 6]


def test_label_renders_numbered_and_named_labels() -> None:
    state = CodegenState()
    state.label(7)
    state.label("main")

    assert _texts(state) == ["L7:", "main:"]


def test_func_start_saves_frame_and_resets_stack() -> None:
    state = CodegenState()
    state.expand_stack_by(3)

    state.func_start("main")

    assert _texts(state)[-3:] == ["main:", "push bp", "mov bp, sp"]
    assert state.stack_size == 0


def test_pop_long_pops_when_nothing_was_pushed_since() -> None:
    state = CodegenState()

    saved = state.push_long(Reg.AX)
    state.pop_long(saved, Reg.BX)

    assert saved == 1
    assert _texts(state) == ["push ax", "pop bx"]
    assert state.stack_size == 0


def test_pop_long_reads_saved_slot_when_stack_moved() -> None:
    state = CodegenState()

    saved = state.push_long(Reg.AX)
    state.push_long(Reg.CX)
    state.pop_long(saved, Reg.BX)

    assert _texts(state) == ["push ax", "push cx", "mov bx, -1[bp]"]
    assert state.stack_size == 2


def test_stack_adjustments_track_stack_size() -> None:
    state = CodegenState()

    state.expand_stack_by(2)
    assert state.stack_size == 2
    state.expand_stack_to(1)
    assert state.stack_size == 2
    state.expand_stack_to(5, "locals")
    assert state.stack_size == 5
    state.shrink_stack_by(4)
    assert state.stack_size == 1
    state.expand_stack_with_alignment(3, 2)
    assert state.stack_size == 4
    state.force_stack_size_to(3)
    assert state.stack_size == 3

    assert _texts(state) == [
        "sub sp, 2",
        "sub sp, 3",
        "# locals",
        "add sp, 4",
        "sub sp, 3",
        "lea sp, -3[bp]",
    ]


def test_two_operand_emitters_print_destination_first() -> None:
    state = CodegenState()

    state.mov(Reg.SP, Reg.BP)
    state.load(2, Reg.BP, Reg.AX)
    state.store(Reg.AX, 0, Reg.BX)
    state.cmp(Reg.CX, Reg.AX)
    state.lea("LC0", Reg.AX, "string")
    state.add(1, Reg.BX, "step")

    assert _texts(state) == [
        "mov bp, sp",
        "mov ax, 2[bp]",
        "mov 0[bx], ax",
        "cmp ax, cx",
        "lea ax, LC0 # string",
        "add bx, 1",
        "# step",
    ]


def test_jumps_and_set_forms_name_their_condition() -> None:
    state = CodegenState()

    state.jnz(4)
    state.je(5)
    state.jmp("done")
    state.setb(Reg.AX)
    state.setge(Reg.AX)

    assert _texts(state) == ["jnz L4", "je L5", "jmp done", "setb ax", "setge ax"]


def test_nested_scopes_resolve_innermost_supplier() -> None:
    state = CodegenState()

    with state.enter_loop(continue_label=10, break_label=11):
        with state.enter_switch(20, 21, {1: 22}):
            with state.enter_loop(continue_label=30, break_label=31):
                assert state.continue_label == 30
                assert state.break_label == 31
                assert state.default_label == 21
                assert state.case_label(1) == 22
            assert state.continue_label == 10
            assert state.break_label == 20
        assert state.break_label == 11
        with pytest.raises(ScopingError, match="default label not within a switch"):
            state.default_label

    assert state.scope_depth == 0


def test_scope_lookups_fail_without_supplier() -> None:
    state = CodegenState()

    with pytest.raises(ScopingError, match="break statement not within a loop or switch"):
        state.break_label
    with state.enter_switch(2, None, {}):
        with pytest.raises(ScopingError, match="continue statement not within a loop"):
            state.continue_label
        with pytest.raises(ScopingError, match="no case label for value 3"):
            state.case_label(3)


def test_scope_guard_releases_on_exception() -> None:
    state = CodegenState()

    with pytest.raises(RuntimeError, match="boom"):
        with state.enter_loop(continue_label=2, break_label=3):
            raise RuntimeError("boom")

    assert state.scope_depth == 0


def test_scope_guards_released_out_of_order_are_rejected() -> None:
    state = CodegenState()
    outer = state.enter_loop(continue_label=2, break_label=3)
    state.enter_loop(continue_label=4, break_label=5)

    with pytest.raises(ScopingError, match="out of order"):
        outer.release()


def test_exit_scope_without_scope_is_rejected() -> None:
    with pytest.raises(ScopingError, match="no label scope"):
        CodegenState().exit_scope()


def test_function_scope_allocates_return_and_goto_labels() -> None:
    state = CodegenState()

    with state.enter_function(["again", "out"]) as return_label:
        assert return_label == 2
        assert state.goto_label("again") == 3
        assert state.goto_label("out") == 4
        with pytest.raises(ScopingError, match="label 'missing' used but not defined"):
            state.goto_label("missing")

    with pytest.raises(ScopingError, match="not inside a function"):
        state.return_label


def test_function_scope_rejects_duplicate_labels() -> None:
    with pytest.raises(ScopingError, match="duplicate label 'out'"):
        CodegenState().enter_function(["out", "out"])


def test_interned_constants_get_fresh_names() -> None:
    state = CodegenState()

    first = state.intern_long(5)
    second = state.intern_string('say "hi"')
    third = state.intern_long(5)

    assert (first, second, third) == ("LC0", "LC1", "LC2")
    assert [line.text for line in state.asm.declarations()] == [
        "LC0:    5",
        'LC1:    "say \\"hi\\""',
        "LC2:    5",
    ]


def test_str_renders_program() -> None:
    state = CodegenState()
    state.ret()

    assert str(state) == ".PROGRAM\n        ret\n\n.DATA\n\n"


def test_interned_strings_escape_control_bytes() -> None:
    state = CodegenState()

    state.intern_string("a\nb\x01\\")

    assert state.asm.declarations()[0].text == 'LC0:    "a\\nb\\001\\\\"'
