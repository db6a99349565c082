"""Code generation context for the word machine.

Every emitter appends exactly one line to the owned `AsmProgram`. Two-operand
emitters take `(src, dst)` and print Intel order (`op dst, src`). Operands are
registers, immediates, or raw operand text such as a symbol name.

`stack_size` is the number of words `sp` sits below `bp`. Only the
`*_stack_*` helpers and `push_long` / `pop_long` touch `sp`, and each of them
updates the counter together with the instruction it emits.
"""

from __future__ import annotations

import logging

from cbackend.asm_program import AsmProgram
from cbackend.codegen_model import FIRST_LABEL_ID, LabelScope, Reg, ScopingError
from cbackend.codegen_str_helper import quote_asm_string
from cbackend.layout import round_up


LOGGER = logging.getLogger(__name__)

Operand = Reg | int | str


def _operand(value: Operand) -> str:
    if isinstance(value, Reg):
        return value.value
    return str(value)


def _frame_operand(offset: int, base: Reg) -> str:
    return f"{offset}[{base.value}]"


def _label_name(label: int | str) -> str:
    if isinstance(label, int):
        return f"L{label}"
    return label


class ScopeGuard:
    def __init__(self, state: CodegenState, scope: LabelScope) -> None:
        self._state = state
        self._scope = scope
        self._released = False

    @property
    def scope(self) -> LabelScope:
        return self._scope

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._state._pop_scope(self._scope)

    def __enter__(self) -> LabelScope:
        return self._scope

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class FunctionGuard:
    def __init__(self, state: CodegenState) -> None:
        self._state = state
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._state.exit_function()

    def __enter__(self) -> int:
        return self._state.return_label

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class CodegenState:
    def __init__(self) -> None:
        self.asm = AsmProgram()
        self._stack_size = 0
        self._label_idx = FIRST_LABEL_ID
        self._rodata_idx = 0
        self._label_scopes: list[LabelScope] = []
        self._goto_labels: dict[str, int] = {}
        self._return_label: int | None = None

    def __str__(self) -> str:
        return self.asm.render()

    @property
    def stack_size(self) -> int:
        return self._stack_size

    # ------------------------------------------------------------------
    # labels

    def request_label(self) -> int:
        label = self._label_idx
        self._label_idx += 1
        return label

    def label(self, label: int | str) -> None:
        self.asm.add_label(f"{_label_name(label)}:")

    # ------------------------------------------------------------------
    # label scopes

    def enter_loop(self, continue_label: int, break_label: int) -> ScopeGuard:
        return self._push_scope(LabelScope(continue_label=continue_label, break_label=break_label))

    def enter_switch(self, break_label: int, default_label: int | None, case_labels: dict[int, int]) -> ScopeGuard:
        scope = LabelScope(break_label=break_label, default_label=default_label, case_labels=dict(case_labels))
        return self._push_scope(scope)

    def exit_scope(self) -> None:
        if not self._label_scopes:
            raise ScopingError("no label scope to leave")
        scope = self._label_scopes.pop()
        LOGGER.debug("left label scope %s (depth %d)", scope, len(self._label_scopes))

    def _push_scope(self, scope: LabelScope) -> ScopeGuard:
        self._label_scopes.append(scope)
        LOGGER.debug("entered label scope %s (depth %d)", scope, len(self._label_scopes))
        return ScopeGuard(self, scope)

    def _pop_scope(self, scope: LabelScope) -> None:
        if not self._label_scopes or self._label_scopes[-1] is not scope:
            raise ScopingError("label scopes released out of order")
        self.exit_scope()

    @property
    def scope_depth(self) -> int:
        return len(self._label_scopes)

    @property
    def continue_label(self) -> int:
        for scope in reversed(self._label_scopes):
            if scope.continue_label is not None:
                return scope.continue_label
        raise ScopingError("continue statement not within a loop")

    @property
    def break_label(self) -> int:
        for scope in reversed(self._label_scopes):
            if scope.break_label is not None:
                return scope.break_label
        raise ScopingError("break statement not within a loop or switch")

    @property
    def default_label(self) -> int:
        for scope in reversed(self._label_scopes):
            if scope.default_label is not None:
                return scope.default_label
        raise ScopingError("default label not within a switch statement")

    def case_label(self, value: int) -> int:
        for scope in reversed(self._label_scopes):
            if scope.case_labels is None:
                continue
            label = scope.case_labels.get(value)
            if label is None:
                raise ScopingError(f"no case label for value {value} in the enclosing switch")
            return label
        raise ScopingError("case label not within a switch statement")

    # ------------------------------------------------------------------
    # function scope

    def enter_function(self, goto_labels: list[str]) -> FunctionGuard:
        self._return_label = self.request_label()
        self._goto_labels.clear()
        for name in goto_labels:
            if name in self._goto_labels:
                raise ScopingError(f"duplicate label '{name}'")
            self._goto_labels[name] = self.request_label()
        LOGGER.debug("entered function scope: return label L%d, goto labels %s", self._return_label, self._goto_labels)
        return FunctionGuard(self)

    def exit_function(self) -> None:
        LOGGER.debug("left function scope (return label %s)", self._return_label)
        self._return_label = None
        self._goto_labels.clear()

    @property
    def return_label(self) -> int:
        if self._return_label is None:
            raise ScopingError("not inside a function")
        return self._return_label

    def goto_label(self, name: str) -> int:
        if self._return_label is None:
            raise ScopingError("not inside a function")
        label = self._goto_labels.get(name)
        if label is None:
            raise ScopingError(f"label '{name}' used but not defined")
        return label

    # ------------------------------------------------------------------
    # stack

    def func_start(self, name: str) -> None:
        self.label(name)
        self._push(Reg.BP)
        self.mov(Reg.SP, Reg.BP)
        self._stack_size = 0

    def expand_stack_to(self, size: int, comment: str = "") -> None:
        if size > self._stack_size:
            self.sub(size - self._stack_size, Reg.SP, comment)
            self._stack_size = size

    def expand_stack_by(self, nwords: int, comment: str = "") -> None:
        self._stack_size += nwords
        self.sub(nwords, Reg.SP, comment)

    def expand_stack_with_alignment(self, nwords: int, align: int) -> None:
        nwords = round_up(self._stack_size + nwords, align) - self._stack_size
        self.expand_stack_by(nwords)

    def force_stack_size_to(self, nwords: int, comment: str = "") -> None:
        self._stack_size = nwords
        self.lea_offset(-nwords, Reg.BP, Reg.SP, comment)

    def shrink_stack_by(self, nwords: int) -> None:
        self._stack_size -= nwords
        self.add(nwords, Reg.SP)

    def push_long(self, src: Reg | int) -> int:
        self._push(src)
        self._stack_size += 1
        return self._stack_size

    def pop_long(self, saved_size: int, dst: Reg) -> None:
        if self._stack_size == saved_size:
            self._pop(dst)
            self._stack_size -= 1
        else:
            # Something was pushed after the save; `pop` would fetch the wrong slot.
            self.load(-saved_size, Reg.BP, dst)

    def _push(self, src: Operand) -> None:
        self.asm.add_instruction(f"push {_operand(src)}")

    def _pop(self, dst: Operand) -> None:
        self.asm.add_instruction(f"pop {_operand(dst)}")

    # ------------------------------------------------------------------
    # data movement

    def mov(self, src: Operand, dst: Operand) -> None:
        self.asm.add_instruction(f"mov {_operand(dst)}, {_operand(src)}")

    def load(self, offset: int, base: Reg, dst: Reg) -> None:
        self.mov(_frame_operand(offset, base), dst)

    def store(self, src: Reg, offset: int, base: Reg) -> None:
        self.mov(src, _frame_operand(offset, base))

    def lea(self, addr: str, dst: Reg, comment: str = "") -> None:
        text = f"lea {_operand(dst)}, {addr}"
        if comment:
            text = f"{text} # {comment}"
        self.asm.add_instruction(text)

    def lea_offset(self, offset: int, base: Reg, dst: Reg, comment: str = "") -> None:
        self.lea(_frame_operand(offset, base), dst, comment)

    # ------------------------------------------------------------------
    # arithmetic

    def _binary(self, op: str, src: Operand, dst: Operand, comment: str = "") -> None:
        self.asm.add_instruction(f"{op} {_operand(dst)}, {_operand(src)}")
        if comment:
            self.asm.add_comment(f"# {comment}")

    def add(self, src: Operand, dst: Operand, comment: str = "") -> None:
        self._binary("add", src, dst, comment)

    def sub(self, src: Operand, dst: Operand, comment: str = "") -> None:
        self._binary("sub", src, dst, comment)

    def and_(self, src: Operand, dst: Operand) -> None:
        self._binary("and", src, dst)

    def or_(self, src: Operand, dst: Operand, comment: str = "") -> None:
        self._binary("or", src, dst, comment)

    def xor(self, src: Operand, dst: Operand) -> None:
        self._binary("xor", src, dst)

    def shl(self, shift: Operand, operand: Operand) -> None:
        self._binary("shl", shift, operand)

    def sar(self, shift: Operand, operand: Operand) -> None:
        self._binary("sar", shift, operand)

    def shr(self, shift: Operand, operand: Operand) -> None:
        self._binary("shr", shift, operand)

    def mul(self, src: Operand) -> None:
        """dx:ax = ax * src (unsigned)."""
        self.asm.add_instruction(f"mul {_operand(src)}")

    def div(self, src: Operand) -> None:
        """ax = dx:ax / src, dx = remainder (unsigned)."""
        self.asm.add_instruction(f"div {_operand(src)}")

    def neg(self, dst: Operand) -> None:
        self.asm.add_instruction(f"neg {_operand(dst)}")

    def not_(self, dst: Operand) -> None:
        self.asm.add_instruction(f"not {_operand(dst)}")

    # ------------------------------------------------------------------
    # comparisons

    def cmp(self, right: Operand, left: Operand) -> None:
        """Compare `left` against `right` (flags from left - right)."""
        self._binary("cmp", right, left)

    def test(self, right: Operand, left: Operand) -> None:
        self._binary("test", right, left)

    def _set(self, op: str, dst: Operand) -> None:
        self.asm.add_instruction(f"{op} {_operand(dst)}")

    def sete(self, dst: Operand) -> None:
        self._set("sete", dst)

    def setne(self, dst: Operand) -> None:
        self._set("setne", dst)

    def setg(self, dst: Operand) -> None:
        self._set("setg", dst)

    def setge(self, dst: Operand) -> None:
        self._set("setge", dst)

    def setl(self, dst: Operand) -> None:
        self._set("setl", dst)

    def setle(self, dst: Operand) -> None:
        self._set("setle", dst)

    def setb(self, dst: Operand) -> None:
        self._set("setb", dst)

    def setnb(self, dst: Operand) -> None:
        self._set("setnb", dst)

    def seta(self, dst: Operand) -> None:
        self._set("seta", dst)

    def setna(self, dst: Operand) -> None:
        self._set("setna", dst)

    # ------------------------------------------------------------------
    # control transfer

    def _jump(self, op: str, label: int | str) -> None:
        self.asm.add_instruction(f"{op} {_label_name(label)}")

    def jmp(self, label: int | str) -> None:
        self._jump("jmp", label)

    def jz(self, label: int | str) -> None:
        self._jump("jz", label)

    def jnz(self, label: int | str) -> None:
        self._jump("jnz", label)

    def jc(self, label: int | str) -> None:
        self._jump("jc", label)

    def je(self, label: int | str) -> None:
        self._jump("je", label)

    def jne(self, label: int | str) -> None:
        self._jump("jne", label)

    def jl(self, label: int | str) -> None:
        self._jump("jl", label)

    def jle(self, label: int | str) -> None:
        self._jump("jle", label)

    def jg(self, label: int | str) -> None:
        self._jump("jg", label)

    def jge(self, label: int | str) -> None:
        self._jump("jge", label)

    def call(self, addr: Operand) -> None:
        self.asm.add_instruction(f"call {_operand(addr)}")

    def leave(self) -> None:
        self.asm.add_instruction("leave")

    def ret(self) -> None:
        self.asm.add_instruction("ret")

    # ------------------------------------------------------------------
    # layout and annotations

    def newline(self) -> None:
        self.asm.add_empty()

    def comment(self, text: str) -> None:
        self.asm.add_comment(f"# {text}")

    # ------------------------------------------------------------------
    # static data

    def _next_rodata_name(self) -> str:
        name = f"LC{self._rodata_idx}"
        self._rodata_idx += 1
        return name

    def intern_long(self, value: int) -> str:
        name = self._next_rodata_name()
        self.asm.add_declaration(f"{name}:    {value}")
        LOGGER.debug("interned constant %s = %d", name, value)
        return name

    def intern_string(self, text: str) -> str:
        name = self._next_rodata_name()
        self.asm.add_declaration(f"{name}:    {quote_asm_string(text)}")
        LOGGER.debug("interned string %s = %r", name, text)
        return name

    def declare_word(self, name: str, value: int) -> None:
        self.asm.add_declaration(f"{name}:    {value}")

    def declare_zeroed(self, name: str, nwords: int) -> None:
        self.asm.add_declaration(f"{name}:    {', '.join(['0'] * max(nwords, 1))}")
