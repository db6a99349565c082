from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cbackend.codegen_model import (
    CODE_SECTION_HEADER,
    COMMENT_INDENT,
    DATA_SECTION_HEADER,
    INSTRUCTION_INDENT,
    LABEL_COLUMN,
)


class LineKind(str, Enum):
    EMPTY = "EMPTY"
    LABEL = "LABEL"
    INSTRUCTION = "INSTRUCTION"
    COMMENT = "COMMENT"
    DECLARATION = "DECLARATION"


@dataclass(frozen=True)
class AsmLine:
    lineno: int
    kind: LineKind
    text: str


def _merge_label(label: str, text: str) -> str:
    padding = max(1, LABEL_COLUMN - len(label))
    return f"{label}{' ' * padding}{text}".rstrip()


def _move_labels_forward(lines: list[AsmLine]) -> None:
    # The last entry is the trailing sentinel; labels never move past it.
    last = len(lines) - 1
    for index in range(last):
        if lines[index].kind is not LineKind.LABEL:
            continue
        cursor = index
        while cursor + 1 < last and lines[cursor + 1].kind not in (LineKind.INSTRUCTION, LineKind.LABEL):
            lines[cursor], lines[cursor + 1] = lines[cursor + 1], lines[cursor]
            cursor += 1


class AsmProgram:
    """Append-only record of emitted lines, rendered into `.PROGRAM` / `.DATA` text."""

    def __init__(self) -> None:
        self.lines: list[AsmLine] = []
        self._lineno = 0

    def _add(self, kind: LineKind, text: str) -> AsmLine:
        line = AsmLine(lineno=self._lineno, kind=kind, text=text)
        self.lines.append(line)
        self._lineno += 1
        return line

    def add_instruction(self, text: str) -> AsmLine:
        return self._add(LineKind.INSTRUCTION, text)

    def add_comment(self, text: str) -> AsmLine:
        return self._add(LineKind.COMMENT, text)

    def add_label(self, text: str) -> AsmLine:
        return self._add(LineKind.LABEL, text)

    def add_declaration(self, text: str) -> AsmLine:
        return self._add(LineKind.DECLARATION, text)

    def add_empty(self) -> AsmLine:
        return self._add(LineKind.EMPTY, "")

    def declarations(self) -> list[AsmLine]:
        return [line for line in self.lines if line.kind is LineKind.DECLARATION]

    def render(self) -> str:
        lines = list(self.lines)
        lines.append(AsmLine(lineno=self._lineno, kind=LineKind.EMPTY, text=""))
        _move_labels_forward(lines)

        out: list[str] = [CODE_SECTION_HEADER]
        index = 0
        while index < len(lines) - 1:
            line = lines[index]
            if line.kind is LineKind.DECLARATION:
                index += 1
                continue

            if line.kind is LineKind.LABEL:
                following = lines[index + 1]
                if following.kind is LineKind.LABEL:
                    out.append(line.text)
                    index += 1
                    continue
                out.append(_merge_label(line.text, following.text))
                index += 2
                continue

            if line.kind is LineKind.COMMENT:
                out.append(f"{COMMENT_INDENT}{line.text}")
            elif line.kind is LineKind.INSTRUCTION:
                out.append(f"{INSTRUCTION_INDENT}{line.text}")
            else:
                out.append("")
            index += 1

        out.append("")
        out.append(DATA_SECTION_HEADER)
        out.append("")
        for line in lines:
            if line.kind is LineKind.DECLARATION:
                out.append(line.text)

        return "\n".join(out) + "\n"
