from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


WORD_SIZE = 1
POINTER_SIZE = 1
FIRST_LABEL_ID = 2
CODE_SECTION_HEADER = ".PROGRAM"
DATA_SECTION_HEADER = ".DATA"
LABEL_COLUMN = 8
INSTRUCTION_INDENT = " " * 8
COMMENT_INDENT = " " * 4


class Reg(str, Enum):
    AX = "ax"
    CX = "cx"
    DX = "dx"
    BX = "bx"

    BP = "bp"
    SP = "sp"

    ST0 = "st(0)_unused"


@dataclass(frozen=True)
class LabelScope:
    continue_label: int | None = None
    break_label: int | None = None
    default_label: int | None = None
    case_labels: dict[int, int] | None = field(default=None, hash=False)


@dataclass(frozen=True)
class CodegenOptions:
    # Symbol the entry stub calls; None emits no stub.
    entry_point: str | None = "main"


class CodegenError(ValueError):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidProgramError(CodegenError):
    pass


class UnsupportedFeatureError(CodegenError):
    pass


class ScopingError(CodegenError):
    pass


FLOATS_AND_STRUCTS_UNSUPPORTED = "floats and structs are not supported"
