from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cbackend.codegen_model import WORD_SIZE
from cbackend.layout import round_up
from cbackend.type_model import LONG, ExprType


# Saved bp at 0[bp], return address at 1[bp]; arguments start above them.
FIRST_PARAM_OFFSET = 2 * WORD_SIZE


class EntryKind(str, Enum):
    FRAME = "FRAME"
    STACK = "STACK"
    GLOBAL = "GLOBAL"
    ENUM = "ENUM"
    TYPEDEF = "TYPEDEF"


@dataclass(frozen=True)
class EnvEntry:
    kind: EntryKind
    type: ExprType
    # Frame offset for FRAME/STACK entries, the constant for ENUM entries.
    offset: int = 0


class Env:
    """Persistent symbol environment: every `add_*` returns a new Env."""

    def __init__(
        self,
        entries: dict[str, EnvEntry] | None = None,
        *,
        frame_size: int = 0,
        param_size: int = 0,
    ) -> None:
        self._entries: dict[str, EnvEntry] = dict(entries or {})
        self.frame_size = frame_size
        self.param_size = param_size

    def __repr__(self) -> str:
        return f"Env({sorted(self._entries)!r}, frame_size={self.frame_size})"

    def _extend(self, name: str, entry: EnvEntry, *, frame_size: int | None = None, param_size: int | None = None) -> Env:
        entries = dict(self._entries)
        entries[name] = entry
        return Env(
            entries,
            frame_size=self.frame_size if frame_size is None else frame_size,
            param_size=self.param_size if param_size is None else param_size,
        )

    def find(self, name: str) -> EnvEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def add_global(self, name: str, ty: ExprType) -> Env:
        return self._extend(name, EnvEntry(kind=EntryKind.GLOBAL, type=ty))

    def add_enum(self, name: str, value: int) -> Env:
        return self._extend(name, EnvEntry(kind=EntryKind.ENUM, type=LONG, offset=value))

    def add_typedef(self, name: str, ty: ExprType) -> Env:
        return self._extend(name, EnvEntry(kind=EntryKind.TYPEDEF, type=ty))

    def in_function(self) -> Env:
        return Env(self._entries, frame_size=0, param_size=0)

    def add_param(self, name: str, ty: ExprType) -> Env:
        offset = round_up(self.param_size, max(ty.alignment, WORD_SIZE))
        entry = EnvEntry(kind=EntryKind.FRAME, type=ty, offset=FIRST_PARAM_OFFSET + offset)
        return self._extend(name, entry, param_size=offset + round_up(ty.size_of, WORD_SIZE))

    def add_local(self, name: str, ty: ExprType) -> Env:
        frame_size = round_up(self.frame_size + ty.size_of, max(ty.alignment, WORD_SIZE))
        entry = EnvEntry(kind=EntryKind.STACK, type=ty, offset=-frame_size)
        return self._extend(name, entry, frame_size=frame_size)
