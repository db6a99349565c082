from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from cbackend.ast_dump import tree_to_debug_json
from cbackend.codegen_model import CodegenOptions
from cbackend.codegen_stmt import emit_program
from cbackend.tree_loader import load_tree


STOP_PHASES = ["load", "codegen"]
LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def _configure_logging(verbosity: int) -> None:
    level = LOG_LEVELS[min(verbosity, len(LOG_LEVELS) - 1)]
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="cbc",
        description="Word-machine C-subset backend (default: emit assembly for a typed tree).",
    )
    parser.add_argument("input", help="Input typed tree (.yaml)")
    parser.add_argument("-o", "--output", help="Output assembly file path (default: stdout)")
    parser.add_argument(
        "--stop-after",
        choices=STOP_PHASES,
        default="codegen",
        help="Stop after a backend phase for debugging",
    )
    parser.add_argument("--print-tree", action="store_true", help="Print the loaded tree as JSON")
    parser.add_argument("--print-asm", action="store_true", help="Also print emitted assembly to stdout")
    entry_group = parser.add_mutually_exclusive_group()
    entry_group.add_argument("--entry", default="main", help="Function called by the entry stub (default: main)")
    entry_group.add_argument("--no-entry-stub", action="store_true", help="Do not emit the entry stub")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-v) or debug details (-vv)")
    args = parser.parse_args()

    _configure_logging(args.verbose)

    try:
        unit = load_tree(Path(args.input))
        if args.print_tree:
            print(tree_to_debug_json(unit))
        if args.stop_after == "load":
            return 0

        options = CodegenOptions(entry_point=None if args.no_entry_stub else args.entry)
        asm = emit_program(unit, options)
        if args.output:
            Path(args.output).write_text(asm, encoding="utf-8")
        if args.print_asm or not args.output:
            print(asm, end="" if asm.endswith("\n") else "\n")
        return 0
    except Exception as error:
        print(f"cbc: {error}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
