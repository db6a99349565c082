from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml

from cbackend.codegen_model import CodegenOptions
from cbackend.codegen_stmt import emit_program
from cbackend.tree_loader import load_tree


REPO_ROOT = Path(__file__).resolve().parents[2]
GOLDEN_ROOT = REPO_ROOT / "tests" / "golden"


@dataclass(frozen=True)
class RunInput:
    entry: str | None


@dataclass(frozen=True)
class RunExpect:
    asm: str | None
    lines: list[str]
    absent: list[str]
    error: str | None


@dataclass(frozen=True)
class RunCase:
    name: str
    run_input: RunInput
    expect: RunExpect


@dataclass(frozen=True)
class GoldenTest:
    tree_path: Path
    spec_path: Path
    runs: list[RunCase]


@dataclass(frozen=True)
class RunResult:
    name: str
    ok: bool
    details: list[str]


@dataclass(frozen=True)
class TestResult:
    tree_path: Path
    run_results: list[RunResult]

    @property
    def ok(self) -> bool:
        return all(run.ok for run in self.run_results)


def _require_type(value: object, expected_type: type, label: str) -> None:
    if not isinstance(value, expected_type):
        raise ValueError(f"{label} must be {expected_type.__name__}")


def _read_text_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _parse_str_list(raw: object, label: str) -> list[str]:
    if raw is None:
        return []
    _require_type(raw, list, label)
    items: list[str] = []
    for index, item in enumerate(raw):  # type: ignore[arg-type]
        _require_type(item, str, f"{label}[{index}]")
        items.append(item)
    return items


def _parse_input(raw: object, *, spec_path: Path, run_name: str) -> RunInput:
    if raw is None:
        return RunInput(entry="main")

    _require_type(raw, dict, f"{spec_path}: run '{run_name}' input")
    input_obj: dict[str, object] = raw  # type: ignore[assignment]

    entry_raw = input_obj.get("entry", "main")
    stub_raw = input_obj.get("entry_stub", True)
    _require_type(stub_raw, bool, f"{spec_path}: run '{run_name}' input.entry_stub")
    if not stub_raw:
        return RunInput(entry=None)
    _require_type(entry_raw, str, f"{spec_path}: run '{run_name}' input.entry")
    return RunInput(entry=entry_raw)  # type: ignore[arg-type]


def _parse_expect(raw: object, *, spec_path: Path, run_name: str) -> RunExpect:
    _require_type(raw, dict, f"{spec_path}: run '{run_name}' expect")
    expect_obj: dict[str, object] = raw  # type: ignore[assignment]

    asm_raw = expect_obj.get("asm")
    asm_file_raw = expect_obj.get("asm_file")
    if asm_raw is not None and asm_file_raw is not None:
        raise ValueError(f"{spec_path}: run '{run_name}' expect.asm and expect.asm_file are mutually exclusive")
    asm: str | None = None
    if asm_raw is not None:
        _require_type(asm_raw, str, f"{spec_path}: run '{run_name}' expect.asm")
        asm = asm_raw  # type: ignore[assignment]
    elif asm_file_raw is not None:
        _require_type(asm_file_raw, str, f"{spec_path}: run '{run_name}' expect.asm_file")
        asm = _read_text_file((spec_path.parent / asm_file_raw).resolve())  # type: ignore[operator]

    lines = _parse_str_list(expect_obj.get("lines"), f"{spec_path}: run '{run_name}' expect.lines")
    absent = _parse_str_list(expect_obj.get("absent"), f"{spec_path}: run '{run_name}' expect.absent")

    error_raw = expect_obj.get("error")
    if error_raw is not None:
        _require_type(error_raw, str, f"{spec_path}: run '{run_name}' expect.error")
        if asm is not None or lines or absent:
            raise ValueError(f"{spec_path}: run '{run_name}' expect.error excludes output expectations")

    return RunExpect(asm=asm, lines=lines, absent=absent, error=error_raw)  # type: ignore[arg-type]


def _load_spec_for_tree(tree_path: Path) -> GoldenTest:
    spec_path = tree_path.with_name(f"{tree_path.stem}_spec.yaml")
    if not spec_path.exists():
        raise ValueError(f"missing spec for {tree_path}: expected {spec_path.name}")

    raw_data = yaml.safe_load(spec_path.read_text(encoding="utf-8"))
    if raw_data is None:
        raw_data = {}
    _require_type(raw_data, dict, f"{spec_path}")
    data: dict[str, object] = raw_data  # type: ignore[assignment]

    runs_raw = data.get("runs")
    if runs_raw is None:
        raise ValueError(f"{spec_path}: missing required top-level 'runs'")
    _require_type(runs_raw, list, f"{spec_path}: runs")
    if len(runs_raw) == 0:  # type: ignore[arg-type]
        raise ValueError(f"{spec_path}: runs must not be empty")

    runs: list[RunCase] = []
    names: set[str] = set()
    for index, run_raw in enumerate(runs_raw):  # type: ignore[arg-type]
        _require_type(run_raw, dict, f"{spec_path}: runs[{index}]")
        run_obj: dict[str, object] = run_raw

        name_raw = run_obj.get("name")
        _require_type(name_raw, str, f"{spec_path}: runs[{index}].name")
        if name_raw in names:
            raise ValueError(f"{spec_path}: duplicate run name '{name_raw}'")
        names.add(name_raw)  # type: ignore[arg-type]

        run_input = _parse_input(run_obj.get("input"), spec_path=spec_path, run_name=name_raw)  # type: ignore[arg-type]
        expect = _parse_expect(run_obj.get("expect"), spec_path=spec_path, run_name=name_raw)  # type: ignore[arg-type]

        runs.append(RunCase(name=name_raw, run_input=run_input, expect=expect))  # type: ignore[arg-type]

    return GoldenTest(tree_path=tree_path, spec_path=spec_path, runs=runs)


def discover_tests(filter_glob: str | None = None) -> list[GoldenTest]:
    if not GOLDEN_ROOT.exists():
        return []

    pattern = filter_glob if filter_glob else "**/test_*.yaml"
    tree_files = sorted(
        path for path in GOLDEN_ROOT.glob(pattern) if path.is_file() and not path.stem.endswith("_spec")
    )
    return [_load_spec_for_tree(path) for path in tree_files]


def _check_lines_in_order(asm: str, expected: list[str], errors: list[str]) -> None:
    actual = [line.strip() for line in asm.splitlines()]
    cursor = 0
    for wanted in expected:
        try:
            cursor = actual.index(wanted.strip(), cursor) + 1
        except ValueError:
            errors.append(f"line not found in order: '{wanted}'")
            return


def execute_run(tree_path: Path, run: RunCase) -> RunResult:
    errors: list[str] = []
    expect = run.expect

    try:
        asm = emit_program(load_tree(tree_path), CodegenOptions(entry_point=run.run_input.entry))
    except ValueError as error:
        if expect.error is None:
            errors.append(f"unexpected error: {error}")
        elif expect.error not in str(error):
            errors.append(f"error mismatch: expected substring '{expect.error}', got '{error}'")
        return RunResult(name=run.name, ok=not errors, details=errors)

    if expect.error is not None:
        errors.append(f"expected error containing '{expect.error}' but generation succeeded")
        return RunResult(name=run.name, ok=False, details=errors)

    if expect.asm is not None and asm != expect.asm:
        errors.append("asm mismatch")

    _check_lines_in_order(asm, expect.lines, errors)

    for text in expect.absent:
        if text in asm:
            errors.append(f"unexpected text present: '{text}'")

    return RunResult(name=run.name, ok=not errors, details=errors)


def run_test(test: GoldenTest) -> TestResult:
    return TestResult(
        tree_path=test.tree_path,
        run_results=[execute_run(test.tree_path, run) for run in test.runs],
    )


def _print_result(result: TestResult, *, per_run: bool) -> None:
    rel_path = result.tree_path.relative_to(REPO_ROOT)
    if not per_run:
        print(f"{'PASS' if result.ok else 'FAIL'} {rel_path}")
    for run in result.run_results:
        if per_run:
            print(f"{'PASS' if run.ok else 'FAIL'} {rel_path} :: {run.name}")
        elif not run.ok:
            print(f"  run '{run.name}':")
        if not run.ok:
            for detail in run.details:
                print(f"    - {detail}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run cbackend golden tests")
    parser.add_argument("--filter", type=str, default=None, help="Glob under tests/golden (e.g. 'calls/**')")
    parser.add_argument(
        "--print-per-run",
        action="store_true",
        help="Print one PASS/FAIL line per run case instead of per test file",
    )
    args = parser.parse_args()

    try:
        tests = discover_tests(args.filter)
    except Exception as error:
        print(f"golden: spec error: {error}", file=sys.stderr)
        return 2

    if not tests:
        print("golden: no tests discovered")
        return 0

    results = [run_test(test) for test in tests]
    for result in results:
        _print_result(result, per_run=args.print_per_run)

    failed = [result for result in results if not result.ok]
    total_runs = sum(len(test.runs) for test in tests)
    print(f"golden: {len(results) - len(failed)}/{len(results)} test files passed; {total_runs} runs total")

    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
