#!/usr/bin/env python
"""
Test runner script for medallion-historian.

Runs the unit tests and the optional quality checks with one command, locally
or from any CI system.

Usage:
    python run_tests.py                    # Run all tests
    python run_tests.py -k watermark       # Run tests matching an expression
    python run_tests.py --coverage         # Run with coverage report
    python run_tests.py --all-checks       # Tests, mypy, flake8 and black
"""

import argparse
import os
import subprocess
import sys
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).resolve().parent

SOURCE_TARGETS = ["historian"]
STYLE_TARGETS = ["historian", "tests", "run_tests.py", "setup.py"]


def _ensure_venv_python() -> None:
    """Re-run the script under `.venv` python so pytest inherits the project virtualenv."""
    if os.name == "nt":
        candidate = ROOT_DIR / ".venv" / "Scripts" / "python.exe"
    else:
        candidate = ROOT_DIR / ".venv" / "bin" / "python"

    if candidate.exists():
        candidate = candidate.resolve()
        if Path(sys.executable).resolve() != candidate:
            print(f"Re-launching tests under virtual environment: {candidate}")
            os.execv(str(candidate), [str(candidate)] + sys.argv)


def run_command(cmd: List[str], description: str) -> bool:
    """Run a command and return True if successful."""
    print(f"\n{'=' * 80}")
    print(f"Running: {description}")
    print(f"Command: {' '.join(cmd)}")
    print(f"{'=' * 80}\n")

    success = subprocess.run(cmd, cwd=ROOT_DIR).returncode == 0
    print(f"\n{description} - {'PASSED' if success else 'FAILED'}")
    return success


def build_pytest_command(args: argparse.Namespace) -> List[str]:
    cmd = [sys.executable, "-m", "pytest", "tests"]
    if args.verbose:
        cmd.append("-vv")
    if args.keyword:
        cmd.extend(["-k", args.keyword])
    if args.coverage or args.html_coverage or args.all_checks:
        cmd.extend(["--cov=historian", "--cov-report=term-missing"])
        if args.html_coverage:
            cmd.append("--cov-report=html")
    return cmd


def main() -> int:
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    _ensure_venv_python()

    parser = argparse.ArgumentParser(description="Run medallion-historian tests and quality checks")
    parser.add_argument("-k", dest="keyword", help="Only run tests matching this expression")
    parser.add_argument("--coverage", action="store_true", help="Run tests with coverage report")
    parser.add_argument("--html-coverage", action="store_true", help="Generate HTML coverage report")
    parser.add_argument("--mypy", action="store_true", help="Run mypy type checking")
    parser.add_argument("--lint", action="store_true", help="Run flake8 linting")
    parser.add_argument("--black-check", action="store_true", help="Check code formatting with black")
    parser.add_argument(
        "--all-checks",
        action="store_true",
        help="Run all quality checks (tests, mypy, flake8, black)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    results = [run_command(build_pytest_command(args), "Unit Tests")]

    if args.mypy or args.all_checks:
        results.append(
            run_command(["mypy", *SOURCE_TARGETS, "--ignore-missing-imports"], "Type Checking (mypy)")
        )

    if args.lint or args.all_checks:
        results.append(
            run_command(["flake8", "--max-line-length=120", *STYLE_TARGETS], "Linting (flake8)")
        )

    if args.black_check or args.all_checks:
        results.append(
            run_command(["black", "--check", "--line-length=120", *STYLE_TARGETS], "Code Formatting (black)")
        )

    print(f"\n{'=' * 80}")
    print("TEST SUMMARY")
    print(f"{'=' * 80}")
    print(f"\nPassed: {sum(results)}/{len(results)}")

    if all(results):
        print("\nALL CHECKS PASSED!")
        return 0
    print("\nSOME CHECKS FAILED")
    return 1


if __name__ == "__main__":
    sys.exit(main())
