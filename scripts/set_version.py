#!/usr/bin/env python3
"""Bump the release version in pyproject.toml and sage_bridge/__init__.py."""

from __future__ import annotations

import argparse
import re
from pathlib import Path

VERSION_PATTERN = re.compile(r'^version\s*=\s*"([^"]+)"\s*$')
DUNDER_PATTERN = re.compile(r'^__version__\s*=\s*"[^"]*"', re.MULTILINE)


def set_project_version(pyproject_text: str, version: str) -> str:
    in_project = False
    changed = False
    output_lines: list[str] = []

    for line in pyproject_text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            in_project = stripped == "[project]"

        if in_project and not changed and VERSION_PATTERN.match(stripped):
            newline = "\n" if line.endswith("\n") else ""
            output_lines.append(f'version = "{version}"{newline}')
            changed = True
            continue

        output_lines.append(line)

    if not changed:
        raise ValueError("Could not find [project].version in pyproject.toml")

    return "".join(output_lines)


def set_package_version(init_text: str, version: str) -> str:
    updated, count = DUNDER_PATTERN.subn(f'__version__ = "{version}"', init_text, count=1)
    if count == 0:
        raise ValueError("Could not find __version__ in package __init__.py")
    return updated


def main() -> int:
    parser = argparse.ArgumentParser(description="Set the sage-bridge release version.")
    parser.add_argument("--version", required=True, help="New version, e.g. 0.2.0")
    parser.add_argument(
        "--pyproject",
        default="pyproject.toml",
        help="Path to pyproject.toml (default: pyproject.toml)",
    )
    parser.add_argument(
        "--package-init",
        default="src/sage_bridge/__init__.py",
        help="Path to the package __init__.py holding __version__",
    )
    args = parser.parse_args()

    if not re.fullmatch(r"\d+\.\d+\.\d+", args.version):
        raise ValueError("Version must match semantic format X.Y.Z")

    pyproject_path = Path(args.pyproject)
    init_path = Path(args.package_init)
    new_pyproject = set_project_version(pyproject_path.read_text(encoding="utf-8"), args.version)
    new_init = set_package_version(init_path.read_text(encoding="utf-8"), args.version)
    pyproject_path.write_text(new_pyproject, encoding="utf-8")
    init_path.write_text(new_init, encoding="utf-8")
    print(f"Updated {pyproject_path} and {init_path} to version {args.version}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
