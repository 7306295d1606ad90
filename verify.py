#!/usr/bin/env python3
from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import Iterable

from static_copy import is_file_like, is_page_name

ROOT_REFERENCE_RE = re.compile(r'(?:href|src|action)="?(/[^"\s>]*)')


def iter_output_files(root: Path) -> Iterable[Path]:
    for path in root.rglob("*"):
        if path.is_file():
            yield path


def check_page(path: Path, root: Path, prefix: str) -> tuple[list[str], list[str]]:
    """Return (references outside the prefix, prefixed files missing from the tree)."""
    text = path.read_text(encoding="utf-8", errors="ignore")
    residual: list[str] = []
    missing: list[str] = []
    for match in ROOT_REFERENCE_RE.finditer(text):
        value = match.group(1)
        if not value.startswith(prefix + "/"):
            residual.append(value)
            continue
        rel = value[len(prefix) :].split("?", 1)[0]
        if is_file_like(rel) and not (root / rel.lstrip("/")).exists():
            missing.append(value)
    return residual, missing


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check a static copy for unrewritten or missing references")
    parser.add_argument("root", help="Directory the copy was written to, e.g. app/assets/<name>")
    parser.add_argument("--prefix", required=True, help="Mount path the copy is served from, e.g. /public/<name>")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    root = Path(args.root)
    prefix = args.prefix.rstrip("/")
    ng_count = 0
    ok_count = 0
    residual_files: list[str] = []

    if not root.exists() or not root.is_dir():
        print(f"[NG] copy directory not found: {root}")
        print("OK: 0")
        print("NG: 1")
        return 1

    for file_path in sorted(iter_output_files(root)):
        rel = file_path.relative_to(root).as_posix()
        if not is_page_name(file_path.name):
            continue
        if "." not in file_path.name:
            ng_count += 1
            print(f"[NG] page not normalized to index.html: {rel}")
            continue

        residual, missing = check_page(file_path, root, prefix)
        for value in missing:
            ng_count += 1
            print(f"[NG] missing file: {value} (from {rel})")
        if residual:
            ng_count += len(residual)
            residual_files.append(rel)
        if not residual and not missing:
            ok_count += 1

    if residual_files:
        print(f"[NG] references outside '{prefix}' found in {len(residual_files)} file(s)")
    else:
        print(f"[OK] every root-relative reference is under '{prefix}'")

    print(f"OK: {ok_count}")
    print(f"NG: {ng_count}")
    print("Residual reference files:")
    for rel in residual_files:
        print(f"- {rel}")

    return 1 if ng_count > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
