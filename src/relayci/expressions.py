# expressions.py
# Rendering of "${{ ... }}" templates used by cache keys, concurrency groups,
# runs-on labels and step commands.
#
# Supported expressions:
#   ${{ matrix.os }}                 dotted lookup in the render context
#   ${{ 'literal' }}                 quoted string
#   ${{ hashFiles('Cargo.lock') }}   sha256 over the files matching the globs
#
# Unknown names render as "" (same as a missing context value).

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .errors import InvalidSpec

_TEMPLATE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_CALL = re.compile(r"^(\w+)\((.*)\)$", re.DOTALL)
_STRING = re.compile(r"""^'((?:[^']|'')*)'$|^"([^"]*)"$""")
_NAME = re.compile(r"^[A-Za-z_][\w-]*(\.[A-Za-z_][\w-]*)*$")
_ARG = re.compile(r"""\s*('(?:[^']|'')*'|"[^"]*")\s*(?:,|$)""")

DEFAULT_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
]


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _excluded(rel: str) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in DEFAULT_EXCLUDES)


def resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand patterns into concrete files under root, sorted by relative path.
    Supports plain paths, directories and globs ("**/*.lock").
    """
    found: Dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        candidate = root / pat
        matches = [candidate] if candidate.exists() else sorted(root.glob(pat))
        for m in matches:
            files = sorted(p for p in m.rglob("*") if p.is_file()) if m.is_dir() else [m]
            for f in files:
                if not f.is_file():
                    continue
                rel = _relpath(f, root)
                if not _excluded(rel):
                    found[rel] = f
    return [found[k] for k in sorted(found)]


def hash_files(root: str | Path, *patterns: str) -> str:
    """Combined sha256 of every matching file, or "" when nothing matches."""
    files = resolve_globs(Path(root), patterns)
    if not files:
        return ""
    h = hashlib.sha256()
    for f in files:
        h.update(bytes.fromhex(_hash_file_contents(f)))
    return h.hexdigest()


def _unquote(token: str) -> str:
    m = _STRING.match(token)
    if not m:
        raise InvalidSpec(f"expected a quoted string, got {token!r}", where="expression")
    if m.group(1) is not None:
        return m.group(1).replace("''", "'")
    return m.group(2)


def _split_args(raw: str) -> List[str]:
    raw = raw.strip()
    if not raw:
        return []
    args: List[str] = []
    pos = 0
    while pos < len(raw):
        m = _ARG.match(raw, pos)
        if not m or m.end() == pos:
            raise InvalidSpec(f"cannot parse arguments {raw!r}", where="expression")
        args.append(_unquote(m.group(1)))
        pos = m.end()
    return args


def _lookup(context: Mapping[str, Any], dotted: str) -> Any:
    value: Any = context
    for part in dotted.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return ""
    return value


def _parse(expr: str) -> Tuple[str, Any]:
    """
    Classify one expression body without evaluating it:
    ("hashFiles", [patterns]), ("literal", text) or ("name", dotted).
    """
    expr = expr.strip()
    if not expr:
        raise InvalidSpec("empty expression", where="expression")

    call = _CALL.match(expr)
    if call:
        fn, raw_args = call.group(1), call.group(2)
        if fn != "hashFiles":
            raise InvalidSpec(f"unknown function {fn}()", where="expression")
        args = _split_args(raw_args)
        if not args:
            raise InvalidSpec("hashFiles() needs at least one pattern", where="expression")
        return "hashFiles", args

    if expr[0] in "'\"":
        return "literal", _unquote(expr)

    if not _NAME.match(expr):
        raise InvalidSpec(f"unsupported expression {expr!r}", where="expression")
    return "name", expr


def evaluate(expr: str, context: Mapping[str, Any], *, root: str | Path = ".") -> str:
    kind, value = _parse(expr)
    if kind == "hashFiles":
        return hash_files(root, *value)
    if kind == "literal":
        return value

    found = _lookup(context, value)
    if isinstance(found, bool):
        return "true" if found else "false"
    return str(found)


def check(template: str) -> None:
    """Raise InvalidSpec if any ${{ }} in template is malformed. Nothing is looked up or hashed."""
    for m in _TEMPLATE.finditer(template):
        _parse(m.group(1))
    if "${{" in _TEMPLATE.sub("", template):
        raise InvalidSpec(f"unterminated ${{{{ in {template!r}", where="expression")


def render(template: str, context: Mapping[str, Any], *, root: str | Path = ".") -> str:
    """Replace every ${{ expr }} in template."""
    return _TEMPLATE.sub(lambda m: evaluate(m.group(1), context, root=root), template)


def has_expressions(template: str) -> bool:
    return bool(_TEMPLATE.search(template))
