"""
Import extraction and path resolution.

Regex based and best effort: a statement the patterns do not recognise is
simply not reported. Nothing here touches the filesystem.
"""

from __future__ import annotations

import re
import sys

from brainlane.scanner.languages import language_family

_ECMASCRIPT_PATTERNS: tuple[re.Pattern[str], ...] = (
    # import x from '...', import { a, b } from '...', import * as ns from '...'
    re.compile(r"""\bimport\s+[\w*{}\s,$]+?\bfrom\s*['"]([^'"]+)['"]"""),
    # import './side-effect'
    re.compile(r"""\bimport\s*['"]([^'"]+)['"]"""),
    re.compile(r"""\brequire\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    # dynamic import('...')
    re.compile(r"""\bimport\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    # export { a } from '...', export * from '...'
    re.compile(r"""\bexport\s+[\w*{}\s,$]+?\bfrom\s*['"]([^'"]+)['"]"""),
)

IMPORT_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "javascript": _ECMASCRIPT_PATTERNS,
    "typescript": _ECMASCRIPT_PATTERNS,
    "python": (
        re.compile(r"^[ \t]*import[ \t]+(\w+(?:\.\w+)*)", re.MULTILINE),
        re.compile(r"^[ \t]*from[ \t]+(\w+(?:\.\w+)*)[ \t]+import\b", re.MULTILINE),
    ),
    "css": (
        re.compile(r"""@import\s+['"]([^'"]+)['"]"""),
        re.compile(r"""@import\s+url\(\s*['"]?([^'")]+?)['"]?\s*\)"""),
    ),
}

NODE_BUILTINS: frozenset[str] = frozenset({
    "assert", "async_hooks", "buffer", "child_process", "cluster", "console",
    "constants", "crypto", "dgram", "diagnostics_channel", "dns", "domain",
    "events", "fs", "http", "http2", "https", "inspector", "module", "net",
    "os", "path", "perf_hooks", "process", "punycode", "querystring",
    "readline", "repl", "stream", "string_decoder", "timers", "tls",
    "trace_events", "tty", "url", "util", "v8", "vm", "wasi",
    "worker_threads", "zlib",
})

PYTHON_BUILTINS: frozenset[str] = frozenset(sys.stdlib_module_names) | {"__future__"}

# Schemes that make a stylesheet import a remote resource rather than a file.
_REMOTE_PREFIXES = ("http://", "https://", "//", "data:")


def extract_imports(content: str, language: str) -> set[str]:
    """Raw module specifiers imported by ``content``, deduplicated."""
    patterns = IMPORT_PATTERNS.get(language_family(language), ())
    found: set[str] = set()
    for pattern in patterns:
        for match in pattern.finditer(content):
            spec = match.group(1).strip()
            if spec:
                found.add(spec)
    return found


def is_relative_import(spec: str) -> bool:
    return spec.startswith(".") or spec.startswith("/")


def is_remote_import(spec: str) -> bool:
    return spec.startswith(_REMOTE_PREFIXES)


def is_builtin_module(spec: str, language: str) -> bool:
    family = language_family(language)
    if family in ("javascript", "typescript"):
        if spec.startswith("node:"):
            return True
        return spec.split("/", 1)[0] in NODE_BUILTINS
    if family == "python":
        return spec.split(".", 1)[0] in PYTHON_BUILTINS
    return False


def package_name(spec: str, language: str) -> str:
    """
    Top-level package a specifier belongs to.

    Scoped npm packages keep their scope (``@scope/name``); Python keeps the
    first dotted segment; a leading ``~`` (webpack's node_modules alias in
    stylesheets) is dropped.
    """
    if language_family(language) == "python":
        return spec.split(".", 1)[0]
    spec = spec.lstrip("~")
    parts = spec.split("/")
    if spec.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def resolve_path(from_path: str, spec: str) -> str:
    """
    Resolve ``spec`` against the directory of ``from_path``.

    Pure string manipulation: ``.`` and empty segments are dropped, ``..``
    pops one segment and clamps at the project root, and a leading ``/``
    resolves from the project root.

        resolve_path("src/a/b.js", "./c")      -> "src/a/c"
        resolve_path("src/a/b.js", "../d")     -> "src/d"
        resolve_path("a.js", "../../../x")     -> "x"
    """
    base = [] if spec.startswith("/") else from_path.split("/")[:-1]
    resolved: list[str] = []
    for part in base + spec.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        resolved.append(part)
    return "/".join(resolved)
