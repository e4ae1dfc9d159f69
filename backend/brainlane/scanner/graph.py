"""
Local import graph, cycle detection and missing-dependency analysis.
"""

from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from loguru import logger

from brainlane.scanner.imports import (
    extract_imports,
    is_builtin_module,
    is_relative_import,
    is_remote_import,
    package_name,
    resolve_path,
)
from brainlane.scanner.languages import language_family, language_for
from brainlane.scanner.models import SourceFile

# Suffixes tried, in order, when an extensionless import is matched to a file.
EXTENSION_COMPLETIONS: tuple[str, ...] = (
    "", ".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs",
    "/index.js", "/index.ts", "/index.jsx", "/index.tsx",
)

# Import names that differ from the name the distribution is installed under.
PYTHON_DISTRIBUTION_NAMES: dict[str, str] = {
    "bs4": "beautifulsoup4",
    "cv2": "opencv-python",
    "dateutil": "python-dateutil",
    "dotenv": "python-dotenv",
    "jwt": "pyjwt",
    "magic": "python-magic",
    "pil": "pillow",
    "sklearn": "scikit-learn",
    "yaml": "pyyaml",
}

_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


@dataclass
class DeclaredDependencies:
    """Declared packages per ecosystem; ``None`` means no manifest was found."""
    npm: set[str] | None = None
    pip: set[str] | None = None


@dataclass
class ImportAnalysis:
    graph: dict[str, list[str]] = field(default_factory=dict)        # file -> local files it imports
    local_targets: list[str] = field(default_factory=list)           # resolved, before extension completion
    external: dict[str, list[str]] = field(default_factory=dict)     # ecosystem -> package names

    @property
    def external_packages(self) -> list[str]:
        return sorted({name for names in self.external.values() for name in names})


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------

def complete_import(target: str, existing: set[str] | frozenset[str]) -> str | None:
    """First existing file an extensionless local import can refer to."""
    for suffix in EXTENSION_COMPLETIONS:
        candidate = f"{target}{suffix}" if target else suffix.lstrip("/")
        if candidate and candidate in existing:
            return candidate
    return None


def _python_local_names(paths: Iterable[str]) -> set[str]:
    names: set[str] = set()
    for path in paths:
        if not path.endswith(".py"):
            continue
        parts = path.split("/")
        names.update(parts[:-1])
        names.add(parts[-1][:-3])
    names.discard("__init__")
    return names


def python_suffix_index(paths: Iterable[str]) -> dict[str, str]:
    """
    Map every trailing run of path segments of a ``.py`` file to the file.

    ``src/pkg/mod.py`` is reachable as ``pkg/mod.py`` and ``mod.py``. When
    several files share a suffix the alphabetically first one wins.
    """
    index: dict[str, str] = {}
    for path in sorted(p for p in paths if p.endswith(".py")):
        parts = path.split("/")
        for start in range(1, len(parts)):
            index.setdefault("/".join(parts[start:]), path)
    return index


def _resolve_python_module(module: str, existing: set[str], suffixes: Mapping[str, str]) -> str | None:
    rel = module.replace(".", "/")
    candidates = (f"{rel}.py", f"{rel}/__init__.py")
    for candidate in candidates:
        if candidate in existing:
            return candidate
    for candidate in candidates:
        if candidate in suffixes:
            return suffixes[candidate]
    return None


def build_graph(files: Iterable[SourceFile]) -> ImportAnalysis:
    """
    Map every recognised source file to the local files it imports.

    Relative ECMAScript/CSS imports are resolved against the importing file
    and completed with EXTENSION_COMPLETIONS; Python imports whose top-level
    name is a local module are resolved to ``pkg/mod.py`` or
    ``pkg/mod/__init__.py``. Everything else that is not a builtin is an
    external package.
    """
    files = list(files)
    existing = {f.path for f in files}
    python_local = _python_local_names(existing)
    python_suffixes = python_suffix_index(existing)
    analysis = ImportAnalysis()
    seen_local: set[str] = set()
    seen_external: set[tuple[str, str]] = set()

    def add_external(ecosystem: str, name: str) -> None:
        if name and (ecosystem, name) not in seen_external:
            seen_external.add((ecosystem, name))
            analysis.external.setdefault(ecosystem, []).append(name)

    for source in files:
        info = language_for(source.path)
        if info is None:
            continue
        family = language_family(info.language)
        targets: list[str] = []
        analysis.graph[source.path] = targets

        for spec in sorted(extract_imports(source.content, info.language)):
            if family == "python":
                top = package_name(spec, "python")
                if top in python_local:
                    target = _resolve_python_module(spec, existing, python_suffixes)
                    if target and target != source.path and target not in targets:
                        targets.append(target)
                elif not is_builtin_module(spec, "python"):
                    add_external("pip", top)
                continue

            if is_remote_import(spec):
                continue
            if is_relative_import(spec):
                resolved = resolve_path(source.path, spec)
                if resolved not in seen_local:
                    seen_local.add(resolved)
                    analysis.local_targets.append(resolved)
                target = complete_import(resolved, existing)
                if target and target not in targets:
                    targets.append(target)
            elif not is_builtin_module(spec, family):
                add_external("npm", package_name(spec, family))

    return analysis


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------

def canonical_cycle(cycle: list[str]) -> tuple[str, ...]:
    """
    Rotate a closed cycle so it starts at its smallest node.

    Edge order is kept, so ``a -> b -> c -> a`` and ``a -> c -> b -> a`` stay
    distinct while every rotation of the same loop collapses to one key.
    """
    body = cycle[:-1] if len(cycle) > 1 and cycle[0] == cycle[-1] else list(cycle)
    if not body:
        return ()
    start = body.index(min(body))
    return tuple(body[start:] + body[:start])


def detect_cycles(graph: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """
    Depth-first search over every node, reporting each import loop once.

    A back edge to a node still on the recursion stack closes a cycle made of
    the current path from that node onwards. Cycles are returned in their
    canonical rotation and closed (first == last). The walk is iterative so a
    long import chain cannot hit the interpreter's recursion limit.
    """
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()
    visited: set[str] = set()

    for root in graph:
        if root in visited:
            continue
        visited.add(root)
        path = [root]
        on_stack = {root}
        frames = [iter(graph.get(root, ()))]

        while frames:
            target = next(frames[-1], None)
            if target is None:
                frames.pop()
                on_stack.discard(path.pop())
                continue
            if target in on_stack:
                key = canonical_cycle(path[path.index(target):] + [target])
                if key not in seen:
                    seen.add(key)
                    cycles.append(list(key) + [key[0]])
            elif target not in visited and target in graph:
                visited.add(target)
                on_stack.add(target)
                path.append(target)
                frames.append(iter(graph[target]))

    return cycles


# ---------------------------------------------------------------------------
# Missing imports / packages
# ---------------------------------------------------------------------------

def find_missing_imports(local_targets: Iterable[str], existing_paths: Iterable[str]) -> list[str]:
    existing = set(existing_paths)
    missing: list[str] = []
    for target in local_targets:
        if target not in missing and complete_import(target, existing) is None:
            missing.append(target)
    return missing


def _normalize_pip(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def find_missing_packages(
    external: Iterable[str],
    declared: Iterable[str],
    ecosystem: str = "npm",
) -> list[str]:
    """
    External packages absent from the declared set.

    npm names compare exactly; pip names compare case-insensitively with
    ``-``/``_``/``.`` folded, and common import-name/distribution-name
    mismatches (``yaml`` vs ``pyyaml``) are mapped first.
    """
    if ecosystem == "pip":
        declared_set = {_normalize_pip(d) for d in declared}
        missing = []
        for name in external:
            normalized = _normalize_pip(name)
            alias = PYTHON_DISTRIBUTION_NAMES.get(normalized)
            if normalized in declared_set or (alias and _normalize_pip(alias) in declared_set):
                continue
            missing.append(name)
        return missing

    declared_set = set(declared)
    return [name for name in external if name not in declared_set]


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

def _basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _package_json_names(content: str) -> set[str]:
    data = json.loads(content)
    names: set[str] = set()
    if isinstance(data, dict):
        for section in ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"):
            deps = data.get(section)
            if isinstance(deps, dict):
                names.update(deps)
    return names


def _requirement_name(line: str) -> str | None:
    line = line.split("#", 1)[0].strip()
    if not line or line.startswith("-"):
        return None
    match = _REQUIREMENT_NAME.match(line)
    return match.group(1) if match else None


def _pyproject_names(content: str) -> set[str]:
    data: dict[str, Any] = tomllib.loads(content)
    names: set[str] = set()

    project = data.get("project", {})
    requirements = list(project.get("dependencies", []))
    for extra in project.get("optional-dependencies", {}).values():
        requirements.extend(extra)
    for requirement in requirements:
        name = _requirement_name(str(requirement))
        if name:
            names.add(name)

    poetry = data.get("tool", {}).get("poetry", {})
    tables = [poetry.get("dependencies", {}), poetry.get("dev-dependencies", {})]
    tables.extend(group.get("dependencies", {}) for group in poetry.get("group", {}).values())
    for table in tables:
        names.update(name for name in table if name.lower() != "python")
    return names


def parse_declared_dependencies(files: Iterable[SourceFile]) -> DeclaredDependencies:
    """
    Collect declared packages from package.json, requirements*.txt and
    pyproject.toml files (vendored copies under node_modules are skipped).
    A manifest that fails to parse is ignored.
    """
    declared = DeclaredDependencies()
    for source in files:
        if "node_modules/" in source.path:
            continue
        name = _basename(source.path)
        try:
            if name == "package.json":
                declared.npm = (declared.npm or set()) | _package_json_names(source.content)
            elif name.startswith("requirements") and name.endswith(".txt"):
                found = {n for n in map(_requirement_name, source.content.splitlines()) if n}
                declared.pip = (declared.pip or set()) | found
            elif name == "pyproject.toml":
                declared.pip = (declared.pip or set()) | _pyproject_names(source.content)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.debug("Ignoring unparseable manifest {}: {}", source.path, exc)
    return declared


def find_missing_dependencies(files: Iterable[SourceFile], analysis: ImportAnalysis) -> list[str]:
    """
    Missing local imports followed by undeclared packages.

    Packages are only checked for an ecosystem whose manifest exists; they are
    reported as ``npm: <name>`` / ``pip: <name>``.
    """
    files = list(files)
    missing = find_missing_imports(analysis.local_targets, (f.path for f in files))
    declared = parse_declared_dependencies(files)
    for ecosystem, names in (("npm", declared.npm), ("pip", declared.pip)):
        if names is None:
            continue
        for name in find_missing_packages(analysis.external.get(ecosystem, []), names, ecosystem):
            missing.append(f"{ecosystem}: {name}")
    return missing
