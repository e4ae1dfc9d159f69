"""
Extension table and language families.

The scanner keys everything off a file's extension: the language it counts
towards, and the family whose import patterns and issue rules apply to it.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LanguageInfo:
    language: str
    category: str   # "frontend" | "backend" | "config" | "docs" | "scripts" | "database"


FILE_EXTENSIONS: dict[str, LanguageInfo] = {
    # JavaScript / TypeScript
    ".js": LanguageInfo("javascript", "frontend"),
    ".jsx": LanguageInfo("javascript-react", "frontend"),
    ".ts": LanguageInfo("typescript", "frontend"),
    ".tsx": LanguageInfo("typescript-react", "frontend"),
    ".mjs": LanguageInfo("javascript", "frontend"),
    ".cjs": LanguageInfo("javascript", "backend"),
    # Python
    ".py": LanguageInfo("python", "backend"),
    ".pyw": LanguageInfo("python", "backend"),
    ".pyx": LanguageInfo("cython", "backend"),
    # Web
    ".html": LanguageInfo("html", "frontend"),
    ".htm": LanguageInfo("html", "frontend"),
    ".css": LanguageInfo("css", "frontend"),
    ".scss": LanguageInfo("scss", "frontend"),
    ".sass": LanguageInfo("sass", "frontend"),
    ".less": LanguageInfo("less", "frontend"),
    ".vue": LanguageInfo("vue", "frontend"),
    ".svelte": LanguageInfo("svelte", "frontend"),
    # Backend
    ".java": LanguageInfo("java", "backend"),
    ".kt": LanguageInfo("kotlin", "backend"),
    ".go": LanguageInfo("go", "backend"),
    ".rs": LanguageInfo("rust", "backend"),
    ".rb": LanguageInfo("ruby", "backend"),
    ".php": LanguageInfo("php", "backend"),
    ".cs": LanguageInfo("csharp", "backend"),
    ".cpp": LanguageInfo("cpp", "backend"),
    ".c": LanguageInfo("c", "backend"),
    ".h": LanguageInfo("c-header", "backend"),
    # Config / data
    ".json": LanguageInfo("json", "config"),
    ".yaml": LanguageInfo("yaml", "config"),
    ".yml": LanguageInfo("yaml", "config"),
    ".toml": LanguageInfo("toml", "config"),
    ".xml": LanguageInfo("xml", "config"),
    ".env": LanguageInfo("dotenv", "config"),
    # Documentation
    ".md": LanguageInfo("markdown", "docs"),
    ".mdx": LanguageInfo("mdx", "docs"),
    ".txt": LanguageInfo("text", "docs"),
    ".rst": LanguageInfo("restructuredtext", "docs"),
    # Shell
    ".sh": LanguageInfo("shell", "scripts"),
    ".bash": LanguageInfo("bash", "scripts"),
    ".zsh": LanguageInfo("zsh", "scripts"),
    ".ps1": LanguageInfo("powershell", "scripts"),
    # SQL
    ".sql": LanguageInfo("sql", "database"),
}

_CSS_LANGUAGES = frozenset({"css", "scss", "sass", "less"})
_CONFIG_LANGUAGES = frozenset({"json", "yaml", "toml", "dotenv"})


def file_extension(path: str) -> str | None:
    """Extension of the file name, dot included (``.env`` for a bare ``.env``)."""
    name = path.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot == -1:
        return None
    return name[dot:].lower()


def language_for(path: str) -> LanguageInfo | None:
    ext = file_extension(path)
    if ext is None:
        return None
    return FILE_EXTENSIONS.get(ext)


def language_family(language: str) -> str:
    """
    Collapse a language name onto the family that owns its rules.

    ``javascript-react`` -> ``javascript``, ``typescript-react`` -> ``typescript``,
    Vue/Svelte single-file components use the JavaScript rules, stylesheets map
    to ``css`` and data formats to ``config``. Anything else is its own family.
    """
    if language.startswith("typescript"):
        return "typescript"
    if language.startswith("javascript") or language in ("vue", "svelte"):
        return "javascript"
    if language in _CSS_LANGUAGES:
        return "css"
    if language in _CONFIG_LANGUAGES:
        return "config"
    return language
