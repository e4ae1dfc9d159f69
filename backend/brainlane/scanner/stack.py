"""
Language and framework detection.

Framework detection is a vote: a marker file is worth 10, every content
pattern found in a file is worth 1. Anything scoring 2 or more is reported,
strongest first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from brainlane.scanner.languages import language_for
from brainlane.scanner.models import SourceFile

MARKER_FILE_SCORE = 10
PATTERN_SCORE = 1
MIN_FRAMEWORK_SCORE = 2

TEST_FRAMEWORKS: frozenset[str] = frozenset({"jest", "vitest", "mocha", "pytest"})

# framework: (marker files, content patterns)
FRAMEWORK_INDICATORS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    # JavaScript / TypeScript
    "react": (("package.json",), ('"react":', "import React", 'from "react"', "from 'react'")),
    "nextjs": (("next.config.js", "next.config.mjs", "next.config.ts"), ('"next":',)),
    "vue": (("vue.config.js",), ('"vue":',)),
    "nuxt": (("nuxt.config.js", "nuxt.config.ts"), ('"nuxt":',)),
    "angular": (("angular.json",), ('"@angular/core"',)),
    "svelte": (("svelte.config.js",), ('"svelte":',)),
    "express": ((), ('"express":', 'require("express")', "require('express')", 'from "express"')),
    "nestjs": (("nest-cli.json",), ('"@nestjs/core"',)),
    # Python
    "django": (("manage.py",), ("django", "DJANGO_SETTINGS_MODULE")),
    "flask": ((), ("from flask", "Flask(__name__)")),
    "fastapi": ((), ("from fastapi", "FastAPI(")),
    # Build tools
    "vite": (("vite.config.js", "vite.config.ts"), ('"vite":',)),
    "webpack": (("webpack.config.js",), ('"webpack":',)),
    "rollup": (("rollup.config.js",), ('"rollup":',)),
    "esbuild": ((), ('"esbuild":',)),
    # Testing
    "jest": (("jest.config.js", "jest.config.ts"), ('"jest":',)),
    "vitest": (("vitest.config.js", "vitest.config.ts"), ('"vitest":',)),
    "mocha": ((".mocharc.json", ".mocharc.yml"), ('"mocha":',)),
    "pytest": (("pytest.ini", "conftest.py"), ("import pytest", "[tool.pytest")),
    # CSS
    "tailwind": (("tailwind.config.js", "tailwind.config.ts"), ('"tailwindcss":',)),
    "bootstrap": ((), ('"bootstrap":',)),
    # Database
    "prisma": (("prisma/schema.prisma",), ('"prisma":',)),
    "mongoose": ((), ('"mongoose":',)),
    "supabase": ((), ('"@supabase/supabase-js":', "createClient")),
}


@dataclass(frozen=True)
class StackReport:
    languages: dict[str, int] = field(default_factory=dict)
    frameworks: list[str] = field(default_factory=list)
    scores: dict[str, int] = field(default_factory=dict)


def _has_marker(path: str, markers: tuple[str, ...]) -> bool:
    return any(path == marker or path.endswith("/" + marker) for marker in markers)


def detect_stack(files: Iterable[SourceFile]) -> StackReport:
    languages: dict[str, int] = {}
    scores: dict[str, int] = {}

    for source in files:
        info = language_for(source.path)
        if info is not None:
            languages[info.language] = languages.get(info.language, 0) + 1

        for framework, (markers, patterns) in FRAMEWORK_INDICATORS.items():
            if _has_marker(source.path, markers):
                scores[framework] = scores.get(framework, 0) + MARKER_FILE_SCORE
            for pattern in patterns:
                if pattern in source.content:
                    scores[framework] = scores.get(framework, 0) + PATTERN_SCORE

    # sorted() is stable: equal scores keep first-detection order
    ranked = sorted(
        (item for item in scores.items() if item[1] >= MIN_FRAMEWORK_SCORE),
        key=lambda item: item[1],
        reverse=True,
    )
    return StackReport(
        languages=languages,
        frameworks=[name for name, _ in ranked],
        scores=scores,
    )
