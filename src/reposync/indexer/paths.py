"""Which remote paths get tracked, and which language each one is."""

from __future__ import annotations

from pathlib import PurePosixPath

SKIP_PATTERNS = (
    "node_modules",
    ".git",
    ".next",
    "dist",
    "build",
    "__pycache__",
    ".venv",
    "venv",
    ".cache",
    "coverage",
    ".DS_Store",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    ".min.js",
)

LANGUAGES = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".sh": "shell",
    ".bash": "shell",
}


def should_skip(path: str) -> bool:
    return any(pattern in path for pattern in SKIP_PATTERNS)


def language_for(path: str) -> str | None:
    return LANGUAGES.get(PurePosixPath(path).suffix.lower())


def is_indexable(path: str, size: int | None, max_size: int) -> bool:
    """True for supported-language files outside skipped dirs and under the size cap."""
    if should_skip(path) or language_for(path) is None:
        return False
    return size is None or size <= max_size
