"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _require(name: str) -> str:
    val = os.getenv(name)
    if not val:
        raise RuntimeError(f"Required environment variable {name} is not set")
    return val


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# GitHub
GITHUB_TOKEN: str = os.getenv("GITHUB_TOKEN", "")
GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_WEBHOOK_SECRET: str = os.getenv("GITHUB_WEBHOOK_SECRET", "")

# API keys
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

# Models
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "gemini-embedding-001")
EMBEDDING_DIMS: int = int(os.getenv("EMBEDDING_DIMS", "768"))

# Workflow tuning
BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", "5"))
STEP_MAX_ATTEMPTS: int = int(os.getenv("STEP_MAX_ATTEMPTS", "3"))
STEP_BACKOFF_SECONDS: float = float(os.getenv("STEP_BACKOFF_SECONDS", "1.0"))
STEP_BACKOFF_MAX: float = float(os.getenv("STEP_BACKOFF_MAX", "30"))
MAX_FILE_SIZE: int = int(os.getenv("MAX_FILE_SIZE", "500000"))
REVIEW_CONTEXT_LIMIT: int = int(os.getenv("REVIEW_CONTEXT_LIMIT", "10"))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Derived paths
SQLITE_PATH: Path = DATA_DIR / "reposync.db"
LANCEDB_PATH: Path = DATA_DIR / "lancedb"


def get_lancedb_table_name(repo_id: int) -> str:
    """Return the LanceDB table name holding a repo's chunk vectors."""
    return f"chunks_{repo_id}"


def require_github_token() -> str:
    return _require("GITHUB_TOKEN")
