"""
Environment helpers.

- Loads .env from the project root into os.environ (python-dotenv) for readers
  outside Settings, such as LOG_LEVEL / LOG_FORMAT in relgraph_logging.
- DATABASE_URL wins over DB_PATH; otherwise a local SQLite file is used.
- mask_url() keeps credentials and RPC API keys out of logs.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

# config is backend_relgraph/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
ENV_PATH = _ROOT / ".env"

DEFAULT_DB_PATH = "relgraph.db"


def load_relgraph_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env."""
    if ENV_PATH.is_file():
        load_dotenv(ENV_PATH, override=False)


def get_database_url(database_url: str | None = None, db_path: str | None = None) -> str:
    """Return database_url if set; else a SQLite URL for db_path (default relgraph.db)."""
    url = (database_url or "").strip()
    if url:
        return url
    path = (db_path or "").strip() or DEFAULT_DB_PATH
    return f"sqlite:///{path}"


def mask_url(url: str) -> str:
    """Hide credentials and API keys (Infura/Alchemy put them in the path or query)."""
    if not url:
        return url
    base = url.split("?")[0]
    if "@" in base:
        scheme, _, rest = base.partition("://")
        base = f"{scheme}://***@{rest.split('@', 1)[1]}"
    parts = base.rstrip("/").split("/")
    if len(parts) > 3 and len(parts[-1]) >= 16:
        parts[-1] = "***"
    return "/".join(parts)
