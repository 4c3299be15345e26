"""Environment-driven configuration."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Tuple


ROOT = Path(__file__).resolve().parents[1]


def _parse_env_line(line: str) -> Tuple[str, str] | None:
    text = line.strip()
    if text.startswith("export "):
        text = text[len("export "):].lstrip()
    if not text or text.startswith("#"):
        return None
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        return None
    return key.strip(), value.strip().strip("'\"")


def _load_env_file(path: Path) -> List[str]:
    """Seed os.environ from a dotenv file; variables already set win."""
    if not path.is_file():
        return []
    loaded = []
    for line in path.read_text(encoding="utf-8").splitlines():
        pair = _parse_env_line(line)
        if pair is None or pair[0] in os.environ:
            continue
        os.environ[pair[0]] = pair[1]
        loaded.append(pair[0])
    return loaded


def load_env() -> None:
    loaded = _load_env_file(ROOT / "app" / ".env")
    if loaded:
        logging.getLogger("plank.settings").debug("env_file_loaded keys=%s", ",".join(sorted(loaded)))


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def use_db() -> bool:
    return _truthy(os.getenv("USE_DB"))


def log_level() -> str:
    return (os.getenv("PLANK_LOG_LEVEL") or "INFO").strip().upper()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level or log_level(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
