"""
SQLite connection helpers shared by the record store, job queue and the
device-side capture queue.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Union

logger = logging.getLogger(__name__)


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection configured for concurrent readers."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


@contextmanager
def transaction(db_path: Union[str, Path]) -> Iterator[sqlite3.Connection]:
    """Connection context that commits on success and rolls back on error."""
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def health_check(db_path: Union[str, Path]) -> Dict[str, Any]:
    """Report whether a database file exists and answers queries."""
    path = str(db_path)
    info: Dict[str, Any] = {
        "database_path": path,
        "database_exists": os.path.exists(path),
        "database_size_mb": 0,
        "connection_test": False,
    }
    try:
        if info["database_exists"]:
            info["database_size_mb"] = round(os.path.getsize(path) / (1024 * 1024), 2)
        with transaction(path) as conn:
            conn.execute("SELECT 1")
            info["connection_test"] = True
    except (sqlite3.Error, OSError) as e:
        logger.error(f"Database health check failed for {path}: {e}")
        info["error"] = str(e)
    return info
