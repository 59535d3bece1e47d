"""SQLite persistence for users and cartoonized images."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional

DB_PATH = Path(os.environ.get("CARTOON_DB", Path(__file__).parent / "cartoon.db"))


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                name        TEXT NOT NULL,
                mobile      TEXT NOT NULL,
                created_at  DATETIME DEFAULT (datetime('now'))
            )
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS images (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id          INTEGER REFERENCES users(id),
                original_image   TEXT NOT NULL,
                processed_image  TEXT,
                style            TEXT,
                outcome          TEXT,   -- remote_success / local_fallback_success / ...
                created_at       DATETIME DEFAULT (datetime('now'))
            )
            """
        )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(name: str, mobile: str) -> int:
    with _conn() as con:
        cur = con.execute(
            "INSERT INTO users (name, mobile) VALUES (?, ?)", (name, mobile)
        )
        return cur.lastrowid


def get_user(user_id: int) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def create_image(
    user_id: Optional[int],
    original_image: str,
    processed_image: Optional[str] = None,
    style: Optional[str] = None,
    outcome: Optional[str] = None,
) -> int:
    with _conn() as con:
        cur = con.execute(
            "INSERT INTO images (user_id, original_image, processed_image, style, outcome) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, original_image, processed_image, style, outcome),
        )
        return cur.lastrowid


def get_image(image_id: int) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM images WHERE id=?", (image_id,)).fetchone()
    return dict(row) if row else None


def find_images_by_user(user_id: int) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM images WHERE user_id=? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ).fetchall()
    return [dict(r) for r in rows]
