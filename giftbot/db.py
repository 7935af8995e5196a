import os
import json
import sqlite3
import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator

from giftbot import config

# Overridden by tests; defaults to the configured path.
DB_PATH = config.DB_PATH

# serialize DB writes to avoid sqlite "database is locked"
db_write_lock = asyncio.Lock()

STATUS_OPEN = "open"
STATUS_VOTING_CLOSED = "voting_closed"
STATUS_CLAIMED = "claimed"
STATUS_RECEIPT_POSTED = "receipt_posted"
STATUS_COMPLETED = "completed"

_CYCLE_COLUMNS = {
    "thread_id", "status", "winner_suggestion_id", "purchaser_id", "receipt_total",
    "receipt_at_utc", "participants_json", "poll_message_id", "poll_answers_json",
    "paid_status_message_id", "reminder_sent_at_utc", "archived_at_utc",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# TYPED CYCLE ROW
# =========================
def parse_participants(raw: str | None) -> list[int] | None:
    if raw is None:
        return None
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError(f"participant snapshot must be a list, got {type(data).__name__}")
    participants: list[int] = []
    for item in data:
        if isinstance(item, bool) or not isinstance(item, (int, str)):
            raise ValueError(f"invalid participant id {item!r}")
        participants.append(int(item))
    return participants


def parse_poll_answers(raw: str | None) -> list[tuple[int, int]]:
    if raw is None:
        return []
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("poll answer map must be a list")
    pairs: list[tuple[int, int]] = []
    for item in data:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ValueError(f"invalid poll answer entry {item!r}")
        pairs.append((int(item[0]), int(item[1])))
    return pairs


@dataclass
class Cycle:
    cycle_id: int
    guild_id: int
    celebrant_id: int
    birthday_date: str
    thread_id: int | None
    status: str
    winner_suggestion_id: int | None
    purchaser_id: int | None
    receipt_total: Decimal | None
    receipt_at_utc: str | None
    participants: list[int] | None
    poll_message_id: int | None
    poll_answers: list[tuple[int, int]]
    paid_status_message_id: int | None
    reminder_sent_at_utc: str | None
    archived_at_utc: str | None
    created_at_utc: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Cycle":
        total = row["receipt_total"]
        return cls(
            cycle_id=row["cycle_id"],
            guild_id=row["guild_id"],
            celebrant_id=row["celebrant_id"],
            birthday_date=row["birthday_date"],
            thread_id=row["thread_id"],
            status=row["status"],
            winner_suggestion_id=row["winner_suggestion_id"],
            purchaser_id=row["purchaser_id"],
            receipt_total=Decimal(total) if total is not None else None,
            receipt_at_utc=row["receipt_at_utc"],
            participants=parse_participants(row["participants_json"]),
            poll_message_id=row["poll_message_id"],
            poll_answers=parse_poll_answers(row["poll_answers_json"]),
            paid_status_message_id=row["paid_status_message_id"],
            reminder_sent_at_utc=row["reminder_sent_at_utc"],
            archived_at_utc=row["archived_at_utc"],
            created_at_utc=row["created_at_utc"],
        )


# =========================
# DATABASE HELPERS
# =========================
def _apply_sqlite_pragmas(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")  # ms
    conn.execute("PRAGMA foreign_keys=ON;")


@contextmanager
def db_conn() -> Iterator[sqlite3.Connection]:
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    _apply_sqlite_pragmas(conn)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db():
    with db_conn() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS persons (
            user_id INTEGER PRIMARY KEY,
            birthday TEXT NOT NULL,                   -- YYYY-MM-DD
            name TEXT,
            venmo TEXT,
            zelle TEXT,
            address_ciphertext TEXT NOT NULL,
            address_nonce TEXT NOT NULL,
            address_version INTEGER NOT NULL,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS circles (
            guild_id INTEGER PRIMARY KEY,
            channel_id INTEGER NOT NULL
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS cycles (
            cycle_id INTEGER PRIMARY KEY AUTOINCREMENT,
            guild_id INTEGER NOT NULL,
            celebrant_id INTEGER NOT NULL,
            birthday_date TEXT NOT NULL,              -- concrete occurrence, YYYY-MM-DD
            thread_id INTEGER UNIQUE,
            status TEXT NOT NULL DEFAULT 'open',
            winner_suggestion_id INTEGER,
            purchaser_id INTEGER,
            receipt_total TEXT,                       -- decimal, 2 places
            receipt_at_utc TEXT,
            participants_json TEXT,                   -- frozen at receipt time
            poll_message_id INTEGER,
            poll_answers_json TEXT,                   -- [[answer_id, suggestion_id], ...]
            paid_status_message_id INTEGER,
            reminder_sent_at_utc TEXT,
            archived_at_utc TEXT,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL,
            UNIQUE (guild_id, celebrant_id, birthday_date)
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS suggestions (
            suggestion_id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle_id INTEGER NOT NULL REFERENCES cycles(cycle_id) ON DELETE CASCADE,
            suggester_id INTEGER NOT NULL,
            url TEXT NOT NULL,
            title TEXT,
            price TEXT,
            message_id INTEGER,
            created_at_utc TEXT NOT NULL
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS payments (
            payment_id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle_id INTEGER NOT NULL REFERENCES cycles(cycle_id) ON DELETE CASCADE,
            payer_id INTEGER NOT NULL,
            paid_at_utc TEXT,
            override_by_purchaser INTEGER NOT NULL DEFAULT 0,
            note TEXT,
            UNIQUE (cycle_id, payer_id)
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS registration_sessions (
            user_id INTEGER PRIMARY KEY,
            birthday TEXT NOT NULL,
            data_json TEXT NOT NULL,
            created_at_utc TEXT NOT NULL
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_cycles_status ON cycles(status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_cycles_receipt ON cycles(receipt_at_utc);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_suggestions_cycle ON suggestions(cycle_id, created_at_utc);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_cycle ON payments(cycle_id);")


# ---- persons ----
def get_person(user_id: int) -> sqlite3.Row | None:
    with db_conn() as conn:
        return conn.execute("SELECT * FROM persons WHERE user_id=?", (user_id,)).fetchone()


def get_all_persons() -> list[sqlite3.Row]:
    with db_conn() as conn:
        return conn.execute("SELECT * FROM persons ORDER BY substr(birthday, 6), user_id").fetchall()


async def upsert_person(
    user_id: int,
    birthday: str,
    name: str | None,
    venmo: str | None,
    zelle: str | None,
    ciphertext: str,
    nonce: str,
    version: int,
) -> bool:
    """Insert or update a registration. Returns True when the person already existed."""
    now = utc_now_iso()
    async with db_write_lock:
        with db_conn() as conn:
            existed = conn.execute("SELECT 1 FROM persons WHERE user_id=?", (user_id,)).fetchone() is not None
            conn.execute("""
                INSERT INTO persons(
                    user_id, birthday, name, venmo, zelle,
                    address_ciphertext, address_nonce, address_version,
                    created_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    birthday=excluded.birthday,
                    name=excluded.name,
                    venmo=excluded.venmo,
                    zelle=excluded.zelle,
                    address_ciphertext=excluded.address_ciphertext,
                    address_nonce=excluded.address_nonce,
                    address_version=excluded.address_version,
                    updated_at_utc=excluded.updated_at_utc
            """, (user_id, birthday, name, venmo, zelle, ciphertext, nonce, version, now, now))
    return existed


async def delete_person(user_id: int) -> bool:
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("DELETE FROM persons WHERE user_id=?", (user_id,))
            return cur.rowcount == 1


# ---- registration sessions ----
async def save_registration_session(user_id: int, birthday: str, data: dict | None = None):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("""
                INSERT INTO registration_sessions(user_id, birthday, data_json, created_at_utc)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    birthday=excluded.birthday,
                    data_json=excluded.data_json,
                    created_at_utc=excluded.created_at_utc
            """, (user_id, birthday, json.dumps(data or {}), utc_now_iso()))


def get_registration_session(user_id: int) -> sqlite3.Row | None:
    with db_conn() as conn:
        return conn.execute(
            "SELECT * FROM registration_sessions WHERE user_id=?", (user_id,)
        ).fetchone()


async def delete_registration_session(user_id: int):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("DELETE FROM registration_sessions WHERE user_id=?", (user_id,))


# ---- circles ----
async def ensure_circle(guild_id: int, channel_id: int):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("""
                INSERT INTO circles(guild_id, channel_id) VALUES(?, ?)
                ON CONFLICT(guild_id) DO UPDATE SET channel_id=excluded.channel_id
            """, (guild_id, channel_id))


def get_circle_channel(guild_id: int) -> int | None:
    with db_conn() as conn:
        row = conn.execute("SELECT channel_id FROM circles WHERE guild_id=?", (guild_id,)).fetchone()
    return int(row["channel_id"]) if row else None


# ---- cycles ----
def get_cycle(cycle_id: int) -> Cycle | None:
    with db_conn() as conn:
        row = conn.execute("SELECT * FROM cycles WHERE cycle_id=?", (cycle_id,)).fetchone()
    return Cycle.from_row(row) if row else None


def get_cycle_by_thread(thread_id: int) -> Cycle | None:
    with db_conn() as conn:
        row = conn.execute("SELECT * FROM cycles WHERE thread_id=?", (thread_id,)).fetchone()
    return Cycle.from_row(row) if row else None


async def create_cycle_if_absent(
    guild_id: int,
    celebrant_id: int,
    birthday_date: str,
    created_at_utc: str | None = None,
) -> tuple[Cycle, bool]:
    """Idempotent insert keyed by (guild, celebrant, birthday_date). Returns (cycle, created)."""
    now = created_at_utc or utc_now_iso()
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("""
                INSERT INTO cycles(guild_id, celebrant_id, birthday_date, status, created_at_utc, updated_at_utc)
                VALUES (?, ?, ?, 'open', ?, ?)
                ON CONFLICT(guild_id, celebrant_id, birthday_date) DO NOTHING
            """, (guild_id, celebrant_id, birthday_date, now, now))
            created = cur.rowcount == 1
            row = conn.execute("""
                SELECT * FROM cycles
                WHERE guild_id=? AND celebrant_id=? AND birthday_date=?
            """, (guild_id, celebrant_id, birthday_date)).fetchone()
    return Cycle.from_row(row), created


async def update_cycle_fields(cycle_id: int, require_null: tuple[str, ...] = (), **fields) -> bool:
    """Targeted column update; columns in require_null guard the write so it only succeeds once."""
    unknown = (set(fields) | set(require_null)) - _CYCLE_COLUMNS
    if unknown:
        raise ValueError(f"unknown cycle columns: {sorted(unknown)}")
    assignments = ", ".join(f"{name}=?" for name in fields)
    guards = "".join(f" AND {name} IS NULL" for name in require_null)
    params = [*fields.values(), utc_now_iso(), cycle_id]
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute(
                f"UPDATE cycles SET {assignments}, updated_at_utc=? WHERE cycle_id=?{guards}",
                params,
            )
            return cur.rowcount == 1


async def close_voting(cycle_id: int, winner_suggestion_id: int | None) -> bool:
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("""
                UPDATE cycles
                SET winner_suggestion_id=?, status='voting_closed', updated_at_utc=?
                WHERE cycle_id=? AND status='open'
            """, (winner_suggestion_id, utc_now_iso(), cycle_id))
            return cur.rowcount == 1


async def claim_purchaser(cycle_id: int, user_id: int) -> bool:
    """Single atomic compare-and-swap; only the first claimant changes a row."""
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("""
                UPDATE cycles
                SET purchaser_id=?, status='claimed', updated_at_utc=?
                WHERE cycle_id=?
                  AND purchaser_id IS NULL
                  AND winner_suggestion_id IS NOT NULL
            """, (user_id, utc_now_iso(), cycle_id))
            return cur.rowcount == 1


async def record_receipt(cycle_id: int, total: Decimal, participants: list[int]) -> bool:
    """Freeze the participant snapshot and seed one unpaid payment per participant."""
    now = utc_now_iso()
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("""
                UPDATE cycles
                SET receipt_total=?, receipt_at_utc=?, participants_json=?,
                    status='receipt_posted', updated_at_utc=?
                WHERE cycle_id=? AND participants_json IS NULL
            """, (str(total), now, json.dumps(participants), now, cycle_id))
            if cur.rowcount != 1:
                return False
            ensure_payments(conn, cycle_id, participants)
            return True


def list_open_cycles() -> list[Cycle]:
    with db_conn() as conn:
        rows = conn.execute("""
            SELECT * FROM cycles
            WHERE status='open' AND thread_id IS NOT NULL
            ORDER BY cycle_id
        """).fetchall()
    return [Cycle.from_row(r) for r in rows]


def list_receipt_cycles() -> list[Cycle]:
    with db_conn() as conn:
        rows = conn.execute("""
            SELECT * FROM cycles
            WHERE receipt_at_utc IS NOT NULL
              AND participants_json IS NOT NULL
              AND archived_at_utc IS NULL
            ORDER BY cycle_id
        """).fetchall()
    return [Cycle.from_row(r) for r in rows]


def list_archived_cycles() -> list[Cycle]:
    with db_conn() as conn:
        rows = conn.execute("""
            SELECT * FROM cycles
            WHERE archived_at_utc IS NOT NULL
            ORDER BY cycle_id
        """).fetchall()
    return [Cycle.from_row(r) for r in rows]


# ---- suggestions ----
async def insert_suggestion(
    cycle_id: int,
    suggester_id: int,
    url: str,
    title: str | None,
    price: str | None,
    message_id: int | None,
    created_at_utc: str | None = None,
) -> int:
    async with db_write_lock:
        with db_conn() as conn:
            cur = conn.execute("""
                INSERT INTO suggestions(cycle_id, suggester_id, url, title, price, message_id, created_at_utc)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (cycle_id, suggester_id, url, title, price, message_id, created_at_utc or utc_now_iso()))
            return int(cur.lastrowid)


async def reserve_suggestion(
    cycle_id: int,
    suggester_id: int,
    url: str,
    created_at_utc: str,
    admit: Callable[[int, str | None], str | None],
) -> tuple[int | None, str | None]:
    """Check the suggester's allowance and insert in one step.

    admit(count, latest_created_at) returns a refusal message or None.
    Returns (suggestion_id, None) on success or (None, refusal).
    """
    async with db_write_lock:
        with db_conn() as conn:
            refusal = admit(*_suggestion_stats(conn, cycle_id, suggester_id))
            if refusal:
                return None, refusal
            cur = conn.execute("""
                INSERT INTO suggestions(cycle_id, suggester_id, url, created_at_utc)
                VALUES (?, ?, ?, ?)
            """, (cycle_id, suggester_id, url, created_at_utc))
            return int(cur.lastrowid), None


async def attach_suggestion_post(suggestion_id: int, title: str | None, price: str | None, message_id: int):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("""
                UPDATE suggestions SET title=?, price=?, message_id=?
                WHERE suggestion_id=?
            """, (title, price, message_id, suggestion_id))


async def delete_suggestion(suggestion_id: int):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("DELETE FROM suggestions WHERE suggestion_id=?", (suggestion_id,))


def list_suggestions_for_cycle(cycle_id: int) -> list[sqlite3.Row]:
    with db_conn() as conn:
        return conn.execute("""
            SELECT * FROM suggestions
            WHERE cycle_id=?
            ORDER BY created_at_utc ASC, suggestion_id ASC
        """, (cycle_id,)).fetchall()


def get_suggestion(suggestion_id: int) -> sqlite3.Row | None:
    with db_conn() as conn:
        return conn.execute(
            "SELECT * FROM suggestions WHERE suggestion_id=?", (suggestion_id,)
        ).fetchone()


def _suggestion_stats(conn: sqlite3.Connection, cycle_id: int, suggester_id: int) -> tuple[int, str | None]:
    row = conn.execute("""
        SELECT COUNT(*) AS count, MAX(created_at_utc) AS latest
        FROM suggestions
        WHERE cycle_id=? AND suggester_id=?
    """, (cycle_id, suggester_id)).fetchone()
    return int(row["count"]), row["latest"]


def suggestion_stats(cycle_id: int, suggester_id: int) -> tuple[int, str | None]:
    with db_conn() as conn:
        return _suggestion_stats(conn, cycle_id, suggester_id)


# ---- payments ----
async def upsert_payment(
    cycle_id: int,
    payer_id: int,
    paid_at_utc: str | None,
    override: bool,
    note: str | None,
):
    async with db_write_lock:
        with db_conn() as conn:
            conn.execute("""
                INSERT INTO payments(cycle_id, payer_id, paid_at_utc, override_by_purchaser, note)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cycle_id, payer_id) DO UPDATE SET
                    paid_at_utc=excluded.paid_at_utc,
                    override_by_purchaser=excluded.override_by_purchaser,
                    note=excluded.note
            """, (cycle_id, payer_id, paid_at_utc, int(override), note))


def ensure_payments(conn: sqlite3.Connection, cycle_id: int, payer_ids: list[int]):
    """One unpaid row per payer; existing rows are left alone. Runs inside the caller's transaction."""
    conn.executemany("""
        INSERT INTO payments(cycle_id, payer_id) VALUES (?, ?)
        ON CONFLICT(cycle_id, payer_id) DO NOTHING
    """, [(cycle_id, payer_id) for payer_id in payer_ids])


def list_payments_for_cycle(cycle_id: int) -> list[sqlite3.Row]:
    with db_conn() as conn:
        return conn.execute("""
            SELECT payer_id, paid_at_utc, override_by_purchaser, note
            FROM payments
            WHERE cycle_id=?
            ORDER BY payment_id
        """, (cycle_id,)).fetchall()
