import asyncio
import json
import logging
import os
import sqlite3
from datetime import datetime, timedelta

import pytz

from .config import DB_PATH, DEFAULT_TEST_ID

logger = logging.getLogger('gift_ops')

PROCESS_STATUS_QUEUED = 'queued'
PROCESS_STATUS_ACTIVE = 'active'
PROCESS_STATUS_PREEMPTED = 'preempted'
PROCESS_STATUS_COMPLETED = 'completed'
PROCESS_STATUS_FAILED = 'failed'


def utc_now():
    return datetime.now(pytz.UTC).isoformat()


async def execute_with_retry(operation, *args, max_retries=3, delay=0.1):
    """Execute a database operation with retry logic for handling locks."""
    for attempt in range(max_retries):
        try:
            return operation(*args)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < max_retries - 1:
                logger.warning(f"Database locked, retrying in {delay}s (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(delay)
                delay *= 2
            else:
                raise


def connect(db_path=DB_PATH):
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir)
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA cache_size=10000")
    conn.execute("PRAGMA temp_store=MEMORY")
    conn.commit()
    return conn


def init_schema(conn):
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS processes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            target INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'queued',
            priority INTEGER NOT NULL,
            details TEXT,
            progress TEXT,
            created_by TEXT,
            created_at TEXT,
            updated_at TEXT,
            completed_at TEXT
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS gift_codes (
            gift_code TEXT PRIMARY KEY,
            date TEXT,
            status TEXT DEFAULT 'active',
            added_by TEXT,
            source TEXT DEFAULT 'manual',
            api_pushed INTEGER DEFAULT 0,
            created_at TEXT
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS giftcode_usage (
            fid TEXT NOT NULL,
            gift_code TEXT NOT NULL,
            status TEXT,
            used_at TEXT,
            UNIQUE (fid, gift_code)
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS players (
            fid TEXT PRIMARY KEY,
            nickname TEXT,
            alliance_id INTEGER,
            is_rich INTEGER DEFAULT 0,
            vip_count INTEGER DEFAULT 0,
            exist INTEGER DEFAULT 0
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS alliance (
            id INTEGER PRIMARY KEY,
            name TEXT,
            priority INTEGER DEFAULT 0,
            channel_id INTEGER,
            auto_redeem INTEGER DEFAULT 0
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            auto_delete INTEGER DEFAULT 1
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS test_ids (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            test_id TEXT NOT NULL
        )
    """)
    conn.commit()

    # Columns added after the first release
    migrations = [
        "ALTER TABLE processes ADD COLUMN preempted_by INTEGER",
        "ALTER TABLE gift_codes ADD COLUMN is_vip INTEGER DEFAULT 0",
        "ALTER TABLE gift_codes ADD COLUMN last_validated TEXT",
    ]
    for statement in migrations:
        try:
            cursor.execute(statement)
            conn.commit()
        except sqlite3.OperationalError:
            # Column already exists
            pass


class ProcessStore:
    """Durable process records; progress is a JSON document rewritten on every checkpoint."""

    def __init__(self, conn):
        self.conn = conn

    @staticmethod
    def _decode(row):
        if row is None:
            return None
        process = dict(row)
        process['details'] = json.loads(process['details']) if process.get('details') else {}
        process['progress'] = json.loads(process['progress']) if process.get('progress') else {}
        return process

    async def create_process(self, action, target, priority, created_by, details=None, progress=None):
        now = utc_now()

        def _insert():
            cursor = self.conn.execute("""
                INSERT INTO processes (action, target, status, priority, details, progress, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (action, int(target), PROCESS_STATUS_QUEUED, priority, json.dumps(details or {}),
                  json.dumps(progress or {}), str(created_by), now, now))
            self.conn.commit()
            return cursor.lastrowid

        process_id = await execute_with_retry(_insert)
        logger.info(f"GiftOps: Process {process_id} created ({action}, target {target}, priority {priority}, by {created_by})")
        return process_id

    async def get_process(self, process_id):
        row = self.conn.execute("SELECT * FROM processes WHERE id = ?", (process_id,)).fetchone()
        return self._decode(row)

    async def update_progress(self, process_id, progress):
        def _update():
            self.conn.execute(
                "UPDATE processes SET progress = ?, updated_at = ? WHERE id = ?",
                (json.dumps(progress), utc_now(), process_id)
            )
            self.conn.commit()

        await execute_with_retry(_update)

    async def update_status(self, process_id, status):
        def _update():
            if status in (PROCESS_STATUS_COMPLETED, PROCESS_STATUS_FAILED):
                now = utc_now()
                self.conn.execute(
                    "UPDATE processes SET status = ?, updated_at = ?, completed_at = ? WHERE id = ?",
                    (status, now, now, process_id)
                )
            elif status == PROCESS_STATUS_ACTIVE:
                self.conn.execute(
                    "UPDATE processes SET status = ?, preempted_by = NULL, updated_at = ? WHERE id = ?",
                    (status, utc_now(), process_id)
                )
            else:
                self.conn.execute(
                    "UPDATE processes SET status = ?, updated_at = ? WHERE id = ?",
                    (status, utc_now(), process_id)
                )
            self.conn.commit()

        await execute_with_retry(_update)

    async def set_preempted(self, process_id, preempted_by):
        def _update():
            self.conn.execute(
                "UPDATE processes SET status = ?, preempted_by = ?, updated_at = ? WHERE id = ?",
                (PROCESS_STATUS_PREEMPTED, preempted_by, utc_now(), process_id)
            )
            self.conn.commit()

        await execute_with_retry(_update)

    async def get_processes_by_status(self, *statuses):
        placeholders = ','.join('?' * len(statuses))
        rows = self.conn.execute(f"""
            SELECT * FROM processes WHERE status IN ({placeholders})
            ORDER BY priority ASC, created_at ASC, id ASC
        """, statuses).fetchall()
        return [self._decode(row) for row in rows]

    async def get_next_runnable(self):
        """Lowest (priority, created_at) among queued and preempted processes."""
        row = self.conn.execute("""
            SELECT * FROM processes WHERE status IN (?, ?)
            ORDER BY priority ASC, created_at ASC, id ASC LIMIT 1
        """, (PROCESS_STATUS_QUEUED, PROCESS_STATUS_PREEMPTED)).fetchone()
        return self._decode(row)

    async def reset_active_to_queued(self):
        rows = self.conn.execute("SELECT id FROM processes WHERE status = ?", (PROCESS_STATUS_ACTIVE,)).fetchall()
        process_ids = [row['id'] for row in rows]
        if process_ids:
            def _reset():
                self.conn.execute(
                    "UPDATE processes SET status = ?, updated_at = ? WHERE status = ?",
                    (PROCESS_STATUS_QUEUED, utc_now(), PROCESS_STATUS_ACTIVE)
                )
                self.conn.commit()

            await execute_with_retry(_reset)
        return process_ids


class GiftCodeStore:
    def __init__(self, conn):
        self.conn = conn

    def get_gift_code(self, gift_code):
        row = self.conn.execute("SELECT * FROM gift_codes WHERE gift_code = ?", (gift_code,)).fetchone()
        return dict(row) if row else None

    def get_all_gift_codes(self):
        return [dict(row) for row in self.conn.execute("SELECT * FROM gift_codes").fetchall()]

    def add_gift_code(self, gift_code, status='active', added_by='system', source='manual', api_pushed=False,
                      is_vip=False, date=None):
        now = utc_now()
        if date is None:
            date = now[:10]
        self.conn.execute("""
            INSERT INTO gift_codes (gift_code, date, status, added_by, source, api_pushed, is_vip, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (gift_code, date, status, str(added_by), source, int(bool(api_pushed)), int(bool(is_vip)), now))
        self.conn.commit()
        logger.info(f"GiftOps: Stored gift code '{gift_code}' (source: {source}, vip: {bool(is_vip)})")

    def update_status(self, gift_code, status):
        cursor = self.conn.execute("UPDATE gift_codes SET status = ? WHERE gift_code = ?", (status, gift_code))
        self.conn.commit()
        if cursor.rowcount > 0 and status == 'invalid':
            logger.info(f"GiftOps: Marked gift code '{gift_code}' as invalid")

    def update_vip_status(self, gift_code, is_vip):
        self.conn.execute("UPDATE gift_codes SET is_vip = ? WHERE gift_code = ?", (int(bool(is_vip)), gift_code))
        self.conn.commit()

    def update_last_validated(self, gift_code):
        self.conn.execute("UPDATE gift_codes SET last_validated = ? WHERE gift_code = ?", (utc_now(), gift_code))
        self.conn.commit()

    def update_api_pushed(self, gift_code, pushed=True):
        self.conn.execute("UPDATE gift_codes SET api_pushed = ? WHERE gift_code = ?", (int(bool(pushed)), gift_code))
        self.conn.commit()

    def get_codes_needing_validation(self, now=None):
        """Active codes older than an hour that were never validated or not within the last 24 hours."""
        now = now or datetime.now(pytz.UTC)
        created_cutoff = (now - timedelta(hours=1)).isoformat()
        validated_cutoff = (now - timedelta(hours=24)).isoformat()
        rows = self.conn.execute("""
            SELECT * FROM gift_codes
            WHERE status != 'invalid'
            AND created_at < ?
            AND (last_validated IS NULL OR last_validated < ?)
            ORDER BY created_at ASC
        """, (created_cutoff, validated_cutoff)).fetchall()
        return [dict(row) for row in rows]

    def add_usage(self, fid, gift_code, status):
        self.conn.execute("""
            INSERT OR IGNORE INTO giftcode_usage (fid, gift_code, status, used_at)
            VALUES (?, ?, ?, ?)
        """, (str(fid), gift_code, status, utc_now()))
        self.conn.commit()

    def get_usage(self, fid, gift_code):
        row = self.conn.execute(
            "SELECT * FROM giftcode_usage WHERE fid = ? AND gift_code = ?", (str(fid), gift_code)
        ).fetchone()
        return dict(row) if row else None

    def get_usage_statuses(self, gift_code):
        """fid -> recorded status for everyone with a usage row for this code."""
        rows = self.conn.execute(
            "SELECT fid, status FROM giftcode_usage WHERE gift_code = ?", (gift_code,)
        ).fetchall()
        return {row['fid']: row['status'] for row in rows}


class PlayerStore:
    def __init__(self, conn):
        self.conn = conn

    def get_player(self, fid):
        row = self.conn.execute("SELECT * FROM players WHERE fid = ?", (str(fid),)).fetchone()
        return dict(row) if row else None

    def get_players_by_alliance(self, alliance_id):
        rows = self.conn.execute("SELECT * FROM players WHERE alliance_id = ? ORDER BY fid", (alliance_id,)).fetchall()
        return [dict(row) for row in rows]

    def upsert_player(self, fid, nickname=None, alliance_id=None, is_rich=False, vip_count=0):
        self.conn.execute("""
            INSERT INTO players (fid, nickname, alliance_id, is_rich, vip_count)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(fid) DO UPDATE SET nickname = excluded.nickname, alliance_id = excluded.alliance_id
        """, (str(fid), nickname, alliance_id, int(bool(is_rich)), vip_count))
        self.conn.commit()

    def update_rich_status(self, fid, is_rich):
        self.conn.execute("UPDATE players SET is_rich = ? WHERE fid = ?", (int(bool(is_rich)), str(fid)))
        self.conn.commit()

    def update_vip_count(self, fid, vip_count):
        self.conn.execute("UPDATE players SET vip_count = ? WHERE fid = ?", (vip_count, str(fid)))
        self.conn.commit()

    def increment_exist(self, fid):
        self.conn.execute("UPDATE players SET exist = COALESCE(exist, 0) + 1 WHERE fid = ?", (str(fid),))
        self.conn.commit()

    def reset_exist(self, fid):
        self.conn.execute("UPDATE players SET exist = 0 WHERE fid = ?", (str(fid),))
        self.conn.commit()

    def delete_player(self, fid):
        self.conn.execute("DELETE FROM players WHERE fid = ?", (str(fid),))
        self.conn.commit()
        logger.info(f"GiftOps: Deleted player {fid} after repeated ROLE NOT EXIST responses")


class AllianceStore:
    def __init__(self, conn):
        self.conn = conn

    def get_alliance(self, alliance_id):
        row = self.conn.execute("SELECT * FROM alliance WHERE id = ?", (alliance_id,)).fetchone()
        return dict(row) if row else None

    def get_auto_redeem_alliances(self):
        rows = self.conn.execute(
            "SELECT * FROM alliance WHERE auto_redeem = 1 ORDER BY priority ASC, id ASC"
        ).fetchall()
        return [dict(row) for row in rows]

    def upsert_alliance(self, alliance_id, name, priority=0, channel_id=None, auto_redeem=False):
        self.conn.execute("""
            INSERT INTO alliance (id, name, priority, channel_id, auto_redeem)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name, priority = excluded.priority,
                channel_id = excluded.channel_id, auto_redeem = excluded.auto_redeem
        """, (alliance_id, name, priority, channel_id, int(bool(auto_redeem))))
        self.conn.commit()


class SettingsStore:
    def __init__(self, conn):
        self.conn = conn

    def get_auto_delete(self):
        row = self.conn.execute("SELECT auto_delete FROM settings ORDER BY id DESC LIMIT 1").fetchone()
        return bool(row['auto_delete']) if row else True

    def set_auto_delete(self, enabled):
        self.conn.execute("INSERT INTO settings (auto_delete) VALUES (?)", (int(bool(enabled)),))
        self.conn.commit()

    def get_test_id(self):
        row = self.conn.execute("SELECT test_id FROM test_ids ORDER BY id DESC LIMIT 1").fetchone()
        if row:
            return row['test_id']
        # Insert the default test ID if no entry exists
        self.conn.execute("INSERT INTO test_ids (test_id) VALUES (?)", (DEFAULT_TEST_ID,))
        self.conn.commit()
        logger.info(f"Initialized default test ID ({DEFAULT_TEST_ID}) in database")
        return DEFAULT_TEST_ID

    def set_test_id(self, test_id):
        self.conn.execute("INSERT INTO test_ids (test_id) VALUES (?)", (str(test_id),))
        self.conn.commit()


class GiftDatabase:
    """One sqlite connection shared by every store."""

    def __init__(self, db_path=DB_PATH, conn=None):
        self.conn = conn if conn is not None else connect(db_path)
        self.conn.row_factory = sqlite3.Row
        init_schema(self.conn)
        self.processes = ProcessStore(self.conn)
        self.codes = GiftCodeStore(self.conn)
        self.players = PlayerStore(self.conn)
        self.alliances = AllianceStore(self.conn)
        self.settings = SettingsStore(self.conn)

    def close(self):
        self.conn.close()
