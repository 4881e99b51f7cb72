# storage.py
import sqlite3
import threading

from models import to_iso, utcnow


class Storage:
    def __init__(self, db_path="queue.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        # Worker thread and CLI/dashboard callers share this connection
        self.lock = threading.RLock()

        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            priority INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            scheduled_at TEXT NOT NULL,
            result TEXT,
            error TEXT,
            started_at TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled ON jobs (status, scheduled_at)")

        # Provisioning records table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS provisioning_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id INTEGER,
            domain TEXT NOT NULL,
            params TEXT,
            site_created INTEGER NOT NULL DEFAULT 0,
            database_created INTEGER NOT NULL DEFAULT 0,
            credentials_copied INTEGER NOT NULL DEFAULT 0,
            repository_cloned INTEGER NOT NULL DEFAULT 0,
            environment_configured INTEGER NOT NULL DEFAULT 0,
            install_completed INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'in_progress',
            error_message TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_records_domain ON provisioning_records (domain)")

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.commit()

    def close(self):
        with self.lock:
            self.conn.close()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self.lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(utcnow())
        with self.lock:
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))
            self.conn.commit()

    def list_config(self):
        with self.lock:
            rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [dict(r) for r in rows]
