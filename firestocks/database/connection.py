"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        # Background tasks run on the web server's worker threads
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run statements as one unit on the shared connection.

        Holds the connection lock for the whole block, so request handlers
        and background tasks never interleave statements. Nested blocks join
        the outer one; only the outermost commits, or rolls back on error.
        """
        with self._lock:
            connection = self.connection
            self._depth += 1
            try:
                yield connection.cursor()
            except Exception:
                self._depth -= 1
                if self._depth == 0:
                    connection.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                connection.commit()

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        cursor = self.connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT,
                full_name TEXT,
                email TEXT,
                whatsapp_number TEXT,
                whatsapp_notifications_enabled INTEGER NOT NULL DEFAULT 0,
                notification_preferences TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS posts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                company_name TEXT NOT NULL DEFAULT '',
                exchange TEXT,
                country TEXT,
                initial_price REAL,
                current_price REAL,
                last_price REAL,
                target_price REAL,
                stop_loss_price REAL,
                strategy TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                created_at TIMESTAMP NOT NULL,
                last_price_check TIMESTAMP,
                closed INTEGER NOT NULL DEFAULT 0,
                target_reached INTEGER NOT NULL DEFAULT 0,
                target_reached_date TIMESTAMP,
                stop_loss_triggered INTEGER NOT NULL DEFAULT 0,
                stop_loss_triggered_date TIMESTAMP,
                version INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                CHECK (NOT (target_reached = 1 AND stop_loss_triggered = 1))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS follows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                follower_id TEXT NOT NULL,
                following_id TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (follower_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (following_id) REFERENCES users(id) ON DELETE CASCADE,
                UNIQUE (follower_id, following_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS price_check_usage (
                user_id TEXT NOT NULL,
                check_date TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                last_check TIMESTAMP,
                PRIMARY KEY (user_id, check_date)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS price_check_history (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                seq INTEGER NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (user_id, id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_bots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                bot_token TEXT NOT NULL,
                bot_name TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_subscribers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bot_id INTEGER NOT NULL,
                telegram_user_id INTEGER NOT NULL,
                telegram_username TEXT,
                telegram_first_name TEXT,
                telegram_last_name TEXT,
                is_subscribed INTEGER NOT NULL DEFAULT 1,
                notify_broadcasts INTEGER NOT NULL DEFAULT 1,
                notify_price_alerts INTEGER NOT NULL DEFAULT 1,
                subscribed_at TIMESTAMP,
                last_interaction TIMESTAMP,
                FOREIGN KEY (bot_id) REFERENCES telegram_bots(id) ON DELETE CASCADE,
                UNIQUE (bot_id, telegram_user_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_broadcasts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bot_id INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL DEFAULT '',
                broadcast_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                sent_count INTEGER NOT NULL DEFAULT 0,
                failed_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                sent_at TIMESTAMP,
                completed_at TIMESTAMP,
                FOREIGN KEY (bot_id) REFERENCES telegram_bots(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_broadcast_posts (
                broadcast_id INTEGER NOT NULL,
                post_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                FOREIGN KEY (broadcast_id) REFERENCES telegram_broadcasts(id) ON DELETE CASCADE,
                PRIMARY KEY (broadcast_id, post_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_broadcast_recipients (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                broadcast_id INTEGER NOT NULL,
                subscriber_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                telegram_message_id INTEGER,
                error_message TEXT,
                sent_at TIMESTAMP,
                FOREIGN KEY (broadcast_id) REFERENCES telegram_broadcasts(id) ON DELETE CASCADE,
                FOREIGN KEY (subscriber_id) REFERENCES telegram_subscribers(id) ON DELETE CASCADE,
                UNIQUE (broadcast_id, subscriber_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bot_id INTEGER NOT NULL,
                subscriber_id INTEGER NOT NULL,
                notification_type TEXT NOT NULL,
                broadcast_id INTEGER,
                telegram_message_id INTEGER,
                message_text TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS whatsapp_message_templates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                template_name TEXT NOT NULL,
                template_type TEXT NOT NULL,
                language_code TEXT NOT NULL,
                subject TEXT NOT NULL DEFAULT '',
                body_template TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS whatsapp_notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                recipient_id TEXT NOT NULL,
                post_id TEXT,
                message_content TEXT NOT NULL,
                message_type TEXT NOT NULL,
                whatsapp_message_id TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                error_message TEXT,
                sent_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                plan_name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                paypal_subscription_id TEXT,
                cancelled_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS subscription_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                event_data TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS paypal_webhook_events (
                event_id TEXT PRIMARY KEY,
                event_type TEXT,
                received_at TIMESTAMP NOT NULL
            )
        """)

        # Indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_posts_user_closed ON posts(user_id, closed)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_user ON price_check_history(user_id, seq)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_subscribers_bot ON telegram_subscribers(bot_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_recipients_broadcast
            ON telegram_broadcast_recipients(broadcast_id, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON user_subscriptions(user_id, status)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
