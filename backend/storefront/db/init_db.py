"""
Ledger Schema

Creates SQLite database tables for the storefront order ledger.
Tables: products, user_roles, pending_orders, order_items, purchases, chat_sessions

The unique indexes on pending_orders and purchases are the ledger's
idempotency guarantee; they must exist in every deployed database.
"""
import logging
import sqlite3
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from ..config import settings
from .models import ANONYMOUS_USER_ID

logger = logging.getLogger(__name__)


def create_tables(conn: sqlite3.Connection) -> None:
    """
    Apply the ledger DDL. Every statement is IF NOT EXISTS, so running it
    against an existing database is a no-op.

    WAL lets status reads proceed while a callback holds the write lock.
    """
    cursor = conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA synchronous=NORMAL")

    # Products table - catalog store
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            category TEXT,
            price REAL NOT NULL,
            price_usd REAL,
            pdf_url TEXT,
            cover_url TEXT,
            downloads INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # User roles table - admin override for downloads
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            user_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('admin', 'user')),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, role)
        )
    """)

    # Pending orders table - fulfillment state machine
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS pending_orders (
            id TEXT PRIMARY KEY,
            merchant_reference TEXT NOT NULL UNIQUE,
            provider_tracking_id TEXT UNIQUE,
            user_id TEXT NOT NULL,
            channel TEXT NOT NULL CHECK(channel IN ('mpesa', 'pesapal', 'payhero', 'telegram')),
            total_amount REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'completed', 'failed')),
            delivery_chat_id TEXT,
            contact_phone TEXT,
            transaction_id TEXT,
            status_checks INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Indexes for pending_orders
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_pending_orders_user_id ON pending_orders(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_pending_orders_status ON pending_orders(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_pending_orders_created ON pending_orders(created_at DESC)")

    # Order items table
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            product_id TEXT NOT NULL,
            amount REAL NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            FOREIGN KEY (order_id) REFERENCES pending_orders(id),
            UNIQUE (order_id, position)
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items(order_id)")

    # Purchases table - entitlements
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS purchases (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            product_id TEXT NOT NULL,
            amount REAL NOT NULL,
            payment_method TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            order_id TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (order_id) REFERENCES pending_orders(id),
            UNIQUE (transaction_id, product_id)
        )
    """)

    # Indexes for purchases
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_purchases_user_id ON purchases(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_purchases_transaction_id ON purchases(transaction_id)")
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_purchases_user_product "
        f"ON purchases(user_id, product_id) WHERE user_id != '{ANONYMOUS_USER_ID}'"
    )

    # Chat sessions table - chat bot conversation cache
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS chat_sessions (
            chat_id TEXT PRIMARY KEY,
            state TEXT NOT NULL DEFAULT 'idle' CHECK(state IN ('idle', 'awaiting_phone', 'awaiting_payment')),
            context_data TEXT,
            awaiting_phone BOOLEAN NOT NULL DEFAULT FALSE,
            last_activity_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_chat_sessions_activity ON chat_sessions(last_activity_at DESC)")

    conn.commit()
    logger.info("Ledger schema is up to date")


def initialize_database():
    """Apply the ledger schema to settings.database_path. Runs in the app lifespan."""
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Applying ledger schema to {db_path}")

    conn = sqlite3.connect(db_path)
    try:
        create_tables(conn)
    finally:
        conn.close()


# ============================================================================
# Async sessions
# ============================================================================

DATABASE_URL = f"sqlite+aiosqlite:///{settings.database_path}"

# Webhook bursts contend for the write lock; wait for it rather than fail
engine = create_async_engine(
    DATABASE_URL,
    connect_args={"timeout": 30, "check_same_thread": False},
    pool_pre_ping=True,
    pool_recycle=3600,
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; reconciliation commits explicitly."""
    async with AsyncSessionLocal() as session:
        yield session


get_db = get_async_session


def main():
    """Create the ledger tables from the command line."""
    logging.basicConfig(level=logging.INFO)
    initialize_database()


if __name__ == "__main__":
    main()
