import sqlite3
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root

DATA_DIR = DATA_ROOT
DATABASE_FILE = DATA_DIR / 'order_analytics.db'


def get_db_connection():
    """Establishes a connection to the SQLite database."""
    ensure_data_root()
    conn = sqlite3.connect(str(DATABASE_FILE), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def create_schema(cursor: sqlite3.Cursor) -> None:
    """Create the catalog and order tables the analytics snapshot reads."""
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            category_id TEXT,
            price REAL DEFAULT 0,
            stock INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY NOT NULL,
            customer_name TEXT,
            status TEXT,
            payment_status TEXT,
            total_amount REAL,
            created_at TEXT
        );
    """)

    # Line items keep their own name and price so reports reflect what was sold
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS order_line_items (
            line_item_id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            product_id TEXT,
            name TEXT,
            unit_price REAL,
            quantity INTEGER,
            FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE
        );
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_order_line_items_order ON order_line_items (order_id)"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at)")


def init_db():
    """Initializes the database schema."""
    conn = get_db_connection()
    try:
        create_schema(conn.cursor())
        conn.commit()
    finally:
        conn.close()
    logger.info("Database initialized.")


if __name__ == '__main__':
    init_db()
