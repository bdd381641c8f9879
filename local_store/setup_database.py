import os
import sqlite3


def setup_database(path: str) -> None:
    """Create the key/value table that holds all persisted authenticator state"""

    # Make sure the parent directory exists
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(path)
    try:
        cursor = conn.cursor()
        cursor.execute('''
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        ''')
        conn.commit()
    finally:
        conn.close()


if __name__ == "__main__":
    from authenticator.config import DEFAULT_DB_PATH

    setup_database(DEFAULT_DB_PATH)
    print(f"Database setup completed: {DEFAULT_DB_PATH}")
