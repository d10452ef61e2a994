import logging
import sqlite3
import os
import sys

from src.db.db_store import load_schema

logger = logging.getLogger(__name__)

DB_PATH = "/opt/rowgym/gym.db"

def initialise_database(db_path: str = DB_PATH) -> bool:
    '''
    Create the gym tables in a new database file.
    Returns:
        True if the database was initialised
        False if a non-empty database already existed
    '''
    if os.path.exists(db_path) and os.path.getsize(db_path) > 0:
        logger.info(f"Database already exists at {db_path}, skipping initialisation.")
        return False
    logger.info(f"Initialising RowGym database at {db_path}")
    schema_sql = load_schema()
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_sql)
    logger.info("Database initialised")
    return True

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    initialise_database(sys.argv[1] if len(sys.argv) > 1 else DB_PATH)
