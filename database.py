import logging
import sqlite3

import settings

logger = logging.getLogger(__name__)


def init_database(db_path=None):
    """Initialize the SQLite database with the flight-data-recorder schema."""
    conn = sqlite3.connect(db_path or settings.DB_PATH)
    cursor = conn.cursor()

    # One row per recorder sample; measurement columns are nullable (NULL = unknown).
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS fdr_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            flight_number TEXT NOT NULL,         -- e.g. "122"
            date INTEGER NOT NULL,               -- yyyymmdd, e.g. 20250324
            utc_time TEXT NOT NULL,              -- "hh:mm:ss"
            fdr_time INTEGER,
            pressure_altitude INTEGER,
            pitch_angle INTEGER,
            roll_angle INTEGER,
            mag_heading INTEGER,
            computed_airspeed INTEGER,
            vertical_speed INTEGER,
            latitude REAL,
            longitude REAL,
            flap_position INTEGER,
            gear_selection_up INTEGER,
            ap1_engaged INTEGER,
            ap2_engaged INTEGER,
            air_ground INTEGER
        )
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_fdr_flight_date_time
        ON fdr_records(flight_number, date, utc_time)
    ''')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_fdr_date ON fdr_records(date)
    ''')

    conn.commit()
    conn.close()
    logger.info("Database %s initialized successfully.", db_path or settings.DB_PATH)


def get_db_connection(db_path=None):
    """Get a database connection."""
    return sqlite3.connect(db_path or settings.DB_PATH)


if __name__ == '__main__':
    settings.configure_logging()
    init_database()
