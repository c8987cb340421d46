# db.py
# Run history for the sample selection system (SQLite).
# `results` keeps one row per finished run; `run_counters` hands out the per-parameter
# run index used in result identifiers (m-n-k-j-s-run_index-count).
# Deleting the newest run of a parameter combination gives its index back.

import sqlite3
import json
import os

# --- Constants ---
DB_FILE = "kcover_results.db"  # Database filename

PARAM_KEYS = ('m', 'n', 'k', 'j', 's')
REQUIRED_RESULT_KEYS = {'m', 'n', 'k', 'j', 's', 'run_index', 'num_results'}


def _connect(db_file=None, row_factory=False):
    # DB_FILE is read per call; main.configure_db_path may repoint it at startup
    conn = sqlite3.connect(db_file or DB_FILE, timeout=10) # Longer timeout for a busy database
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def format_result_id(record):
    """m-n-k-j-s-run_index-num_results for a result row or result dict."""
    return "-".join(str(record[key]) for key in PARAM_KEYS + ('run_index', 'num_results'))


# --- Database Setup ---
def setup_database(db_file=None):
    """
    Creates the `results` and `run_counters` tables if they don't exist.

    Returns:
        bool: True if the schema is in place.
    """
    print(f"Checking/Creating database: {os.path.abspath(db_file or DB_FILE)}")
    conn = None
    try:
        conn = _connect(db_file)
        cursor = conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                m INTEGER NOT NULL,
                n INTEGER NOT NULL,
                k INTEGER NOT NULL,
                j INTEGER NOT NULL,
                s INTEGER NOT NULL,
                min_groups INTEGER NOT NULL DEFAULT 1,
                mode TEXT,
                run_index INTEGER NOT NULL,
                num_results INTEGER NOT NULL,
                algorithm TEXT,
                status TEXT,
                time_taken REAL,
                universe TEXT,
                sets_found TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(m, n, k, j, s, run_index)
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS run_counters (
                m INTEGER NOT NULL,
                n INTEGER NOT NULL,
                k INTEGER NOT NULL,
                j INTEGER NOT NULL,
                s INTEGER NOT NULL,
                last_run_index INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (m, n, k, j, s)
            )
        ''')
        conn.commit()
        print("Database setup complete.")
        return True
    except sqlite3.Error as e:
        print(f"Database setup error: {e}")
        return False
    finally:
        if conn:
            conn.close()


# --- Run Index ---
def get_and_increment_run_index(m, n, k, j, s, db_file=None):
    """
    Reserves the next run index (starting from 1) for a parameter combination.

    Returns:
        int: the reserved index, or None if a database error occurred.
    """
    conn = None
    try:
        conn = _connect(db_file)
        cursor = conn.cursor()
        conn.execute("BEGIN")
        cursor.execute("SELECT last_run_index FROM run_counters WHERE m=? AND n=? AND k=? AND j=? AND s=?",
                       (m, n, k, j, s))
        row = cursor.fetchone()
        if row:
            next_index = row[0] + 1
            cursor.execute("UPDATE run_counters SET last_run_index = ? WHERE m=? AND n=? AND k=? AND j=? AND s=?",
                           (next_index, m, n, k, j, s))
        else:
            next_index = 1
            cursor.execute("INSERT INTO run_counters (m, n, k, j, s, last_run_index) VALUES (?, ?, ?, ?, ?, ?)",
                           (m, n, k, j, s, next_index))
        conn.commit()
        print(f"Database: Assigned run_index {next_index} for parameters ({m},{n},{k},{j},{s})")
        return next_index
    except sqlite3.Error as e:
        print(f"Database error (getting/incrementing run index for {m},{n},{k},{j},{s}): {e}")
        if conn:
            try:
                conn.rollback()
            except sqlite3.Error as rb_err:
                print(f"Database error: Rollback failed: {rb_err}")
        return None
    finally:
        if conn:
            conn.close()


# --- Data Saving ---
def save_result(result_data, db_file=None):
    """
    Inserts one run into `results`. Keys of `result_data` are column names;
    list-valued `universe` / `sets_found` are stored as JSON.

    Returns:
        bool: True on success, False on missing keys, duplicates or database errors.
    """
    if not REQUIRED_RESULT_KEYS.issubset(result_data.keys()):
        print(f"Error: Missing required keys when saving result. Needed: {sorted(REQUIRED_RESULT_KEYS)}, "
              f"Provided: {sorted(result_data.keys())}")
        return False

    record = dict(result_data)
    for key in ('universe', 'sets_found'):
        if isinstance(record.get(key), (list, tuple)):
            record[key] = json.dumps(record[key])

    columns = list(record.keys())
    cols_str = ', '.join(f'"{col}"' for col in columns)
    placeholders = ', '.join('?' * len(columns))
    conn = None
    try:
        conn = _connect(db_file)
        conn.execute(f'INSERT INTO results ({cols_str}) VALUES ({placeholders})', [record[col] for col in columns])
        conn.commit()
        print(f"Database: Saved result {format_result_id(record)}")
        return True
    except sqlite3.IntegrityError:
        print(f"Database Warning: Result {format_result_id(record)} already exists, not saved.")
        return False
    except sqlite3.Error as e:
        print(f"Database save error (saving to results table): {e}")
        return False
    finally:
        if conn:
            conn.close()


def save_sample(sample, db_file=None):
    """Stores a finished backend.Sample run."""
    result = sample.result or {}
    return save_result({
        'm': sample.m, 'n': sample.n, 'k': sample.k, 'j': sample.j, 's': sample.s,
        'min_groups': sample.min_groups,
        'mode': sample.mode,
        'run_index': sample.run_idx,
        'num_results': len(sample.sets),
        'algorithm': result.get('alg'),
        'status': result.get('status'),
        'time_taken': result.get('time'),
        'universe': list(sample.univ),
        'sets_found': sample.sets,
    }, db_file=db_file)


# --- Data Query Functions ---
def get_results_summary(db_file=None):
    conn = None
    try:
        conn = _connect(db_file, row_factory=True)
        rows = conn.execute("""
            SELECT id, m, n, k, j, s, min_groups, mode, run_index, num_results, status, timestamp
            FROM results
            ORDER BY timestamp DESC, id DESC
        """).fetchall()
        return [dict(row) for row in rows]
    except sqlite3.Error as e:
        print(f"Database query error (querying results summary): {e}")
        return []
    finally:
        if conn:
            conn.close()


def get_all_counters(db_file=None):
    conn = None
    try:
        conn = _connect(db_file, row_factory=True)
        rows = conn.execute("SELECT * FROM run_counters ORDER BY m, n, k, j, s").fetchall()
        return [dict(row) for row in rows]
    except sqlite3.Error as e:
        print(f"Database query error (querying run_counters table): {e}")
        return []
    finally:
        if conn:
            conn.close()


def get_result_details(result_id, db_file=None):
    """
    Full row for one result, plus 'universe_parsed' / 'sets_found_parsed' lists
    and the 'result_id' identifier string. None if the row does not exist.
    """
    conn = None
    try:
        conn = _connect(db_file, row_factory=True)
        row = conn.execute("SELECT * FROM results WHERE id = ?", (result_id,)).fetchone()
    except sqlite3.Error as e:
        print(f"Database query error (getting details for ID={result_id}): {e}")
        return None
    finally:
        if conn:
            conn.close()

    if row is None:
        print(f"Database Query: Record with ID={result_id} not found.")
        return None

    details = dict(row)
    details['result_id'] = format_result_id(details)
    try:
        details['sets_found_parsed'] = json.loads(details['sets_found']) if details.get('sets_found') else []
        details['universe_parsed'] = json.loads(details['universe']) if details.get('universe') else []
    except json.JSONDecodeError as json_err:
        print(f"Database Warning: Failed to parse JSON field for ID={result_id}: {json_err}")
        details['sets_found_parsed'] = []
        details['universe_parsed'] = []
    return details


# --- Data Deletion ---
def delete_result(result_id, db_file=None):
    """
    Deletes one result. If it was the newest run of its parameter combination,
    the run counter steps back so the index is reused by the next run.

    Returns:
        bool: True if a row was deleted.
    """
    conn = None
    try:
        conn = _connect(db_file)
        cursor = conn.cursor()
        conn.execute("BEGIN")
        cursor.execute("SELECT m, n, k, j, s, run_index FROM results WHERE id = ?", (result_id,))
        row = cursor.fetchone()
        if not row:
            print(f"Database Operation: Record to delete with ID={result_id} not found.")
            conn.rollback()
            return False

        m, n, k, j, s, deleted_run_index = row
        cursor.execute("SELECT last_run_index FROM run_counters WHERE m=? AND n=? AND k=? AND j=? AND s=?",
                       (m, n, k, j, s))
        counter = cursor.fetchone()

        cursor.execute("DELETE FROM results WHERE id = ?", (result_id,))
        if counter and counter[0] == deleted_run_index:
            cursor.execute("UPDATE run_counters SET last_run_index = ? WHERE m=? AND n=? AND k=? AND j=? AND s=?",
                           (max(0, deleted_run_index - 1), m, n, k, j, s))
            print(f"Database Operation: Deleted the newest run of {m}-{n}-{k}-{j}-{s}, counter now {max(0, deleted_run_index - 1)}.")
        conn.commit()
        print(f"Database Operation: Deleted ID={result_id} (run_index {deleted_run_index}).")
        return True
    except sqlite3.Error as e:
        print(f"Database delete error (deleting ID={result_id}): {e}")
        if conn:
            try:
                conn.rollback()
            except sqlite3.Error as rb_err:
                print(f"Database error: Rollback delete failed: {rb_err}")
        return False
    finally:
        if conn:
            conn.close()


if __name__ == '__main__':
    print("Running db.py directly to set up/check the database...")
    setup_database()
    for counter in get_all_counters():
        print(f"  Params: {counter['m']}-{counter['n']}-{counter['k']}-{counter['j']}-{counter['s']}, "
              f"LastIndex: {counter['last_run_index']}")
