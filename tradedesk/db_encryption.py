"""SQLite connections, optionally encrypted at rest with sqlcipher."""
import sqlite3
from typing import Optional


def get_encrypted_connection(
    db_path: str,
    password: str,
    timeout: int = 30,
):
    """Get an encrypted SQLite connection using sqlcipher.

    Args:
        db_path: Path to database file
        password: Encryption password
        timeout: Connection timeout in seconds

    Returns:
        sqlcipher3 connection with encryption enabled

    Raises:
        RuntimeError: If sqlcipher is not installed or the password is wrong
    """
    try:
        import sqlcipher3  # type: ignore
    except ImportError:
        raise RuntimeError(
            "sqlcipher3 is not installed. Install with: pip install sqlcipher3-binary\n"
            "Or leave persistence.encryption_password unset for an unencrypted database."
        )

    conn = sqlcipher3.connect(db_path, timeout=timeout, check_same_thread=False)
    escaped = password.replace("'", "''")
    conn.execute(f"PRAGMA key = '{escaped}'")
    conn.execute("PRAGMA cipher_page_size = 4096")
    try:
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except Exception as e:
        conn.close()
        raise RuntimeError(f"Failed to open encrypted database (wrong password?): {e}")

    return conn


def get_connection(
    db_path: str,
    password: Optional[str] = None,
    timeout: int = 30,
):
    """Get a SQLite connection, encrypted when a password is given."""
    if password:
        conn = get_encrypted_connection(db_path, password, timeout)
    else:
        conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
