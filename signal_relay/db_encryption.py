"""SQLite encryption helpers for the trade log database using sqlcipher.

Encryption is opt-in: the store only asks for an encrypted connection when a
password is configured (``persistence.encryption_password`` or
``RELAY_DB_PASSWORD``).
"""
import sqlite3
from typing import Optional


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _sqlcipher():
    try:
        import sqlcipher3
    except ImportError:
        raise RuntimeError(
            "sqlcipher3 is not installed. Install with: pip install sqlcipher3-binary\n"
            "Or leave the encryption password unset for an unencrypted database."
        )
    return sqlcipher3


def has_sqlcipher() -> bool:
    """Check if sqlcipher is available."""
    try:
        _sqlcipher()
    except RuntimeError:
        return False
    return True


def get_encrypted_connection(db_path: str, password: str, timeout: int = 30):
    """Open a sqlcipher connection keyed with ``password``.

    Raises:
        RuntimeError: If sqlcipher3 is not installed or the password is wrong
    """
    conn = _sqlcipher().connect(db_path, timeout=timeout, check_same_thread=False)
    conn.execute(f"PRAGMA key = {_quote(password)}")
    # a wrong key only surfaces on first read
    try:
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except Exception as e:
        conn.close()
        raise RuntimeError(f"Failed to open encrypted database (wrong password?): {e}")
    return conn


def get_connection(db_path: str, password: Optional[str] = None, timeout: int = 30):
    """Get a SQLite connection, encrypted when a password is given."""
    if password:
        return get_encrypted_connection(db_path, password, timeout)
    return sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)


def encrypt_existing_db(unencrypted_path: str, encrypted_path: str, password: str) -> None:
    """Copy a plaintext trade log database into a new encrypted file.

    ``sqlcipher_export`` copies the schema, rows, sqlite_sequence and the
    recorded migrations, so the copy opens without re-running migrations.
    """
    conn = _sqlcipher().connect(unencrypted_path)
    try:
        conn.execute(f"ATTACH DATABASE {_quote(encrypted_path)} AS encrypted KEY {_quote(password)}")
        conn.execute("SELECT sqlcipher_export('encrypted')")
        conn.execute("DETACH DATABASE encrypted")
    finally:
        conn.close()
