"""
SQLite persistence for users, sessions and notes.

AuthService owns the users database (accounts, sessions and each user's
serialized history blob). Storage owns the notes database (documents and
folders). Both open a fresh connection per operation and serialize writes
with a threading lock, so they are safe to call from worker threads.
"""

import contextlib
import json
import logging
import sqlite3
import threading
from typing import List, Optional

from .domain import AuthError, BadRequestError, DOCUMENT, FOLDER, Note, NotFoundError, StorageError, User
from .note_info import parse_note_info
from .utils import hash_password, make_id, make_note_id, now_ms, time_now, verify_password

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _connect(db_path: str):
    """Open a connection with WAL journaling; always closed on exit."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        yield conn
    finally:
        conn.close()


class AuthService:
    """Handles user registration, login, session validation and the history blob."""

    def __init__(self, db_path: str = "users.db"):
        self.db_path = db_path
        self.lock = threading.Lock()
        self._init_database()

    def _init_database(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                image TEXT,
                history TEXT,
                created_time TEXT NOT NULL
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_time TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
            """)
            conn.commit()

    def add_user(self, email: str, password: str) -> str:
        """Register a new account and return its id."""
        if len(password) < 6:
            raise AuthError("Password must be at least 6 characters long")
        uid = make_id("usr")
        with self.lock, _connect(self.db_path) as conn:
            try:
                conn.execute(
                    "INSERT INTO users (id, email, password_hash, created_time) VALUES (?, ?, ?, ?)",
                    (uid, email, hash_password(password), time_now()),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise AuthError("This email has been used, please try another one")
        logger.debug("user registered: %s", uid)
        return uid

    def login(self, email: str, password: str) -> str:
        """Check credentials and open a new session, returning its token."""
        user = self.find_user_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            raise AuthError("Invalid email or password")
        token = make_id("sess")
        with self.lock, _connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id, created_time) VALUES (?, ?, ?)",
                (token, user.id, time_now()),
            )
            conn.commit()
        return token

    def validate(self, token: Optional[str]) -> str:
        """Return the user id for a session token, with or without a "Bearer " prefix."""
        if not token:
            raise AuthError("Authorization token is required")
        if token.startswith("Bearer "):
            token = token[7:]
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT user_id FROM sessions WHERE token=?", (token,)).fetchone()
        if row is None:
            raise AuthError("Invalid or expired session token")
        return row["user_id"]

    def logout(self, token: str) -> bool:
        if token.startswith("Bearer "):
            token = token[7:]
        with self.lock, _connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE token=?", (token,))
            conn.commit()
            return cursor.rowcount > 0

    def change_password(self, user_id: str, current: str, new: str):
        user = self.find_user(user_id)
        if user is None:
            raise AuthError("Unknown user")
        if not verify_password(current, user.password_hash):
            raise AuthError("Wrong password")
        if not new or len(new) < 6:
            raise BadRequestError("Password must be at least 6 characters long")
        self._update_user(user_id, "password_hash", hash_password(new))

    def set_image(self, user_id: str, url: str):
        self._update_user(user_id, "image", url)

    def _update_user(self, user_id: str, column: str, value) -> int:
        # column names come from this module only
        with self.lock, _connect(self.db_path) as conn:
            try:
                cursor = conn.execute(f"UPDATE users SET {column}=? WHERE id=?", (value, user_id))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error("update user %s failed: %s", column, e)
                raise StorageError(f"Failed to update user: {e}")
            return cursor.rowcount

    def _user_from_row(self, row) -> Optional[User]:
        if row is None:
            return None
        return User(row["id"], row["email"], row["password_hash"],
                    history=row["history"], image=row["image"], created_time=row["created_time"])

    def find_user(self, user_id: str) -> Optional[User]:
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        except sqlite3.Error as e:
            logger.error("read user failed: %s", e)
            raise StorageError(f"Failed to read user: {e}")
        return self._user_from_row(row)

    def find_user_by_email(self, email: str) -> Optional[User]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
        return self._user_from_row(row)

    def set_history(self, user_id: str, blob: str) -> int:
        """Overwrite the user's serialized history; returns rows touched."""
        return self._update_user(user_id, "history", blob)

    def user_count(self) -> int:
        with _connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]


class Storage:
    """Stores and retrieves notes and folders."""

    COLUMNS = "id, owner_id, parent_id, type, title, content, tags, created_at, updated_at"

    def __init__(self, db_path: str = "notes.db"):
        self.db_path = db_path
        self.lock = threading.Lock()
        self._create_table()

    def _create_table(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                parent_id TEXT,
                type TEXT NOT NULL DEFAULT 'DOCUMENT',
                title TEXT NOT NULL,
                content TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_owner_parent ON notes(owner_id, parent_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at DESC)")
            conn.commit()

    @staticmethod
    def _note_from_row(row) -> Note:
        return Note(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            content=row["content"] or "",
            tags=json.loads(row["tags"] or "[]"),
            type=row["type"],
            parent_id=row["parent_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _write(self, sql: str, params: tuple, action: str) -> int:
        with self.lock, _connect(self.db_path) as conn:
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error("%s failed: %s", action, e)
                raise StorageError(f"Failed to {action}: {e}")
            return cursor.rowcount

    def _query(self, sql: str, params: tuple) -> List[Note]:
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.error("read notes failed: %s", e)
            raise StorageError(f"Failed to read notes: {e}")
        return [self._note_from_row(row) for row in rows]

    def add_note(self, owner_id: str, title: str, content: str = "", tags: Optional[List[str]] = None,
                 note_type: str = DOCUMENT, parent_id: Optional[str] = None) -> Note:
        now = now_ms()
        note = Note(make_note_id(), owner_id, title, content, tags, note_type, parent_id, now, now)
        self._write(
            f"INSERT INTO notes ({self.COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (note.id, note.owner_id, note.parent_id, note.type, note.title, note.content,
             json.dumps(note.tags), note.created_at, note.updated_at),
            "save note",
        )
        logger.debug("note saved: %s", note.id)
        return note

    def get_note(self, owner_id: str, note_id: str) -> Optional[Note]:
        notes = self._query(f"SELECT {self.COLUMNS} FROM notes WHERE owner_id=? AND id=?", (owner_id, note_id))
        return notes[0] if notes else None

    def update_note(self, note: Note) -> bool:
        note.updated_at = now_ms()
        count = self._write(
            "UPDATE notes SET title=?, content=?, tags=?, updated_at=? WHERE owner_id=? AND id=?",
            (note.title, note.content, json.dumps(note.tags), note.updated_at, note.owner_id, note.id),
            "update note",
        )
        return count > 0

    def delete_note(self, owner_id: str, note_id: str, note_type: Optional[str] = None) -> bool:
        if note_type is None:
            count = self._write("DELETE FROM notes WHERE owner_id=? AND id=?", (owner_id, note_id), "delete note")
        else:
            count = self._write("DELETE FROM notes WHERE owner_id=? AND id=? AND type=?",
                                (owner_id, note_id, note_type), "delete note")
        return count > 0

    def move_note(self, owner_id: str, note_id: str, parent_id: Optional[str]) -> bool:
        count = self._write("UPDATE notes SET parent_id=? WHERE owner_id=? AND id=?",
                            (parent_id, owner_id, note_id), "move note")
        return count > 0

    def find_notes(self, owner_id: str, parent_id: Optional[str] = None) -> List[Note]:
        """Documents owned by a user, optionally inside one folder, newest first."""
        if parent_id is None:
            return self._query(
                f"SELECT {self.COLUMNS} FROM notes WHERE owner_id=? AND type!=? ORDER BY updated_at DESC",
                (owner_id, FOLDER),
            )
        return self._query(
            f"SELECT {self.COLUMNS} FROM notes WHERE owner_id=? AND parent_id=? AND type!=? "
            "ORDER BY updated_at DESC",
            (owner_id, parent_id, FOLDER),
        )

    def list_folder(self, owner_id: str, parent_id: Optional[str]) -> List[Note]:
        """Folders and documents directly inside parent_id (None is the top level)."""
        return self._query(
            f"SELECT {self.COLUMNS} FROM notes WHERE owner_id=? AND parent_id IS ? ORDER BY updated_at DESC",
            (owner_id, parent_id),
        )

    def count_notes(self, owner_id: str, note_id: str, note_type: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM notes WHERE owner_id=? AND id=?"
        params = (owner_id, note_id)
        if note_type is not None:
            sql += " AND type=?"
            params += (note_type,)
        try:
            with _connect(self.db_path) as conn:
                return conn.execute(sql, params).fetchone()[0]
        except sqlite3.Error as e:
            logger.error("count notes failed: %s", e)
            raise StorageError(f"Failed to count notes: {e}")

    def count_children(self, folder_id: str) -> int:
        with _connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM notes WHERE parent_id=?", (folder_id,)).fetchone()[0]


class Notebook:
    """Note and folder operations for one authenticated user at a time."""

    def __init__(self, store: Storage):
        self.store = store

    def _require(self, user_id: str, note_id: str) -> Note:
        note = self.store.get_note(user_id, note_id)
        if note is None:
            raise NotFoundError("Note not found")
        return note

    def _require_folder(self, user_id: str, folder_id: Optional[str]) -> Optional[str]:
        """Return folder_id if it names a folder the user owns; None passes through."""
        if folder_id is None:
            return None
        if self.store.count_notes(user_id, folder_id, FOLDER) == 0:
            raise NotFoundError("Folder not found")
        return folder_id

    def create_note(self, user_id: str, content: str = "", parent_id: Optional[str] = None) -> Note:
        parent_id = self._require_folder(user_id, parent_id)
        info = parse_note_info(content)
        return self.store.add_note(user_id, info.title, content, info.tags, DOCUMENT, parent_id)

    def open_note(self, user_id: str, note_id: str) -> Note:
        note = self._require(user_id, note_id)
        if note.is_folder:
            raise NotFoundError("Note not found")
        return note

    def edit_note(self, user_id: str, note_id: str, content: str) -> Note:
        note = self.open_note(user_id, note_id)
        info = parse_note_info(content)
        note.title, note.content, note.tags = info.title, content, info.tags
        if not self.store.update_note(note):
            raise NotFoundError("Note not found")
        return note

    def remove_note(self, user_id: str, note_id: str):
        self.open_note(user_id, note_id)
        self.store.delete_note(user_id, note_id, DOCUMENT)

    def list_folder(self, user_id: str, parent_id: Optional[str] = None) -> List[Note]:
        return self.store.list_folder(user_id, self._require_folder(user_id, parent_id))

    def new_folder(self, user_id: str, name: str, parent_id: Optional[str] = None) -> Note:
        if not name or not name.strip():
            raise BadRequestError("Folder name cannot be empty")
        parent_id = self._require_folder(user_id, parent_id)
        return self.store.add_note(user_id, name.strip(), name.strip(), [], FOLDER, parent_id)

    def remove_folder(self, user_id: str, folder_id: str):
        """Delete an empty folder."""
        self._require_folder(user_id, folder_id)
        if self.store.count_children(folder_id) > 0:
            raise BadRequestError("Remove folder failed: the folder is not empty")
        self.store.delete_note(user_id, folder_id, FOLDER)

    def move_note(self, user_id: str, note_id: str, folder_id: Optional[str]) -> Note:
        """Attach a note (or folder) under folder_id, or at the top level when None."""
        note = self._require(user_id, note_id)
        folder_id = self._require_folder(user_id, folder_id)
        cursor = folder_id
        while cursor is not None:
            if cursor == note.id:
                raise BadRequestError("A folder cannot contain itself")
            ancestor = self.store.get_note(user_id, cursor)
            cursor = ancestor.parent_id if ancestor else None
        self.store.move_note(user_id, note_id, folder_id)
        note.parent_id = folder_id
        return note
