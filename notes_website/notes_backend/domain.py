from typing import Any, Dict, List, Optional

FOLDER = "FOLDER"
DOCUMENT = "DOCUMENT"


class Note:
    """Represents a single note or folder row."""

    def __init__(self, id: str, owner_id: str, title: str, content: str = "",
                 tags: Optional[List[str]] = None, type: str = DOCUMENT,
                 parent_id: Optional[str] = None, created_at: int = 0, updated_at: int = 0):
        self.id = id
        self.owner_id = owner_id
        self.title = title
        self.content = content
        self.tags = list(tags or [])
        self.type = type
        self.parent_id = parent_id
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_folder(self) -> bool:
        return self.type == FOLDER

    def to_dict(self, encode_id) -> Dict[str, Any]:
        """Convert note to its public representation, ids run through encode_id."""
        return {
            "id": encode_id(self.id),
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "type": self.type,
            "parent_id": encode_id(self.parent_id) if self.parent_id else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class User:
    """A registered account; history is the raw serialized blob or None."""

    def __init__(self, id: str, email: str, password_hash: str,
                 history: Optional[str] = None, image: Optional[str] = None,
                 created_time: str = ""):
        self.id = id
        self.email = email
        self.password_hash = password_hash
        self.history = history
        self.image = image
        self.created_time = created_time


def _coerce_time(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _coerce_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    return [str(tag) for tag in value]


def _coerce_pinned(value: Any) -> Optional[bool]:
    # browser clients may send the form tokens instead of JSON booleans
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    return None


class HistoryEntry:
    """One record of a user's interaction with a note."""

    def __init__(self, id: str, text: str = "", time: int = 0,
                 tags: Optional[List[str]] = None, pinned: Optional[bool] = None):
        self.id = id
        self.text = text
        self.time = time
        self.tags = list(tags or [])
        self.pinned = pinned

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=str(data["id"]),
            text=data.get("text") or "",
            time=_coerce_time(data.get("time")),
            tags=_coerce_tags(data.get("tags")),
            pinned=_coerce_pinned(data.get("pinned")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "text": self.text, "time": self.time, "tags": list(self.tags)}
        if self.pinned is not None:
            data["pinned"] = self.pinned
        return data


class AuthError(Exception):
    """Raised when a request cannot be authenticated."""
    pass


class NotesError(Exception):
    """Base class for errors that map onto an HTTP status."""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)


class BadRequestError(NotesError):
    status_code = 400
    default_message = "Bad request"


class ForbiddenError(NotesError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(NotesError):
    status_code = 404
    default_message = "Not found"


class StorageError(NotesError):
    """A database operation failed."""
    status_code = 500
    default_message = "Storage failure"
