from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, EmailStr

class UserCreds(BaseModel):
    email: EmailStr
    password: str

class PasswordChange(BaseModel):
    password: str
    new_password: str

class ImageData(BaseModel):
    url: str

class NoteData(BaseModel):
    content: str = ""
    parent: Optional[str] = None   # encoded folder id

class NoteUpdate(BaseModel):
    content: str

class FolderData(BaseModel):
    name: str
    parent: Optional[str] = None   # falls back to the Referer query string

class MoveData(BaseModel):
    folder_id: Optional[str] = None   # None moves to the top level

class HistoryUpload(BaseModel):
    # JSON-encoded array, kept as a string like the browser client sends it
    history: Optional[str] = None

class PinnedData(BaseModel):
    pinned: Optional[Union[bool, str]] = None

class UserResponse(BaseModel):
    success: bool
    user_id: str

class LoginResponse(BaseModel):
    success: bool
    token: str

class MessageResponse(BaseModel):
    success: bool
    message: str

class NoteResponse(BaseModel):
    success: bool
    note: Dict[str, Any]

class NotesListResponse(BaseModel):
    success: bool
    notes: List[Dict[str, Any]]
    count: int

class HistoryResponse(BaseModel):
    history: List[Dict[str, Any]]
