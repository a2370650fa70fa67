from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from kanari.logging import get_logger
from kanari.storage.errors import ConstraintViolation
from kanari.storage.models import (
    Chat,
    Message,
    Project,
    ProjectFile,
    Session,
    User,
)

T = TypeVar("T")

_UNSET: Any = object()


def _newest_first(items: List[T]) -> List[T]:
    # reversed() first so that equal timestamps still list the later insert first
    return sorted(reversed(items), key=lambda item: item.created_at, reverse=True)


class MemoryStore:
    """In-process store used for development and tests.

    State is snapshotted to ``<fs_root>/state/memory_store.json`` after every
    write so a restarted dev server keeps its users and chats.
    """

    def __init__(self, fs_root: str = "/tmp/kanari") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.projects: Dict[str, Project] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.files: Dict[str, ProjectFile] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    # users
    def create_user(self, email: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and not sess.revoked:
                sess.revoked = True
                self._persist_state()

    # projects
    def create_project(
        self,
        user_id: str,
        name: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        params: Optional[Dict] = None,
    ) -> Project:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("project owner missing", {"user_id": user_id})
            now = datetime.utcnow()
            project = Project(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                system_prompt=system_prompt,
                model=model,
                params=params,
                created_at=now,
                updated_at=now,
            )
            self.projects[project.id] = project
            self._persist_state()
            return project

    def get_project(
        self, project_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if not project:
                return None
            if user_id and project.user_id != user_id:
                return None
            return project

    def list_projects(self, user_id: str) -> List[Project]:
        with self._data_lock:
            return _newest_first([p for p in self.projects.values() if p.user_id == user_id])

    def update_project(
        self,
        project_id: str,
        *,
        name: Any = _UNSET,
        system_prompt: Any = _UNSET,
        model: Any = _UNSET,
        params: Any = _UNSET,
    ) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if not project:
                return None
            if name is not _UNSET:
                project.name = name
            if system_prompt is not _UNSET:
                project.system_prompt = system_prompt
            if model is not _UNSET:
                project.model = model
            if params is not _UNSET:
                project.params = params
            project.updated_at = datetime.utcnow()
            self._persist_state()
            return project

    def delete_project(self, project_id: str) -> List[ProjectFile]:
        """Remove a project with its chats, messages and file records.

        Returns the removed file records so callers can clean up blobs.
        """
        with self._data_lock:
            if self.projects.pop(project_id, None) is None:
                return []
            for chat_id in [c.id for c in self.chats.values() if c.project_id == project_id]:
                self.chats.pop(chat_id, None)
                self.messages.pop(chat_id, None)
            removed = [f for f in self.files.values() if f.project_id == project_id]
            for record in removed:
                self.files.pop(record.id, None)
            self._persist_state()
            return removed

    # chats
    def create_chat(
        self, user_id: str, project_id: str, title: Optional[str] = None
    ) -> Chat:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation("project missing", {"project_id": project_id})
            now = datetime.utcnow()
            chat = Chat(
                id=str(uuid.uuid4()),
                user_id=user_id,
                project_id=project_id,
                title=title,
                created_at=now,
                updated_at=now,
            )
            self.chats[chat.id] = chat
            self.messages[chat.id] = []
            self._persist_state()
            return chat

    def get_chat(self, chat_id: str, *, user_id: Optional[str] = None) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                return None
            if user_id and chat.user_id != user_id:
                return None
            return chat

    def list_chats(self, user_id: str, project_id: str) -> List[Chat]:
        with self._data_lock:
            return _newest_first(
                [
                    c
                    for c in self.chats.values()
                    if c.user_id == user_id and c.project_id == project_id
                ]
            )

    def update_chat(self, chat_id: str, *, title: Optional[str]) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                return None
            chat.title = title
            chat.updated_at = datetime.utcnow()
            self._persist_state()
            return chat

    def delete_chat(self, chat_id: str) -> bool:
        with self._data_lock:
            if self.chats.pop(chat_id, None) is None:
                return False
            self.messages.pop(chat_id, None)
            self._persist_state()
            return True

    # messages
    def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        *,
        user_id: Optional[str] = None,
    ) -> Message:
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("chat not found", {"chat_id": chat_id})
            history = self.messages.setdefault(chat_id, [])
            msg = Message(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                role=role,
                content=content,
                seq=len(history),
                user_id=user_id,
                created_at=datetime.utcnow(),
            )
            history.append(msg)
            self.chats[chat_id].updated_at = msg.created_at
            self._persist_state()
            return msg

    def list_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages in conversation order; ``limit`` keeps the most recent ones."""
        with self._data_lock:
            msgs = list(self.messages.get(chat_id, []))
        if limit is None:
            return msgs
        return msgs[-limit:] if limit > 0 else []

    # files
    def create_file(
        self,
        project_id: str,
        user_id: str,
        *,
        name: str,
        mime: str,
        size: int,
        storage_url: str,
    ) -> ProjectFile:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation("project missing", {"project_id": project_id})
            record = ProjectFile(
                id=str(uuid.uuid4()),
                project_id=project_id,
                user_id=user_id,
                name=name,
                mime=mime,
                size=size,
                storage_url=storage_url,
            )
            self.files[record.id] = record
            self._persist_state()
            return record

    def get_file(self, file_id: str) -> Optional[ProjectFile]:
        with self._data_lock:
            return self.files.get(file_id)

    def list_files(self, project_id: str, limit: Optional[int] = None) -> List[ProjectFile]:
        with self._data_lock:
            items = _newest_first([f for f in self.files.values() if f.project_id == project_id])
        return items if limit is None else items[:limit]

    def delete_file(self, file_id: str) -> bool:
        with self._data_lock:
            if self.files.pop(file_id, None) is None:
                return False
            self._persist_state()
            return True

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> Dict[str, Any]:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: Type[T], data: Dict[str, Any]) -> T:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in ("created_at", "updated_at", "expires_at"):
            if isinstance(kwargs.get(key), str):
                kwargs[key] = datetime.fromisoformat(kwargs[key])
        return cls(**kwargs)

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize(u) for u in self.users.values()],
                "sessions": [self._serialize(s) for s in self.sessions.values()],
                "credentials": [
                    {"user_id": uid, "password_hash": h, "password_algo": algo}
                    for uid, (h, algo) in self.credentials.items()
                ],
                "projects": [self._serialize(p) for p in self.projects.values()],
                "chats": [self._serialize(c) for c in self.chats.values()],
                "messages": [
                    self._serialize(m) for msgs in self.messages.values() for m in msgs
                ],
                "files": [self._serialize(f) for f in self.files.values()],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state))
            tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.projects = {
            p["id"]: self._deserialize(Project, p) for p in data.get("projects", [])
        }
        self.chats = {c["id"]: self._deserialize(Chat, c) for c in data.get("chats", [])}
        self.messages = {chat_id: [] for chat_id in self.chats}
        for raw in data.get("messages", []):
            msg = self._deserialize(Message, raw)
            self.messages.setdefault(msg.chat_id, []).append(msg)
        for history in self.messages.values():
            history.sort(key=lambda m: m.seq)
        self.files = {
            f["id"]: self._deserialize(ProjectFile, f) for f in data.get("files", [])
        }
        return True
