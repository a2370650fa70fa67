from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

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

_UNSET: Any = object()

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        system_prompt TEXT,
        model TEXT,
        params JSONB,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        title TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chat(id) ON DELETE CASCADE,
        user_id TEXT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        seq INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_file (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        mime TEXT NOT NULL,
        size INTEGER NOT NULL,
        storage_url TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS message_chat_seq_idx ON message (chat_id, created_at, seq)",
    "CREATE INDEX IF NOT EXISTS project_file_project_idx ON project_file (project_id, created_at)",
)


class PostgresStore:
    """Postgres-backed store with the same surface as ``MemoryStore``."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _project_from_row(row: Dict[str, Any]) -> Project:
        return Project(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            system_prompt=row.get("system_prompt"),
            model=row.get("model"),
            params=row.get("params"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _chat_from_row(row: Dict[str, Any]) -> Chat:
        return Chat(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            title=row.get("title"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _message_from_row(row: Dict[str, Any]) -> Message:
        return Message(
            id=row["id"],
            chat_id=row["chat_id"],
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            user_id=row.get("user_id"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _file_from_row(row: Dict[str, Any]) -> ProjectFile:
        return ProjectFile(
            id=row["id"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            name=row["name"],
            mime=row["mime"],
            size=row["size"],
            storage_url=row["storage_url"],
            created_at=row["created_at"],
        )

    # users
    def create_user(self, email: str) -> User:
        user = User(id=str(uuid.uuid4()), email=email)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, email, is_active, created_at) VALUES (%s, %s, %s, %s)",
                    (user.id, user.email, user.is_active, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash, password_algo = EXCLUDED.password_algo
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_session (id, user_id, created_at, expires_at, revoked) VALUES (%s, %s, %s, %s, %s)",
                    (sess.id, sess.user_id, sess.created_at, sess.expires_at, False),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked=row["revoked"],
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE auth_session SET revoked = TRUE WHERE id = %s", (session_id,))

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO project (id, user_id, name, system_prompt, model, params, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        project.id,
                        user_id,
                        name,
                        system_prompt,
                        model,
                        Jsonb(params) if params is not None else None,
                        now,
                        now,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project owner missing", {"user_id": user_id})
        return project

    def get_project(
        self, project_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Project]:
        query = "SELECT * FROM project WHERE id = %s"
        params: tuple[Any, ...] = (project_id,)
        if user_id:
            query += " AND user_id = %s"
            params = (project_id, user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._project_from_row(row) if row else None

    def list_projects(self, user_id: str) -> List[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM project WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._project_from_row(row) for row in rows]

    def update_project(
        self,
        project_id: str,
        *,
        name: Any = _UNSET,
        system_prompt: Any = _UNSET,
        model: Any = _UNSET,
        params: Any = _UNSET,
    ) -> Optional[Project]:
        assignments: list[str] = []
        values: list[Any] = []
        for column, value in (
            ("name", name),
            ("system_prompt", system_prompt),
            ("model", model),
            ("params", params),
        ):
            if value is _UNSET:
                continue
            if column == "params" and value is not None:
                value = Jsonb(value)
            assignments.append(f"{column} = %s")
            values.append(value)
        assignments.append("updated_at = %s")
        values.append(datetime.utcnow())
        values.append(project_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE project SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(values),
            ).fetchone()
        return self._project_from_row(row) if row else None

    def delete_project(self, project_id: str) -> List[ProjectFile]:
        with self._connect() as conn:
            file_rows = conn.execute(
                "SELECT * FROM project_file WHERE project_id = %s", (project_id,)
            ).fetchall()
            deleted = conn.execute(
                "DELETE FROM project WHERE id = %s RETURNING id", (project_id,)
            ).fetchone()
        if not deleted:
            return []
        return [self._file_from_row(row) for row in file_rows]

    # chats
    def create_chat(
        self, user_id: str, project_id: str, title: Optional[str] = None
    ) -> Chat:
        now = datetime.utcnow()
        chat = Chat(
            id=str(uuid.uuid4()),
            user_id=user_id,
            project_id=project_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO chat (id, user_id, project_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s, %s)",
                    (chat.id, user_id, project_id, title, now, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project missing", {"project_id": project_id})
        return chat

    def get_chat(self, chat_id: str, *, user_id: Optional[str] = None) -> Optional[Chat]:
        query = "SELECT * FROM chat WHERE id = %s"
        params: tuple[Any, ...] = (chat_id,)
        if user_id:
            query += " AND user_id = %s"
            params = (chat_id, user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._chat_from_row(row) if row else None

    def list_chats(self, user_id: str, project_id: str) -> List[Chat]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat WHERE user_id = %s AND project_id = %s ORDER BY created_at DESC",
                (user_id, project_id),
            ).fetchall()
        return [self._chat_from_row(row) for row in rows]

    def update_chat(self, chat_id: str, *, title: Optional[str]) -> Optional[Chat]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE chat SET title = %s, updated_at = %s WHERE id = %s RETURNING *",
                (title, datetime.utcnow(), chat_id),
            ).fetchone()
        return self._chat_from_row(row) if row else None

    def delete_chat(self, chat_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM chat WHERE id = %s RETURNING id", (chat_id,)
            ).fetchone()
        return row is not None

    # messages
    def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        *,
        user_id: Optional[str] = None,
    ) -> Message:
        now = datetime.utcnow()
        msg_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO message (id, chat_id, user_id, role, content, seq, created_at)
                    VALUES (
                        %s, %s, %s, %s, %s,
                        (SELECT COALESCE(MAX(seq) + 1, 0) FROM message WHERE chat_id = %s),
                        %s
                    )
                    RETURNING *
                    """,
                    (msg_id, chat_id, user_id, role, content, chat_id, now),
                ).fetchone()
                conn.execute(
                    "UPDATE chat SET updated_at = %s WHERE id = %s", (now, chat_id)
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat not found", {"chat_id": chat_id})
        return self._message_from_row(row)

    def list_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        with self._connect() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM message WHERE chat_id = %s ORDER BY created_at ASC, seq ASC",
                    (chat_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM message WHERE chat_id = %s ORDER BY created_at DESC, seq DESC LIMIT %s",
                    (chat_id, max(0, limit)),
                ).fetchall()
                rows = list(reversed(rows))
        return [self._message_from_row(row) for row in rows]

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
        record = ProjectFile(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            name=name,
            mime=mime,
            size=size,
            storage_url=storage_url,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO project_file (id, project_id, user_id, name, mime, size, storage_url, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        project_id,
                        user_id,
                        name,
                        mime,
                        size,
                        storage_url,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project missing", {"project_id": project_id})
        return record

    def get_file(self, file_id: str) -> Optional[ProjectFile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM project_file WHERE id = %s", (file_id,)
            ).fetchone()
        return self._file_from_row(row) if row else None

    def list_files(self, project_id: str, limit: Optional[int] = None) -> List[ProjectFile]:
        query = "SELECT * FROM project_file WHERE project_id = %s ORDER BY created_at DESC"
        params: tuple[Any, ...] = (project_id,)
        if limit is not None:
            query += " LIMIT %s"
            params = (project_id, limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._file_from_row(row) for row in rows]

    def delete_file(self, file_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM project_file WHERE id = %s RETURNING id", (file_id,)
            ).fetchone()
        return row is not None
