from pathlib import Path

import pytest

from kanari.storage.errors import ConstraintViolation
from kanari.storage.memory import MemoryStore


def test_state_survives_restart(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    store.save_password(user.id, "hash", "argon2id")
    project = store.create_project(user.id, "Kept", params={"temperature": 0.2})
    chat = store.create_chat(user.id, project.id, title="Chat")
    store.append_message(chat.id, "user", "one", user_id=user.id)
    store.append_message(chat.id, "assistant", "two")
    session = store.create_session(user.id, ttl_minutes=5)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_email("persist@example.com").id == user.id
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_project(project.id).params == {"temperature": 0.2}
    assert reloaded.get_chat(chat.id).title == "Chat"
    assert [m.content for m in reloaded.list_messages(chat.id)] == ["one", "two"]
    assert reloaded.get_session(session.id).expires_at == session.expires_at


def test_corrupt_state_is_ignored(tmp_path: Path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "memory_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.users == {}


def test_duplicate_email_rejected(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("a@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("a@example.com")


def test_writes_require_parents(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_project("ghost", "p")
    with pytest.raises(ConstraintViolation):
        store.append_message("missing-chat", "user", "hi")


def test_ownership_filtering(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    owner = store.create_user("owner@example.com")
    other = store.create_user("other@example.com")
    project = store.create_project(owner.id, "p")
    chat = store.create_chat(owner.id, project.id)

    assert store.get_project(project.id, user_id=other.id) is None
    assert store.get_chat(chat.id, user_id=other.id) is None
    assert store.list_chats(other.id, project.id) == []
    assert store.get_chat(chat.id, user_id=owner.id).id == chat.id


def test_message_limit_keeps_most_recent(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("m@example.com")
    chat = store.create_chat(user.id, store.create_project(user.id, "p").id)
    for i in range(6):
        store.append_message(chat.id, "user", str(i), user_id=user.id)

    assert [m.content for m in store.list_messages(chat.id, limit=4)] == ["2", "3", "4", "5"]
    assert store.list_messages(chat.id, limit=0) == []
    assert [m.seq for m in store.list_messages(chat.id)] == list(range(6))


def test_files_newest_first_with_limit(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("f@example.com")
    project = store.create_project(user.id, "p")
    ids = [
        store.create_file(
            project.id, user.id, name=f"{i}.txt", mime="text/plain", size=1, storage_url=f"uploads/{i}"
        ).id
        for i in range(3)
    ]

    assert [f.id for f in store.list_files(project.id)] == list(reversed(ids))
    assert [f.id for f in store.list_files(project.id, limit=2)] == [ids[2], ids[1]]


def test_revoke_session(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("s@example.com")
    session = store.create_session(user.id)

    store.revoke_session(session.id)

    assert store.get_session(session.id).revoked is True
