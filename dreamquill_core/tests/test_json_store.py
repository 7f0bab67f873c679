import json
import os
import tempfile
from pathlib import Path

import pytest

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.exceptions import StoreContention, StoreFailure, ValidationError
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.infrastructure.storage.json_store import JsonConversationStore


def _new_profile(name="local"):
    return VendorProfile(
        id=None,
        display_name=name,
        kind=VendorKind.CLAUDE,
        base_address="https://api.anthropic.com",
        credential="",
        model="claude-test",
        secret_alias="provider:1",
    )


def test_profiles_crud_and_default():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        p1 = store.save_profile(_new_profile("one"))
        p2 = store.save_profile(_new_profile("two"))
        assert (p1.id, p2.id) == (1, 2)
        assert store.get_profile(2).display_name == "two"
        assert store.get_profile(2).kind is VendorKind.CLAUDE
        assert store.get_profile(2).secret_alias == "provider:1"

        store.save_profile(p2.with_credential("new"))
        assert store.get_profile(2).credential == "new"

        assert store.get_default_profile() is None
        store.set_default_profile_id(1)
        assert store.get_default_profile().display_name == "one"
        with pytest.raises(ValidationError):
            store.set_default_profile_id(99)

        store.delete_profile(1)
        assert store.get_default_profile_id() is None
        assert [p.id for p in store.list_profiles()] == [2]


def test_turns_append_load_and_regenerate():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("chat", None)
        store.append_turn(conv.id, "user", "q1")
        a1 = store.append_turn(conv.id, "assistant", "a1")
        store.append_turn(conv.id, "user", "q2")
        assert store.load_history(conv.id) == [
            ChatTurn(role="user", content="q1"),
            ChatTurn(role="assistant", content="a1"),
            ChatTurn(role="user", content="q2"),
        ]

        store.delete_turns_from(conv.id, a1)
        assert [t.content for t in store.list_turns(conv.id)] == ["q1"]


def test_conversations_rename_bind_delete():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        p = store.save_profile(_new_profile())
        conv = store.create_conversation("temp", None)
        store.rename_conversation(conv.id, "renamed")
        store.set_conversation_profile(conv.id, p.id)
        loaded = store.get_conversation(conv.id)
        assert loaded.title == "renamed"
        assert loaded.profile_id == p.id
        assert [c.id for c in store.list_conversations(profile_id=p.id)] == [conv.id]

        # 删除 Profile 会解除会话绑定
        store.delete_profile(p.id)
        assert store.get_conversation(conv.id).profile_id is None

        store.delete_conversation(conv.id)
        assert not (root / "conversations" / conv.id).exists()
        assert store.get_conversation(conv.id) is None


def test_append_to_unknown_conversation_fails():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        with pytest.raises(StoreFailure):
            store.append_turn("c-missing", "assistant", "x")


def test_contention_is_retried(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        real_write = JsonConversationStore._atomic_write
        failures = {"left": 2}

        def flaky(path, text):
            if failures["left"] > 0:
                failures["left"] -= 1
                raise StoreContention("file in use")
            real_write(path, text)

        monkeypatch.setattr(JsonConversationStore, "_atomic_write", staticmethod(flaky))
        monkeypatch.setattr(settings, "store_retry_base_delay", 0.0)
        saved = store.save_profile(_new_profile())
        assert saved.id == 1
        assert store.get_profile(1) is not None


def test_meta_contention_does_not_duplicate_turn(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("chat", None)
        real_replace = os.replace
        failures = {"left": 1}

        def flaky_replace(src, dst):
            if Path(dst).name == "meta.json" and failures["left"] > 0:
                failures["left"] -= 1
                raise PermissionError("meta.json held by another process")
            real_replace(src, dst)

        monkeypatch.setattr(settings, "store_retry_base_delay", 0.0)
        monkeypatch.setattr(os, "replace", flaky_replace)
        turn_id = store.append_turn(conv.id, "assistant", "hello")

        turns = store.list_turns(conv.id)
        assert failures["left"] == 0
        assert [(t.id, t.content) for t in turns] == [(turn_id, "hello")]


def test_regenerate_keeps_created_at_of_remaining_turns():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("chat", None)
        store.append_turn(conv.id, "user", "q")
        a = store.append_turn(conv.id, "assistant", "a")
        turns_path = root / "conversations" / conv.id / "turns.jsonl"
        before = json.loads(turns_path.read_text(encoding="utf-8").splitlines()[0])

        store.delete_turns_from(conv.id, a)

        lines = turns_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0]) == before
        assert before["created_at"]


def test_clone_conversation_until():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        p = store.save_profile(_new_profile())
        conv = store.create_conversation("source", p.id)
        store.append_turn(conv.id, "user", "hello")
        cut = store.append_turn(conv.id, "assistant", "hi")
        store.append_turn(conv.id, "user", "follow up")

        full = store.clone_conversation_until(conv.id, "full copy")
        assert full.profile_id == p.id
        assert [t.content for t in store.list_turns(full.id)] == ["hello", "hi", "follow up"]

        branch = store.clone_conversation_until(conv.id, "branch", until_turn_id=cut)
        assert store.get_conversation(branch.id).title == "branch"
        branch_turns = store.list_turns(branch.id)
        assert [t.content for t in branch_turns] == ["hello", "hi"]
        # 分支轮次使用新的 id，源会话不受影响
        assert cut not in {t.id for t in branch_turns}
        assert len(store.list_turns(conv.id)) == 3

        with pytest.raises(ValidationError):
            store.clone_conversation_until(conv.id, "x", until_turn_id="t-missing")
        with pytest.raises(ValidationError):
            store.clone_conversation_until("c-missing", "x")
