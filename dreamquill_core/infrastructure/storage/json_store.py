import json
import os
import shutil
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.conversation import Conversation, TurnRecord
from dreamquill_core.domain.exceptions import StoreContention, StoreFailure, ValidationError
from dreamquill_core.domain.models import ChatTurn, Role, VendorKind, VendorProfile
from dreamquill_core.infrastructure.storage.retry import retry_on_contention

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JsonConversationStore:
    """基于 JSON 文件的会话存储。

    目录结构::

        <root>/profiles.json
        <root>/conversations/<id>/meta.json
        <root>/conversations/<id>/turns.jsonl
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._profiles_path = self._root / "profiles.json"
        self._lock = threading.Lock()

    # ---- 核心契约 ----

    def get_profile(self, profile_id: int) -> Optional[VendorProfile]:
        for item in self._read_profiles()["profiles"]:
            if item["id"] == profile_id:
                return self._to_profile(item)
        return None

    def append_turn(self, conversation_id: str, role: Role, text: str) -> str:
        cdir = self._conv_dir(conversation_id)
        turn_id = f"t-{uuid4().hex}"
        line = json.dumps(
            {"id": turn_id, "role": role, "content": text, "created_at": _now()},
            ensure_ascii=False,
        )

        def append() -> None:
            with self._lock:
                try:
                    with (cdir / "turns.jsonl").open("a", encoding="utf-8") as f:
                        f.write(line + "\n")
                except PermissionError as e:
                    raise StoreContention(str(e))
                except OSError as e:
                    raise StoreFailure(str(e))

        # 追加与更新 meta 分开重试，meta 繁忙时不会重复追加同一轮次
        self._write(append)
        self._write(lambda: self._touch_locked(cdir))
        return turn_id

    def load_history(self, conversation_id: str) -> List[ChatTurn]:
        return [ChatTurn(role=t.role, content=t.content) for t in self.list_turns(conversation_id)]

    # ---- Profile ----

    def list_profiles(self) -> List[VendorProfile]:
        return [self._to_profile(item) for item in self._read_profiles()["profiles"]]

    def save_profile(self, profile: VendorProfile) -> VendorProfile:
        def write() -> VendorProfile:
            with self._lock:
                data = self._read_profiles()
                saved = profile
                if profile.id is None:
                    saved = replace(profile, id=data["next_id"])
                    data["next_id"] += 1
                    data["profiles"].append(self._from_profile(saved))
                else:
                    for idx, item in enumerate(data["profiles"]):
                        if item["id"] == profile.id:
                            data["profiles"][idx] = self._from_profile(profile)
                            break
                    else:
                        raise StoreFailure(f"provider id {profile.id} not found")
                self._write_profiles(data)
                return saved

        return self._write(write)

    def delete_profile(self, profile_id: int) -> None:
        def write() -> None:
            with self._lock:
                data = self._read_profiles()
                data["profiles"] = [p for p in data["profiles"] if p["id"] != profile_id]
                if data.get("default_profile_id") == profile_id:
                    data["default_profile_id"] = None
                self._write_profiles(data)
                # 解除会话与该 Profile 的关联
                for conv in self._iter_conversations():
                    if conv.profile_id == profile_id:
                        self._write_meta(self._conv_root / conv.id, replace(conv, profile_id=None))

        self._write(write)

    def get_default_profile_id(self) -> Optional[int]:
        return self._read_profiles().get("default_profile_id")

    def set_default_profile_id(self, profile_id: int) -> None:
        if self.get_profile(profile_id) is None:
            raise ValidationError(code="PROFILE_NOT_FOUND", message=f"provider id {profile_id} not found")

        def write() -> None:
            with self._lock:
                data = self._read_profiles()
                data["default_profile_id"] = profile_id
                self._write_profiles(data)

        self._write(write)

    def get_default_profile(self) -> Optional[VendorProfile]:
        pid = self.get_default_profile_id()
        return self.get_profile(pid) if pid is not None else None

    # ---- 会话 ----

    def create_conversation(self, title: str, profile_id: Optional[int]) -> Conversation:
        conv = Conversation(id=f"c-{uuid4().hex}", title=title, profile_id=profile_id)
        cdir = self._conv_root / conv.id

        def write() -> None:
            try:
                cdir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreFailure(str(e))
            self._write_meta(cdir, conv, created_at=_now())

        self._write(write)
        return conv

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            return None
        return self._to_conversation(self._read_json(meta_path))

    def list_conversations(self, profile_id: Optional[int] = None) -> List[Conversation]:
        items = []
        for cdir in self._conv_root.iterdir():
            meta_path = cdir / "meta.json"
            if not cdir.is_dir() or not meta_path.exists():
                continue
            data = self._read_json(meta_path)
            if profile_id is not None and data.get("profile_id") != profile_id:
                continue
            items.append(data)
        items.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return [self._to_conversation(d) for d in items]

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        self._update_conversation(conversation_id, lambda c: replace(c, title=title))

    def set_conversation_profile(self, conversation_id: str, profile_id: Optional[int]) -> None:
        self._update_conversation(conversation_id, lambda c: replace(c, profile_id=profile_id))

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise ValidationError(code="CONVERSATION_NOT_FOUND", message=conversation_id)

        def write() -> None:
            try:
                shutil.rmtree(cdir)
            except PermissionError as e:
                raise StoreContention(str(e))
            except OSError as e:
                raise StoreFailure(str(e))

        self._write(write)

    def list_turns(self, conversation_id: str) -> List[TurnRecord]:
        return [
            TurnRecord(
                id=data["id"],
                conversation_id=conversation_id,
                role=data["role"],
                content=data.get("content") or "",
            )
            for data in self._read_turn_rows(conversation_id)
        ]

    def delete_turns_from(self, conversation_id: str, turn_id: str) -> None:
        """删除 turn_id 及其之后的所有轮次（重新生成时使用）。"""

        cdir = self._conv_dir(conversation_id)
        turns_path = cdir / "turns.jsonl"

        def write() -> bool:
            with self._lock:
                rows = self._read_turn_rows(conversation_id)
                ids = [r["id"] for r in rows]
                if turn_id not in ids:
                    return False
                # 保留行按原样写回（含 created_at）
                self._atomic_write(turns_path, self._dump_rows(rows[: ids.index(turn_id)]))
                return True

        if self._write(write):
            self._write(lambda: self._touch_locked(cdir))

    def clone_conversation_until(
        self,
        source_id: str,
        title: str,
        until_turn_id: Optional[str] = None,
    ) -> Conversation:
        """复制会话（分支）。

        新会话沿用源会话绑定的 Profile；指定 until_turn_id 时只复制到该轮次（含）。
        """

        source = self.get_conversation(source_id)
        if source is None:
            raise ValidationError(code="CONVERSATION_NOT_FOUND", message=f"会话 {source_id} 不存在")
        rows = self._read_turn_rows(source_id)
        if until_turn_id is not None:
            ids = [r["id"] for r in rows]
            if until_turn_id not in ids:
                raise ValidationError(code="TURN_NOT_FOUND", message=f"消息 {until_turn_id} 不存在")
            rows = rows[: ids.index(until_turn_id) + 1]
        copied = [{**r, "id": f"t-{uuid4().hex}"} for r in rows]

        conv = self.create_conversation(title, source.profile_id)
        turns_path = self._conv_root / conv.id / "turns.jsonl"
        self._write(lambda: self._atomic_write(turns_path, self._dump_rows(copied)))
        return conv

    # ---- 内部工具 ----

    def _write(self, action: Callable[[], T]) -> T:
        return retry_on_contention(action)

    def _read_turn_rows(self, conversation_id: str) -> List[Dict[str, Any]]:
        turns_path = self._conv_root / conversation_id / "turns.jsonl"
        if not turns_path.exists():
            return []
        try:
            lines = turns_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreFailure(str(e))
        rows: List[Dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise StoreFailure(f"corrupted turn in {conversation_id}: {e}")
        return rows

    @staticmethod
    def _dump_rows(rows: List[Dict[str, Any]]) -> str:
        return "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in rows)

    def _conv_dir(self, conversation_id: str) -> Path:
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise StoreFailure(f"conversation {conversation_id} not found")
        return cdir

    def _update_conversation(self, conversation_id: str, change: Callable[[Conversation], Conversation]) -> None:
        cdir = self._conv_dir(conversation_id)

        def write() -> None:
            with self._lock:
                conv = self._to_conversation(self._read_json(cdir / "meta.json"))
                self._write_meta(cdir, change(conv))

        self._write(write)

    def _iter_conversations(self) -> List[Conversation]:
        return self.list_conversations()

    def _touch_locked(self, cdir: Path) -> None:
        """刷新 meta.json 的 updated_at。"""

        with self._lock:
            conv = self._to_conversation(self._read_json(cdir / "meta.json"))
            self._write_meta(cdir, conv)

    def _write_meta(self, cdir: Path, conv: Conversation, created_at: Optional[str] = None) -> None:
        meta_path = cdir / "meta.json"
        if created_at is None and meta_path.exists():
            created_at = self._read_json(meta_path).get("created_at")
        obj = {
            "id": conv.id,
            "title": conv.title,
            "profile_id": conv.profile_id,
            "created_at": created_at or _now(),
            "updated_at": _now(),
        }
        self._atomic_write(meta_path, json.dumps(obj, ensure_ascii=False))

    def _read_profiles(self) -> Dict[str, Any]:
        if not self._profiles_path.exists():
            return {"next_id": 1, "default_profile_id": None, "profiles": []}
        data = self._read_json(self._profiles_path)
        data.setdefault("next_id", 1)
        data.setdefault("default_profile_id", None)
        data.setdefault("profiles", [])
        return data

    def _write_profiles(self, data: Dict[str, Any]) -> None:
        self._atomic_write(self._profiles_path, json.dumps(data, ensure_ascii=False, indent=2))

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreFailure(f"read {path.name} failed: {e}")

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except PermissionError as e:
            # 目标文件被其他进程占用（Windows 下常见），可重试
            tmp_path.unlink(missing_ok=True)
            raise StoreContention(str(e))
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreFailure(str(e))

    @staticmethod
    def _to_profile(item: Dict[str, Any]) -> VendorProfile:
        return VendorProfile(
            id=item["id"],
            display_name=item.get("name") or "",
            kind=VendorKind.parse(item.get("kind")),
            base_address=item.get("base_address") or "",
            credential=item.get("credential") or "",
            model=item.get("model") or "",
            secret_alias=item.get("secret_alias"),
        )

    @staticmethod
    def _from_profile(profile: VendorProfile) -> Dict[str, Any]:
        return {
            "id": profile.id,
            "name": profile.display_name,
            "kind": profile.kind.value,
            "base_address": profile.base_address,
            "credential": profile.credential,
            "model": profile.model,
            "secret_alias": profile.secret_alias,
        }

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(id=data["id"], title=data.get("title") or "", profile_id=data.get("profile_id"))
