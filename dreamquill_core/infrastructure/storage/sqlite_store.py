"""SQLite 会话存储。

- WAL 模式，每个操作使用一个短生命周期连接，可以安全地在
  asyncio.to_thread 的工作线程中调用。
- 数据库忙/被锁（SQLITE_BUSY / SQLITE_LOCKED）映射为 StoreContention，
  所有写操作经 retry_on_contention 有界重试；其他 sqlite3.Error 映射为
  StoreFailure 立即上抛。
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.conversation import Conversation, TurnRecord
from dreamquill_core.domain.exceptions import StoreContention, StoreError, StoreFailure, ValidationError
from dreamquill_core.domain.models import ChatTurn, Role, VendorKind, VendorProfile
from dreamquill_core.infrastructure.storage.retry import retry_on_contention

T = TypeVar("T")

_BUSY_CODES = {
    getattr(sqlite3, "SQLITE_BUSY", 5),
    getattr(sqlite3, "SQLITE_LOCKED", 6),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'openai',
    base_address TEXT NOT NULL,
    credential TEXT NOT NULL,
    model TEXT NOT NULL,
    secret_alias TEXT
);

CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    profile_id INTEGER REFERENCES profiles(id)
);

CREATE TABLE IF NOT EXISTS turns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL,
    content TEXT NOT NULL
);
"""


def translate_sqlite_error(exc: sqlite3.Error) -> StoreError:
    """把 sqlite3 异常映射为 StoreContention / StoreFailure。"""

    code = getattr(exc, "sqlite_errorcode", None)
    message = str(exc)
    if isinstance(exc, sqlite3.OperationalError):
        # 扩展错误码的低 8 位是主错误码
        if code is not None and (code & 0xFF) in _BUSY_CODES:
            return StoreContention(message)
        lowered = message.lower()
        if "database is locked" in lowered or "database is busy" in lowered or "database table is locked" in lowered:
            return StoreContention(message)
    return StoreFailure(message)


def _parse_key(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _conversation_key(conversation_id: str) -> int:
    key = _parse_key(conversation_id)
    if key is None:
        raise ValidationError(code="CONVERSATION_NOT_FOUND", message=f"会话 {conversation_id} 不存在")
    return key


def _turn_key(turn_id: str) -> int:
    key = _parse_key(turn_id)
    if key is None:
        raise ValidationError(code="TURN_NOT_FOUND", message=f"消息 {turn_id} 不存在")
    return key


class SqliteConversationStore:
    def __init__(self, path: str | Path | None = None, busy_timeout: Optional[float] = None):
        self._path = Path(path or settings.database_path)
        self._busy_timeout = settings.store_busy_timeout if busy_timeout is None else busy_timeout

    def initialize(self) -> None:
        """创建表结构（幂等）。"""

        self._path.parent.mkdir(parents=True, exist_ok=True)

        def write() -> None:
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)

        self._write(write)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path, timeout=self._busy_timeout)
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc
        finally:
            conn.close()

    def _write(self, action: Callable[[], T]) -> T:
        return retry_on_contention(action)

    # ---- 核心契约 ----

    def get_profile(self, profile_id: int) -> Optional[VendorProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, kind, base_address, credential, model, secret_alias FROM profiles WHERE id=?",
                (profile_id,),
            ).fetchone()
        return self._to_profile(row) if row else None

    def append_turn(self, conversation_id: str, role: Role, text: str) -> str:
        def write() -> str:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO turns (conversation_id, role, content) VALUES (?, ?, ?)",
                    (_conversation_key(conversation_id), role, text),
                )
                return str(cur.lastrowid)

        return self._write(write)

    def load_history(self, conversation_id: str) -> List[ChatTurn]:
        return [ChatTurn(role=t.role, content=t.content) for t in self.list_turns(conversation_id)]

    # ---- Profile ----

    def list_profiles(self) -> List[VendorProfile]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, kind, base_address, credential, model, secret_alias FROM profiles ORDER BY id ASC"
            ).fetchall()
        return [self._to_profile(r) for r in rows]

    def save_profile(self, profile: VendorProfile) -> VendorProfile:
        values = (
            profile.display_name,
            profile.kind.value,
            profile.base_address,
            profile.credential,
            profile.model,
            profile.secret_alias,
        )

        def write() -> VendorProfile:
            with self._connect() as conn:
                if profile.id is None:
                    cur = conn.execute(
                        "INSERT INTO profiles (name, kind, base_address, credential, model, secret_alias) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        values,
                    )
                    return VendorProfile(
                        id=cur.lastrowid,
                        display_name=profile.display_name,
                        kind=profile.kind,
                        base_address=profile.base_address,
                        credential=profile.credential,
                        model=profile.model,
                        secret_alias=profile.secret_alias,
                    )
                cur = conn.execute(
                    "UPDATE profiles SET name=?, kind=?, base_address=?, credential=?, model=?, secret_alias=? "
                    "WHERE id=?",
                    values + (profile.id,),
                )
                if cur.rowcount == 0:
                    raise StoreFailure(f"provider id {profile.id} not found")
                return profile

        return self._write(write)

    def delete_profile(self, profile_id: int) -> None:
        def write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM app_config WHERE key='default_profile_id' AND value=?",
                    (str(profile_id),),
                )
                conn.execute("UPDATE conversations SET profile_id=NULL WHERE profile_id=?", (profile_id,))
                conn.execute("DELETE FROM profiles WHERE id=?", (profile_id,))

        self._write(write)

    def get_default_profile_id(self) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM app_config WHERE key='default_profile_id'").fetchone()
        if row is None:
            return None
        try:
            return int(row["value"])
        except ValueError:
            return None

    def set_default_profile_id(self, profile_id: int) -> None:
        if self.get_profile(profile_id) is None:
            raise ValidationError(code="PROFILE_NOT_FOUND", message=f"provider id {profile_id} not found")

        def write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_config (key, value) VALUES ('default_profile_id', ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (str(profile_id),),
                )

        self._write(write)

    def get_default_profile(self) -> Optional[VendorProfile]:
        pid = self.get_default_profile_id()
        return self.get_profile(pid) if pid is not None else None

    # ---- 会话 ----

    def create_conversation(self, title: str, profile_id: Optional[int]) -> Conversation:
        def write() -> Conversation:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO conversations (title, profile_id) VALUES (?, ?)",
                    (title, profile_id),
                )
                return Conversation(id=str(cur.lastrowid), title=title, profile_id=profile_id)

        return self._write(write)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        key = _parse_key(conversation_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, profile_id FROM conversations WHERE id=?",
                (key,),
            ).fetchone()
        return self._to_conversation(row) if row else None

    def list_conversations(self, profile_id: Optional[int] = None) -> List[Conversation]:
        with self._connect() as conn:
            if profile_id is None:
                rows = conn.execute("SELECT id, title, profile_id FROM conversations ORDER BY id DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT id, title, profile_id FROM conversations WHERE profile_id=? ORDER BY id DESC",
                    (profile_id,),
                ).fetchall()
        return [self._to_conversation(r) for r in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        def write() -> None:
            with self._connect() as conn:
                cur = conn.execute("UPDATE conversations SET title=? WHERE id=?", (title, _conversation_key(conversation_id)))
                if cur.rowcount == 0:
                    raise StoreFailure(f"chat id {conversation_id} not found")

        self._write(write)

    def set_conversation_profile(self, conversation_id: str, profile_id: Optional[int]) -> None:
        def write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE conversations SET profile_id=? WHERE id=?",
                    (profile_id, _conversation_key(conversation_id)),
                )

        self._write(write)

    def delete_conversation(self, conversation_id: str) -> None:
        def write() -> None:
            with self._connect() as conn:
                conn.execute("DELETE FROM turns WHERE conversation_id=?", (_conversation_key(conversation_id),))
                conn.execute("DELETE FROM conversations WHERE id=?", (_conversation_key(conversation_id),))

        self._write(write)

    def list_turns(self, conversation_id: str) -> List[TurnRecord]:
        key = _parse_key(conversation_id)
        if key is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, role, content FROM turns WHERE conversation_id=? ORDER BY id ASC",
                (key,),
            ).fetchall()
        return [
            TurnRecord(id=str(r["id"]), conversation_id=conversation_id, role=r["role"], content=r["content"])
            for r in rows
        ]

    def delete_turns_from(self, conversation_id: str, turn_id: str) -> None:
        """删除 turn_id 及其之后的所有轮次（重新生成时使用）。"""

        def write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM turns WHERE conversation_id=? AND id>=?",
                    (_conversation_key(conversation_id), _turn_key(turn_id)),
                )

        self._write(write)

    def clone_conversation_until(
        self,
        source_id: str,
        title: str,
        until_turn_id: Optional[str] = None,
    ) -> Conversation:
        """在一个事务内复制会话及其轮次（到 until_turn_id 为止，含）。"""

        source_key = _conversation_key(source_id)
        until_key = _turn_key(until_turn_id) if until_turn_id is not None else None

        def write() -> Conversation:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, title, profile_id FROM conversations WHERE id=?",
                    (source_key,),
                ).fetchone()
                if row is None:
                    raise ValidationError(code="CONVERSATION_NOT_FOUND", message=f"会话 {source_id} 不存在")
                if until_key is not None:
                    hit = conn.execute(
                        "SELECT 1 FROM turns WHERE conversation_id=? AND id=?",
                        (source_key, until_key),
                    ).fetchone()
                    if hit is None:
                        raise ValidationError(code="TURN_NOT_FOUND", message=f"消息 {until_turn_id} 不存在")
                cur = conn.execute(
                    "INSERT INTO conversations (title, profile_id) VALUES (?, ?)",
                    (title, row["profile_id"]),
                )
                new_id = cur.lastrowid
                sql = (
                    "INSERT INTO turns (conversation_id, role, content) "
                    "SELECT ?, role, content FROM turns WHERE conversation_id=?"
                )
                params: tuple = (new_id, source_key)
                if until_key is not None:
                    sql += " AND id<=?"
                    params += (until_key,)
                conn.execute(sql + " ORDER BY id ASC", params)
                return Conversation(id=str(new_id), title=title, profile_id=row["profile_id"])

        return self._write(write)

    @staticmethod
    def _to_profile(row: sqlite3.Row) -> VendorProfile:
        return VendorProfile(
            id=row["id"],
            display_name=row["name"],
            kind=VendorKind.parse(row["kind"]),
            base_address=row["base_address"],
            credential=row["credential"],
            model=row["model"],
            secret_alias=row["secret_alias"],
        )

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(id=str(row["id"]), title=row["title"], profile_id=row["profile_id"])
