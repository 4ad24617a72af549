"""
本地存储模块 - 基于 SQLite 的 BaseStore 实现。

用于本地开发、离线调试和测试，表结构与 Supabase 中的表保持一致：
- bots / ai_models / keyword_replies / plugins: 配置数据
- bot_messages: 消息历史

bots 表的变更通过定时轮询比较快照得到。

使用示例:
    >>> store = SqliteStore("data/botrelay.db")
    >>> store.upsert_bot({"id": "b1", "auth_key": "k1", "status": "online", "user_id": "u1"})
    >>> bots = await store.get_bots_online()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional

from ..errors import StoreError, StoreUnavailableError
from ..schemas import AIModelProfile, BotInfo, KeywordRule, MessageRecord, PluginDef
from ..utils.common import iso_from_ms
from .realtime import ChangeCallback
from .store import HISTORY_SOURCES, BaseStore

__all__ = [
    "SqliteStore",
    "PollingSubscription",
]

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
#                               表结构
# ═══════════════════════════════════════════════════════════════════════════════

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS bots ("
    "id TEXT PRIMARY KEY,"
    "auth_key TEXT NOT NULL DEFAULT '',"
    "status TEXT NOT NULL DEFAULT 'offline',"
    "user_id TEXT,"
    "wxid TEXT,"
    "nickname TEXT,"
    "avatar_url TEXT,"
    "at_reply_enabled INTEGER NOT NULL DEFAULT 0,"
    "last_active_at TEXT"
    ")",
    "CREATE TABLE IF NOT EXISTS ai_models ("
    "id TEXT PRIMARY KEY,"
    "user_id TEXT NOT NULL,"
    "enabled INTEGER NOT NULL DEFAULT 1,"
    "position INTEGER NOT NULL DEFAULT 0,"
    "data TEXT NOT NULL"
    ")",
    "CREATE TABLE IF NOT EXISTS keyword_replies ("
    "id TEXT PRIMARY KEY,"
    "user_id TEXT NOT NULL,"
    "is_active INTEGER NOT NULL DEFAULT 1,"
    "position INTEGER NOT NULL DEFAULT 0,"
    "data TEXT NOT NULL"
    ")",
    "CREATE TABLE IF NOT EXISTS plugins ("
    "id TEXT PRIMARY KEY,"
    "user_id TEXT NOT NULL,"
    "is_active INTEGER NOT NULL DEFAULT 1,"
    "position INTEGER NOT NULL DEFAULT 0,"
    "data TEXT NOT NULL"
    ")",
    "CREATE TABLE IF NOT EXISTS bot_messages ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT,"
    "bot_id TEXT NOT NULL,"
    "msg_id TEXT,"
    "from_user TEXT,"
    "to_user TEXT,"
    "msg_type INTEGER,"
    "content TEXT,"
    "media_url TEXT,"
    "status INTEGER,"
    "created_at TEXT NOT NULL,"
    "source TEXT"
    ")",
    "CREATE INDEX IF NOT EXISTS idx_bot_messages_bot_id_created_at "
    "ON bot_messages (bot_id, created_at)",
)

# 配置类表：表名 -> (启用字段, 模型)
_CONFIG_TABLES = {
    "ai_models": ("enabled", AIModelProfile),
    "keyword_replies": ("is_active", KeywordRule),
    "plugins": ("is_active", PluginDef),
}


class SqliteStore(BaseStore):
    """
    基于 SQLite 的存储实现。

    所有数据库操作在线程池中执行，线程安全。

    Attributes:
        db_path (str): SQLite 数据库文件路径（":memory:" 表示内存库）
    """

    def __init__(self, db_path: str = "data/botrelay.db", poll_interval_sec: float = 5.0) -> None:
        if db_path != ":memory:":
            db_path = os.path.abspath(db_path)
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        self.db_path = db_path
        self.poll_interval_sec = poll_interval_sec
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)
            if self.db_path != ":memory:":
                # WAL 模式提升并发读写性能
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.commit()

    # ───────────────────────────── 同步写入（初始化数据） ─────────────────────────────

    def upsert_bot(self, bot: Dict[str, Any]) -> None:
        info = BotInfo.model_validate(bot)
        with self._lock:
            self._conn.execute(
                "INSERT INTO bots (id, auth_key, status, user_id, wxid, nickname, "
                "avatar_url, at_reply_enabled, last_active_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET auth_key=excluded.auth_key, "
                "status=excluded.status, user_id=excluded.user_id, wxid=excluded.wxid, "
                "nickname=excluded.nickname, avatar_url=excluded.avatar_url, "
                "at_reply_enabled=excluded.at_reply_enabled",
                (
                    info.id, info.auth_key, info.status, info.user_id, info.wxid,
                    info.nickname, info.avatar_url, int(info.at_reply_enabled),
                    info.last_active_at,
                ),
            )
            self._conn.commit()

    def delete_bot(self, bot_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM bots WHERE id = ?", (bot_id,))
            self._conn.commit()

    def _add_config_row(self, table: str, user_id: str, data: Dict[str, Any]) -> str:
        flag_field, model = _CONFIG_TABLES[table]
        row = model.model_validate(data)
        row_id = row.id or uuid.uuid4().hex
        payload = row.model_dump(mode="json")
        payload["id"] = row_id
        with self._lock:
            cur = self._conn.execute(
                f"SELECT COALESCE(MAX(position), -1) + 1 FROM {table} WHERE user_id = ?",
                (user_id,),
            )
            position = int(cur.fetchone()[0])
            self._conn.execute(
                f"INSERT OR REPLACE INTO {table} (id, user_id, {flag_field}, position, data) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    row_id,
                    user_id,
                    int(bool(payload.get(flag_field, True))),
                    position,
                    json.dumps(payload, ensure_ascii=False),
                ),
            )
            self._conn.commit()
        return row_id

    def add_ai_model(self, user_id: str, data: Dict[str, Any]) -> str:
        return self._add_config_row("ai_models", user_id, data)

    def add_keyword_reply(self, user_id: str, data: Dict[str, Any]) -> str:
        return self._add_config_row("keyword_replies", user_id, data)

    def add_plugin(self, user_id: str, data: Dict[str, Any]) -> str:
        return self._add_config_row("plugins", user_id, data)

    # ───────────────────────────── 同步读取 ─────────────────────────────

    def _fetch_bots(self, where: str = "", params: Iterable[Any] = ()) -> List[BotInfo]:
        with self._lock:
            cur = self._conn.execute(f"SELECT * FROM bots {where}", tuple(params))
            rows = cur.fetchall()
        return [BotInfo.model_validate(dict(row)) for row in rows]

    def _fetch_config(self, table: str, user_id: str) -> List[Any]:
        flag_field, model = _CONFIG_TABLES[table]
        with self._lock:
            cur = self._conn.execute(
                f"SELECT data FROM {table} WHERE user_id = ? AND {flag_field} = 1 "
                "ORDER BY position ASC",
                (user_id,),
            )
            rows = cur.fetchall()
        result = []
        for row in rows:
            try:
                result.append(model.model_validate(json.loads(row["data"])))
            except ValueError as exc:
                logger.warning("跳过无法解析的配置行（%s）：%s", table, exc)
        return result

    def _insert_message(self, record: MessageRecord) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO bot_messages (bot_id, msg_id, from_user, to_user, msg_type, "
                "content, media_url, status, created_at, source) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.bot_id, record.msg_id, record.from_user, record.to_user,
                    record.msg_type, record.content, record.media_url, record.status,
                    record.created_at, record.source,
                ),
            )
            self._conn.commit()

    def _update_status(self, bot_id: str, status: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE bots SET status = ?, last_active_at = ? WHERE id = ?",
                (status, iso_from_ms(), bot_id),
            )
            self._conn.commit()

    def _fetch_history(self, bot_id: str, peer_id: str, limit: int) -> List[MessageRecord]:
        placeholders = ",".join("?" for _ in HISTORY_SOURCES)
        with self._lock:
            cur = self._conn.execute(
                "SELECT bot_id, msg_id, from_user, to_user, msg_type, content, media_url, "
                "status, created_at, source FROM bot_messages "
                f"WHERE bot_id = ? AND (from_user = ? OR to_user = ?) "
                f"AND source IN ({placeholders}) "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (bot_id, peer_id, peer_id, *HISTORY_SOURCES, limit),
            )
            rows = cur.fetchall()
        return [MessageRecord.model_validate(dict(row)) for row in rows]

    def get_all_messages(self, bot_id: Optional[str] = None) -> List[MessageRecord]:
        """按写入顺序返回消息记录（调试和测试用）。"""
        sql = (
            "SELECT bot_id, msg_id, from_user, to_user, msg_type, content, media_url, "
            "status, created_at, source FROM bot_messages"
        )
        params: tuple = ()
        if bot_id is not None:
            sql += " WHERE bot_id = ?"
            params = (bot_id,)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id ASC", params).fetchall()
        return [MessageRecord.model_validate(dict(row)) for row in rows]

    def snapshot_bots(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM bots").fetchall()
        return {row["id"]: dict(row) for row in rows}

    # ───────────────────────────── BaseStore 接口 ─────────────────────────────

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite 操作失败: {exc}") from exc

    async def ping(self) -> None:
        try:
            await self._run(self._fetch_bots, "LIMIT 1")
        except StoreError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def get_bots_online(self) -> List[BotInfo]:
        return await self._run(self._fetch_bots, "WHERE status = ?", ("online",))

    async def get_bot_info(self, bot_id: str) -> Optional[BotInfo]:
        bots = await self._run(self._fetch_bots, "WHERE id = ?", (bot_id,))
        return bots[0] if bots else None

    async def get_ai_models(self, user_id: str) -> List[AIModelProfile]:
        return await self._run(self._fetch_config, "ai_models", user_id)

    async def get_keyword_replies(self, user_id: str) -> List[KeywordRule]:
        return await self._run(self._fetch_config, "keyword_replies", user_id)

    async def get_plugins(self, user_id: str) -> List[PluginDef]:
        return await self._run(self._fetch_config, "plugins", user_id)

    async def record_message(self, record: MessageRecord) -> None:
        await self._run(self._insert_message, record)

    async def update_bot_status(self, bot_id: str, status: str) -> None:
        await self._run(self._update_status, bot_id, status)

    async def get_history(self, bot_id: str, peer_id: str, limit: int) -> List[MessageRecord]:
        if limit <= 0:
            return []
        return await self._run(self._fetch_history, bot_id, peer_id, limit)

    async def subscribe_bot_changes(self, callback: ChangeCallback) -> "PollingSubscription":
        subscription = PollingSubscription(self, callback, self.poll_interval_sec)
        await subscription.start()
        return subscription

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


class PollingSubscription:
    """定时比较 bots 表快照，把差异转换成 INSERT/UPDATE/DELETE 事件。"""

    def __init__(self, store: SqliteStore, callback: ChangeCallback, interval_sec: float) -> None:
        self.store = store
        self.callback = callback
        self.interval_sec = max(0.05, float(interval_sec))
        self._snapshot: Dict[str, Dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._snapshot = await asyncio.to_thread(self.store.snapshot_bots)
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def poll_once(self) -> None:
        current = await asyncio.to_thread(self.store.snapshot_bots)
        previous = self._snapshot
        self._snapshot = current
        for bot_id, row in current.items():
            old = previous.get(bot_id)
            if old is None:
                await self._emit("INSERT", row, {})
            elif old.get("status") != row.get("status") or old.get("auth_key") != row.get("auth_key"):
                await self._emit("UPDATE", row, old)
        for bot_id, old in previous.items():
            if bot_id not in current:
                await self._emit("DELETE", {}, old)

    async def _emit(self, event_type: str, record: Dict[str, Any], old: Dict[str, Any]) -> None:
        try:
            await self.callback(event_type, record, old)
        except Exception as exc:
            logger.error("处理 bots 表变更失败：%s", exc, exc_info=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.poll_once()
            except sqlite3.Error as exc:
                logger.warning("轮询 bots 表失败：%s", exc)
