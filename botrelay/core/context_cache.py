"""
对话上下文缓存 - 按 (机器人, 会话, 会话类型) 保存最近的问答轮次。

每个键对应一组 {user, assistant} 轮次，长度不超过 context_count，
超出时先淘汰最旧的轮次。条目在 ttl_sec 后过期，过期后由调用方
从持久化历史重建。
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

__all__ = [
    "ContextTurn",
    "ContextKey",
    "ContextCache",
]

ContextKey = Tuple[str, str, str]


@dataclass(frozen=True)
class ContextTurn:
    user: str
    assistant: str

    def to_messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "user", "content": self.user},
            {"role": "assistant", "content": self.assistant},
        ]


class ContextCache:
    def __init__(self, ttl_sec: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._entries: Dict[ContextKey, Tuple[float, Deque[ContextTurn]]] = {}

    @staticmethod
    def make_key(bot_id: str, peer_id: str, chat_kind: str) -> ContextKey:
        return (str(bot_id), str(peer_id), str(chat_kind))

    def get(self, key: ContextKey) -> Optional[List[ContextTurn]]:
        """返回缓存的轮次（旧到新），未命中或已过期返回 None。"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, turns = entry
        if self.ttl_sec > 0 and self._clock() - stored_at >= self.ttl_sec:
            del self._entries[key]
            return None
        return list(turns)

    def replace(self, key: ContextKey, turns: Iterable[ContextTurn], limit: int) -> List[ContextTurn]:
        """用历史重建的轮次覆盖缓存，只保留最近 limit 轮。"""
        if limit <= 0:
            self._entries.pop(key, None)
            return []
        window: Deque[ContextTurn] = deque(turns, maxlen=limit)
        self._entries[key] = (self._clock(), window)
        return list(window)

    def push(self, key: ContextKey, user: str, assistant: str, limit: int) -> List[ContextTurn]:
        """追加一轮对话并裁剪到 limit 轮，同时刷新过期时间。

        即使条目已过期也在原有轮次上追加，调用方在推送前已读取过上下文。
        """
        if limit <= 0:
            return []
        entry = self._entries.get(key)
        turns: Deque[ContextTurn]
        if entry is None:
            turns = deque(maxlen=limit)
        else:
            turns = entry[1]
            if turns.maxlen != limit:
                turns = deque(turns, maxlen=limit)
        turns.append(ContextTurn(user=user, assistant=assistant))
        self._entries[key] = (self._clock(), turns)
        return list(turns)

    def delete(self, key: ContextKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
