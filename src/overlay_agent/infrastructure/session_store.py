"""JSON file transcript store."""

from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from overlay_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)


class StoredMessage(BaseModel):
    """永続化されるメッセージ（user / assistant のみ）."""

    id: str
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: int


class StoredSession(BaseModel):
    """永続化されるセッション."""

    id: str
    title: str
    messages: list[StoredMessage] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TranscriptStore(Protocol):
    """セッションのトランスクリプトを保存するインターフェース."""

    async def save_session(
        self,
        session_id: str,
        title: str,
        messages: list[StoredMessage],
        created_at: datetime,
        updated_at: datetime,
    ) -> None: ...


class JsonSessionStore:
    """セッション毎に <sessions_dir>/<session_id>.json を書き出すストア."""

    def __init__(self, sessions_dir: Path) -> None:
        """
        Initialize JsonSessionStore.

        Args:
            sessions_dir: 保存先ディレクトリ（存在しなければ作成する）
        """
        self._sessions_dir = sessions_dir

    def path_for(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id}.json"

    async def save_session(
        self,
        session_id: str,
        title: str,
        messages: list[StoredMessage],
        created_at: datetime,
        updated_at: datetime,
    ) -> None:
        """
        セッションを保存する（同じIDは上書き）.

        Args:
            session_id: セッションID
            title: 表示用タイトル
            messages: 保存するメッセージ
            created_at: 作成日時
            updated_at: 更新日時

        Raises:
            OSError: 書き込みに失敗した場合
        """
        stored = StoredSession(
            id=session_id,
            title=title,
            messages=messages,
            created_at=created_at,
            updated_at=updated_at,
        )
        await asyncio.to_thread(self._write, stored)
        logger.debug(
            "Session saved",
            session_id=session_id,
            message_count=len(messages),
        )

    def _write(self, stored: StoredSession) -> None:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        target = self.path_for(stored.id)

        # 一時ファイルに書いてから置き換える（書き込み途中のファイルを残さない）
        fd, tmp_name = tempfile.mkstemp(
            dir=self._sessions_dir, prefix=f".{stored.id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(stored.model_dump_json(indent=2))
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
