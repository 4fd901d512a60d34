"""Session manager (multiplexes concurrent agent sessions)."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING

from overlay_agent.application.models import (
    ApprovalRequest,
    ApprovalRequested,
    ApprovalResponse,
    AssistantMessage,
    ErrorEvent,
    SessionCreated,
    SessionErrored,
    SessionInfo,
    SessionNotification,
    SessionStatus,
    SessionStatusChanged,
    SessionStreamed,
    SessionTerminated,
    StreamEvent,
    UserMessage,
)
from overlay_agent.application.profiles import (
    DEFAULT_PROFILE_ID,
    build_profiles,
    get_profile,
)
from overlay_agent.application.session import AgentSession, SessionBusyError
from overlay_agent.application.tools import create_tool_registry
from overlay_agent.infrastructure.llm_client import AnthropicStreamingClient
from overlay_agent.infrastructure.logging import get_logger
from overlay_agent.infrastructure.session_store import StoredMessage

if TYPE_CHECKING:
    from overlay_agent.application.models import AgentProfile
    from overlay_agent.application.session import StreamingClient
    from overlay_agent.infrastructure.config import Config
    from overlay_agent.infrastructure.credentials import CredentialSource
    from overlay_agent.infrastructure.session_store import TranscriptStore

logger = get_logger(__name__)

# コールバック型定義
NotificationCallback = Callable[[SessionNotification], Awaitable[None]]
Unsubscribe = Callable[[], None]
ClientFactory = Callable[[str], "StreamingClient"]

PROVIDER_ID = "anthropic"


class CredentialNotConfiguredError(Exception):
    """プロバイダーのAPIキーが設定されていない場合の例外."""

    def __init__(self, provider_id: str) -> None:
        """
        Initialize CredentialNotConfiguredError.

        Args:
            provider_id: APIキーが見つからなかったプロバイダーID
        """
        super().__init__(
            f"No API key configured for provider {provider_id}. "
            "Set ANTHROPIC_API_KEY before starting a session."
        )
        self.provider_id = provider_id


class SessionLimitError(Exception):
    """同時セッション数が上限に達している場合の例外."""

    def __init__(self, limit: int) -> None:
        """
        Initialize SessionLimitError.

        Args:
            limit: 同時セッション数の上限
        """
        super().__init__(f"Maximum concurrent sessions ({limit}) reached")
        self.limit = limit


class SessionNotFoundError(Exception):
    """指定されたセッションが見つからない場合の例外."""

    def __init__(self, session_id: str) -> None:
        """
        Initialize SessionNotFoundError.

        Args:
            session_id: 見つからなかったセッションID
        """
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


def session_title(profile_name: str, turn_count: int, total_cost: float) -> str:
    return f"Agent Session ({profile_name}) - {turn_count} turns, ${total_cost:.4f}"


class SessionManager:
    """
    エージェントセッションの生成・実行・終了を管理する.

    セッション毎のイベント（ストリーム・状態変化・承認要求・エラー）を購読者へ中継する。
    """

    def __init__(
        self,
        config: Config,
        credentials: CredentialSource,
        store: TranscriptStore | None = None,
        *,
        profiles: dict[str, AgentProfile] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize SessionManager.

        Args:
            config: アプリケーション設定
            credentials: APIキーの取得元
            store: トランスクリプトの保存先（Noneの場合は保存しない）
            profiles: 利用可能なプロファイル（省略時は組み込みプロファイル）
            client_factory: APIキーからストリーミングクライアントを作る関数（テスト用）
        """
        self._config = config
        self._credentials = credentials
        self._store = store
        self._profiles = profiles if profiles is not None else build_profiles(config)
        self._client_factory = client_factory or self._create_client
        self._client: StreamingClient | None = None
        # セッション管理（session_id -> AgentSession）
        self._sessions: dict[str, AgentSession] = {}
        # 購読者（session_id -> callbacks）。None は全セッションを購読する
        self._subscribers: dict[str | None, list[NotificationCallback]] = {}

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @property
    def profiles(self) -> dict[str, AgentProfile]:
        return dict(self._profiles)

    def initialize(self) -> bool:
        """
        クレデンシャルを読み込み、ストリーミングクライアントを準備する.

        Returns:
            APIキーが見つかった場合True
        """
        api_key = self._credentials.get_credential(PROVIDER_ID)
        if api_key is None:
            logger.warning("No API key configured", provider_id=PROVIDER_ID)
            self._client = None
            return False

        self._client = self._client_factory(api_key)
        logger.info("Session manager initialized", provider_id=PROVIDER_ID)
        return True

    # ===== Subscriptions =====

    def subscribe(
        self, callback: NotificationCallback, session_id: str | None = None
    ) -> Unsubscribe:
        """
        セッション通知を購読する.

        Args:
            callback: 通知を受け取るコールバック
            session_id: 購読するセッションID（Noneの場合はすべてのセッション）

        Returns:
            購読を解除する関数
        """
        self._subscribers.setdefault(session_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(session_id)
            if callbacks is not None and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[session_id]

        return unsubscribe

    async def _publish(self, notification: SessionNotification) -> None:
        """購読者に通知する（購読者の例外はターンに影響させない）."""
        callbacks = [
            *self._subscribers.get(notification.session_id, []),
            *self._subscribers.get(None, []),
        ]
        for callback in callbacks:
            try:
                await callback(notification)
            except Exception:
                logger.exception(
                    "Error in notification callback",
                    session_id=notification.session_id,
                    kind=notification.kind,
                )

    # ===== Lifecycle =====

    async def create_session(
        self,
        profile_id: str = DEFAULT_PROFILE_ID,
        *,
        max_iterations: int | None = None,
    ) -> str:
        """
        新規セッションを作成する.

        Args:
            profile_id: プロファイルID
            max_iterations: 反復上限の上書き

        Returns:
            作成されたセッションID

        Raises:
            CredentialNotConfiguredError: APIキーが設定されていない場合
            SessionLimitError: 同時セッション数が上限に達している場合
            ProfileNotFoundError: プロファイルが存在しない場合
        """
        if self._client is None:
            raise CredentialNotConfiguredError(PROVIDER_ID)

        limit = self._config.max_concurrent_sessions
        if len(self._sessions) >= limit:
            raise SessionLimitError(limit)

        profile = get_profile(self._profiles, profile_id)

        session_id = str(uuid.uuid4())

        async def on_status_change(status: SessionStatus) -> None:
            await self._publish(
                SessionStatusChanged(session_id=session_id, status=status)
            )

        async def on_approval_request(request: ApprovalRequest) -> None:
            await self._publish(
                ApprovalRequested(session_id=session_id, request=request)
            )

        registry = create_tool_registry(self._config)
        session = AgentSession(
            profile,
            registry,
            self._client,
            session_id=session_id,
            max_iterations=max_iterations,
            approval_timeout=self._config.approval_timeout,
            input_price_per_million=self._config.input_price_per_million,
            output_price_per_million=self._config.output_price_per_million,
            on_approval_request=on_approval_request,
            on_status_change=on_status_change,
        )
        self._sessions[session_id] = session

        logger.info(
            "Session created",
            session_id=session_id,
            profile_id=profile.id,
            max_iterations=session.max_iterations,
            tools=registry.names(),
        )
        await self._publish(
            SessionCreated(
                session_id=session_id,
                profile_id=profile.id,
                profile_name=profile.name,
            )
        )
        return session_id

    async def send_message(
        self, session_id: str, text: str, images: list[str] | None = None
    ) -> AsyncIterator[StreamEvent]:
        """
        セッションにメッセージを送り、ターンのイベントをストリーミングする.

        すべてのイベントは購読者にも SessionStreamed として中継される。

        Args:
            session_id: セッションID
            text: ユーザー入力
            images: 添付画像（base64 data URI）

        Yields:
            StreamEvent

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            SessionBusyError: 別のターンが実行中の場合
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_busy:
            raise SessionBusyError(session_id)

        try:
            async with contextlib.aclosing(session.run_turn(text, images)) as events:
                async for event in events:
                    await self._publish(
                        SessionStreamed(session_id=session_id, event=event)
                    )
                    yield event
        except Exception as e:
            # run_turn の終了処理で idle に戻っている
            logger.exception("Unexpected error during turn", session_id=session_id)
            await self._publish(SessionErrored(session_id=session_id, error=str(e)))
            error_event = ErrorEvent(error=str(e) or type(e).__name__)
            await self._publish(
                SessionStreamed(session_id=session_id, event=error_event)
            )
            yield error_event
            return

        # ターン中に terminate された場合は terminate 側で保存済み
        if self._sessions.get(session_id) is session:
            await self._persist(session)

    async def abort(self, session_id: str) -> None:
        """
        セッションの実行中ターンを中断する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        await self._require(session_id).abort()

    def set_auto_approve_safe(self, session_id: str, enabled: bool) -> None:
        """
        safe なツールの自動承認を切り替える.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        self._require(session_id).set_auto_approve_safe(enabled)

    def respond_to_approval(
        self, session_id: str, request_id: str, response: ApprovalResponse
    ) -> bool:
        """
        承認要求に応答する.

        Returns:
            待機中の要求に応答できた場合True。セッションや要求が存在しない場合はFalse
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(
                "Approval response for unknown session",
                session_id=session_id,
                request_id=request_id,
            )
            return False
        return session.respond_to_approval(request_id, response)

    async def terminate(self, session_id: str) -> None:
        """
        セッションを破棄し、トランスクリプトを保存する（存在しない場合は何もしない）.

        Args:
            session_id: セッションID
        """
        # 先に一覧から外し、中断されたターン側で再度保存されないようにする
        session = self._sessions.pop(session_id, None)
        if session is None:
            return

        logger.info("Terminating session", session_id=session_id)
        if session.is_busy:
            await session.abort()

        await self._persist(session)
        await self._publish(SessionTerminated(session_id=session_id))
        logger.info("Session terminated", session_id=session_id)

    async def terminate_all(self) -> None:
        """
        すべてのセッションを並列に終了する.

        アプリケーション終了時に呼び出される。
        """
        session_ids = list(self._sessions)
        if not session_ids:
            logger.info("No active sessions to terminate")
            return

        logger.info("Terminating %d session(s)", len(session_ids))
        results = await asyncio.gather(
            *(self.terminate(sid) for sid in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Error terminating session",
                    session_id=session_id,
                    error=str(result),
                )
        logger.info("All sessions terminated")

    # ===== Queries =====

    def list_sessions(self) -> list[SessionInfo]:
        return [session.info() for session in self._sessions.values()]

    def get_session_info(self, session_id: str) -> SessionInfo | None:
        session = self._sessions.get(session_id)
        return session.info() if session is not None else None

    def get_pending_approvals(self, session_id: str) -> list[ApprovalRequest]:
        """
        承認待ちの要求一覧を返す.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        return self._require(session_id).pending_approvals()

    # ===== Internals =====

    def _require(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _create_client(self, api_key: str) -> StreamingClient:
        return AnthropicStreamingClient(
            api_key,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )

    async def _persist(self, session: AgentSession) -> None:
        """
        トランスクリプトを保存する.

        保存の失敗はセッションエラーとして通知するが、メモリ上のトランスクリプトには影響させない。
        """
        if self._store is None:
            return

        context = session.context
        messages = [
            StoredMessage(
                id=f"{session.id}-msg-{index}",
                role=message.role,
                content=message.content or "",
                timestamp=message.timestamp,
            )
            for index, message in enumerate(
                m
                for m in session.transcript
                if isinstance(m, UserMessage | AssistantMessage)
            )
        ]
        try:
            await self._store.save_session(
                session.id,
                session_title(session.profile.name, context.turn_count, context.total_cost),
                messages,
                session.created_at,
                datetime.now(),
            )
        except Exception as e:
            logger.exception("Failed to save session", session_id=session.id)
            await self._publish(
                SessionErrored(session_id=session.id, error=f"Failed to save session: {e}")
            )
