"""Credential sources for LLM providers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from overlay_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from overlay_agent.infrastructure.config import Config

logger = get_logger(__name__)


class CredentialSource(Protocol):
    """プロバイダーIDからAPIキーを引くインターフェース."""

    def get_credential(self, provider_id: str) -> str | None: ...


class SettingsCredentialSource:
    """設定（環境変数 / .env）からAPIキーを読むクレデンシャルソース."""

    def __init__(self, config: Config) -> None:
        self._config = config

    def get_credential(self, provider_id: str) -> str | None:
        """
        プロバイダーのAPIキーを返す.

        Args:
            provider_id: プロバイダーID（現在は "anthropic" のみ）

        Returns:
            APIキー。未設定または未対応のプロバイダーの場合はNone
        """
        if provider_id != "anthropic":
            logger.warning("Unsupported credential provider", provider_id=provider_id)
            return None

        api_key = self._config.anthropic_api_key
        if not api_key or not api_key.strip():
            return None
        return api_key.strip()
