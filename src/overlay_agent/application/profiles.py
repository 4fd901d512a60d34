"""Agent profiles."""

from __future__ import annotations

from typing import TYPE_CHECKING

from overlay_agent.application.models import AgentProfile, PermissionLevel

if TYPE_CHECKING:
    from overlay_agent.infrastructure.config import Config

DEFAULT_PROFILE_ID = "helper"

_HELPER_INSTRUCTIONS = """\
You are an overlay assistant that helps users with whatever is on their screen.

You have tools available. Use them: never describe what you would do, call the tool.

Your tools:
- calculator: Evaluate math expressions. Use this for any calculation.
- web_fetch: Fetch the readable text of a specific URL.
- current_time: Get the current local date and time.

Be conversational and helpful. Keep responses concise and focused."""

_RESEARCH_INSTRUCTIONS = """\
You are a careful research assistant. Prefer reading sources with web_fetch over \
answering from memory, cite the URLs you used, and say so when you are unsure."""

_OFFLINE_INSTRUCTIONS = """\
You are an overlay assistant working without network access.

Your tools:
- calculator: Evaluate math expressions. Use this for any calculation.
- current_time: Get the current local date and time.

You cannot open URLs or look anything up online. If a question needs fresh \
information, say so and answer from what you already know.
Be conversational and helpful. Keep responses concise and focused."""


class ProfileNotFoundError(Exception):
    """指定されたプロファイルが存在しない場合の例外."""

    def __init__(self, profile_id: str) -> None:
        """
        Initialize ProfileNotFoundError.

        Args:
            profile_id: 見つからなかったプロファイルID
        """
        super().__init__(f"Unknown agent profile: {profile_id}")
        self.profile_id = profile_id


def build_profiles(config: Config) -> dict[str, AgentProfile]:
    """
    組み込みプロファイルを構築する.

    Args:
        config: アプリケーション設定（モデル・反復上限の既定値に使用）

    Returns:
        プロファイルID -> プロファイル
    """
    helper = AgentProfile(
        id="helper",
        name="Screen Helper",
        description="Context-aware assistant that helps with what's on your screen",
        system_instructions=_HELPER_INSTRUCTIONS,
        model=config.default_model,
        tool_permissions={
            "calculator": PermissionLevel.ALWAYS,
            "current_time": PermissionLevel.ALWAYS,
            "web_fetch": PermissionLevel.ASK,
        },
        max_iterations=config.max_iterations,
    )
    research = AgentProfile(
        id="research",
        name="Researcher",
        description="Reads sources before answering",
        system_instructions=_RESEARCH_INSTRUCTIONS,
        model=config.default_model,
        tool_permissions={
            "calculator": PermissionLevel.ALWAYS,
            "current_time": PermissionLevel.ALWAYS,
            "web_fetch": PermissionLevel.ASK,
        },
        max_iterations=config.max_iterations,
    )
    offline = AgentProfile(
        id="offline",
        name="Offline",
        description="No network access",
        system_instructions=_OFFLINE_INSTRUCTIONS,
        model=config.default_model,
        tool_permissions={
            "calculator": PermissionLevel.ALWAYS,
            "current_time": PermissionLevel.ALWAYS,
            "web_fetch": PermissionLevel.NEVER,
        },
        max_iterations=config.max_iterations,
    )
    return {p.id: p for p in (helper, research, offline)}


def get_profile(profiles: dict[str, AgentProfile], profile_id: str) -> AgentProfile:
    """
    プロファイルを取得する.

    Raises:
        ProfileNotFoundError: プロファイルが存在しない場合
    """
    profile = profiles.get(profile_id)
    if profile is None:
        raise ProfileNotFoundError(profile_id)
    return profile


def list_profiles(profiles: dict[str, AgentProfile]) -> list[AgentProfile]:
    return list(profiles.values())
