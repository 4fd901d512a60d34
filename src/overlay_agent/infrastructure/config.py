"""Configuration management."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLMプロバイダー設定
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API Key（未設定の場合はセッションを作成できない）",
    )
    default_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="プロファイルが使用する既定のモデルID",
    )
    max_tokens: int = Field(
        default=4096,
        gt=0,
        description="1回のモデル応答の最大出力トークン数",
    )
    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="サンプリング温度",
    )
    # Sonnet 4.5 の料金（USD / 100万トークン）
    input_price_per_million: float = Field(default=3.0, ge=0.0)
    output_price_per_million: float = Field(default=15.0, ge=0.0)

    # エージェント設定
    max_iterations: int = Field(
        default=15,
        gt=0,
        description="1ターン内のツール実行ラウンドの上限",
    )
    max_concurrent_sessions: int = Field(
        default=10,
        gt=0,
        description="同時に保持できるセッション数の上限",
    )
    approval_timeout: float = Field(
        default=5 * 60,
        gt=0,
        description="ツール実行承認の待機タイムアウト（秒）",
    )

    # ツール設定
    web_fetch_timeout: float = Field(default=30.0, gt=0)
    web_fetch_char_limit: int = Field(default=10_000, gt=0)

    # 永続化設定
    sessions_dir: Path = Field(
        default=Path("sessions"),
        description="会話履歴の保存先ディレクトリ",
    )

    # ロギング設定
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    log_backup_count: int = Field(default=7, ge=0)

    # Discord設定（Discordシェルを起動する場合のみ必須）
    discord_bot_token: str | None = Field(default=None, description="Discord Bot Token")
    discord_guild_id: int | None = Field(
        default=None,
        description="開発用ギルドID（指定時はそのギルドのみにコマンド同期）",
    )
    discord_allowed_user_id: int | None = Field(
        default=None,
        description="利用を許可するDiscordユーザーID",
    )

    @field_validator("sessions_dir", mode="before")
    @classmethod
    def parse_sessions_dir(cls, v: str | Path) -> Path:
        """sessions_dirをPathに変換する."""
        if isinstance(v, str):
            return Path(v)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """ログレベルを大文字に正規化する."""
        if isinstance(v, str):
            return v.upper()
        return v


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
