"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# サードパーティライブラリのログレベル
# anthropic SDK と httpx はリクエスト毎に INFO を出すため抑制する
LIBRARY_LOG_LEVELS: dict[str, int] = {
    "discord": logging.INFO,
    "discord.http": logging.WARNING,
    "anthropic": logging.WARNING,
    "httpx": logging.WARNING,
}


def _resolve_level(log_level: str) -> int:
    """ログレベル名を数値に変換する（不正な値は INFO）."""
    name = log_level.upper()
    if name not in _VALID_LEVELS:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        name = "INFO"
    return logging.getLevelName(name)  # type: ignore[no-any-return]


def _rotating_handler(
    path: Path,
    level: int,
    backup_count: int,
    formatter: logging.Formatter,
) -> TimedRotatingFileHandler:
    """日次ローテーションするファイルハンドラーを作成する."""
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    出力先:
    - コンソール (stderr): ERROR以上
    - <log_dir>/latest.log: log_level以上
    - <log_dir>/error.log: WARNING以上

    bind_session_context() で束縛した値（session_id など）は
    すべての出力先のログに付与される。

    Args:
        log_level: latest.log に出力する最低ログレベル
        log_dir: ログ出力ディレクトリ
        log_backup_count: ログローテーションの保持日数
    """
    level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name, library_level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root_logger.addHandler(
        _rotating_handler(log_path / "latest.log", level, log_backup_count, formatter)
    )
    root_logger.addHandler(
        _rotating_handler(
            log_path / "error.log", logging.WARNING, log_backup_count, formatter
        )
    )


def bind_session_context(session_id: str, **extra: Any) -> None:
    """
    現在のタスクのログにセッション情報を束縛する.

    contextvars に保存されるため、ターンを実行するタスクの中で呼ぶと
    Manager・Session・PermissionGate などのログすべてに session_id が付く。
    asyncio.create_task で作成したタスクは呼び出し元のコンテキストの
    コピーを持つので、他のタスクには影響しない。

    Args:
        session_id: セッションID
        **extra: 追加で束縛する値（thread_id など）
    """
    structlog.contextvars.bind_contextvars(session_id=session_id, **extra)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
