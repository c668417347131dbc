"""ロギング設定

このモジュールは、Voice Labアプリケーション全体のロギング設定を管理します。
ファイル出力とコンソール出力の両方に対応し、日次ローテーションを実装しています。

SupabaseクライアントやGroq SDKは内部でhttpxを使用しており、
INFOレベルでは全リクエストがログに出力されてしまうため、
これら外部ライブラリのロガーはWARNING以上に制限します。
"""

import logging
import sys
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler

# リクエスト単位でINFOログを出す外部ライブラリ
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "groq", "postgrest", "comtypes")


def setup_logging(log_dir: str = "logs", level=logging.INFO):
    """
    ロギング設定を初期化

    ファイルハンドラー（日次ローテーション）とコンソールハンドラーを設定し、
    アプリケーション全体で統一されたログフォーマットを提供します。

    Args:
        log_dir: ログファイル出力ディレクトリ（デフォルト: "logs"）
        level: ログレベル（int または "INFO" などのレベル名）

    Returns:
        ルートロガー

    Examples:
        >>> from voice_lab.logging_config import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Voice Lab started")

    Note:
        - ログファイル（voice_lab.log）は毎日0時にローテーションされます
        - 過去7日分のログが保持されます
        - ログフォーマット: "YYYY-MM-DD HH:MM:SS [LEVEL] module:line - message"
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # ファイルハンドラー（日次ローテーション、7日分保持）
    file_handler = TimedRotatingFileHandler(
        log_path / "voice_lab.log",
        when='midnight',
        backupCount=7,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    # コンソールハンドラー
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 既存のハンドラーをクリア（重複を防ぐ）
    root_logger.handlers.clear()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.info(f"Logging initialized (log_dir={log_dir}, level={logging.getLevelName(level)})")

    return root_logger
