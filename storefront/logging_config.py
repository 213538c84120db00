"""
Storefront — ログ設定

アプリ全体のログ出力をここで一度だけ設定する。
各モジュールは logging.getLogger(__name__) を使う。
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """
    ルートロガーを設定する。

    - 標準出力 (Docker / Kubernetes 向け)
    - log_file が指定されていればファイルにも出力
    - httpx / SQLAlchemy のログは WARNING 以上に抑える
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
