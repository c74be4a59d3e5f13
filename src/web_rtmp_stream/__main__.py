"""コマンドラインエントリポイント.

環境変数から設定を読み込み、1つのリストリームセッションを実行する。

    WEB_URL=https://example.com RTMP_URL=rtmp://host/live/key python -m web_rtmp_stream
"""

import asyncio
import logging
import os
import sys
from collections.abc import Mapping

from web_rtmp_stream.config import ConfigError, load_config
from web_rtmp_stream.session import EXIT_FAILURE, RestreamSession

logger = logging.getLogger("web_rtmp_stream")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """ルートロガーを設定する (LOG_LEVEL)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def main(environ: Mapping[str, str] | None = None) -> int:
    """設定を読み込みセッションを実行する. 終了コードを返す."""
    env = os.environ if environ is None else environ
    configure_logging(env.get("LOG_LEVEL", "INFO"))

    try:
        config = load_config(env)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    session = RestreamSession(config)
    return asyncio.run(session.run())


if __name__ == "__main__":
    sys.exit(main())
