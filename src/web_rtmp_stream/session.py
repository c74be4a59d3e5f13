"""リストリームセッションのライフサイクル管理.

ブラウザ起動 → 音声ソース決定 → FFmpeg 起動 を順番に行い、
シグナルまたは FFmpeg の終了で逆順に解放する。

状態遷移:
    idle → browser_starting → browser_ready → transcoding
         → shutting_down → terminated
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum

from web_rtmp_stream.audio import AudioPlan, resolve_audio_plan
from web_rtmp_stream.browser import BrowserSession
from web_rtmp_stream.config import SessionConfig
from web_rtmp_stream.ffmpeg_publisher import FFmpegPublisher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SessionState(str, Enum):
    IDLE = "idle"
    BROWSER_STARTING = "browser_starting"
    BROWSER_READY = "browser_ready"
    TRANSCODING = "transcoding"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class RestreamSession:
    """1つのリストリームセッション.

    ブラウザ・ページ・音声プラン・FFmpeg プロセスはこのクラスだけが保持する。
    シグナルハンドラは request_stop() を呼ぶだけで、解放は run() 側で行う。
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        browser: BrowserSession | None = None,
        publisher: FFmpegPublisher | None = None,
    ):
        self._config = config
        self._browser = browser or BrowserSession(config)
        self._publisher = publisher or FFmpegPublisher(config)
        self._audio_plan: AudioPlan | None = None
        self._state = SessionState.IDLE
        self._stop_requested = asyncio.Event()
        self._stop_reason: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def audio_plan(self) -> AudioPlan | None:
        return self._audio_plan

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def _set_state(self, state: SessionState) -> None:
        logger.info("Session state: %s -> %s", self._state.value, state.value)
        self._state = state

    def request_stop(self, reason: str = "stop requested") -> None:
        """シャットダウンを要求する（シグナルハンドラから呼ばれる）.

        実行中のステップは中断せず、完了を待ってから解放に移る。
        """
        if self._stop_requested.is_set():
            logger.info("Shutdown already in progress, ignoring %s", reason)
            return
        logger.info("Received %s, shutting down gracefully", reason)
        self._stop_reason = reason
        self._stop_requested.set()

    async def run(self, *, install_signal_handlers: bool = True) -> int:
        """セッションを実行し、プロセス終了コードを返す.

        Returns:
            0: シグナル等による正常停止
            1: ブラウザ / FFmpeg の起動失敗、または FFmpeg の予期しない終了
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError(f"Cannot run session in {self._state.value} state")

        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            for sig in _STOP_SIGNALS:
                loop.add_signal_handler(sig, self.request_stop, sig.name)

        self._log_settings()
        try:
            if not await self._start():
                return EXIT_FAILURE
            if self._stop_requested.is_set():
                return EXIT_OK
            return await self._wait_for_exit()
        finally:
            await self.shutdown()
            if install_signal_handlers:
                for sig in _STOP_SIGNALS:
                    loop.remove_signal_handler(sig)

    def _log_settings(self) -> None:
        c = self._config
        logger.info("Starting restream session")
        logger.info("Audio source: %s", c.audio_mode.value)
        logger.info("Video encoder: %s", c.video_encoder.value)
        logger.info("Web URL: %s", c.web_url)
        logger.info("RTMP URL: %s", c.rtmp_url)
        logger.info("Screen size: %s", c.resolution)
        logger.info("Framerate: %dfps", c.framerate)

    async def _start(self) -> bool:
        """起動シーケンス. 失敗時は False.

        停止要求があれば、完了したステップの直後で打ち切る。
        """
        try:
            self._set_state(SessionState.BROWSER_STARTING)
            page = await self._browser.start()
            self._set_state(SessionState.BROWSER_READY)
            if self._stop_requested.is_set():
                return True

            self._audio_plan = await resolve_audio_plan(self._config, page)
            if self._stop_requested.is_set():
                return True

            await self._publisher.start(self._audio_plan)
            self._set_state(SessionState.TRANSCODING)
            logger.info("FFmpeg started - X11 screen capture in progress")
            return True
        except Exception:
            logger.exception("Error starting restream session")
            return False

    async def _wait_for_exit(self) -> int:
        """停止要求か FFmpeg の終了のどちらか早い方を待つ."""
        exit_task = asyncio.create_task(self._publisher.wait(), name="ffmpeg-wait")
        stop_task = asyncio.create_task(self._stop_requested.wait(), name="stop-wait")
        try:
            done, _pending = await asyncio.wait(
                {exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (exit_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exit_task, stop_task, return_exceptions=True)

        if stop_task in done:
            return EXIT_OK

        exc = exit_task.exception()
        if exc is not None:
            logger.error("Error waiting for FFmpeg: %s", exc)
        else:
            logger.error("FFmpeg exited unexpectedly with code %d", exit_task.result())
        return EXIT_FAILURE

    async def shutdown(self) -> None:
        """保持リソースを解放する.

        順序: 音声 → FFmpeg → ページ → ブラウザ。
        各ステップは独立 try/except。2回目以降の呼び出しは何もしない。
        """
        if self._state in (SessionState.SHUTTING_DOWN, SessionState.TERMINATED):
            return

        self._set_state(SessionState.SHUTTING_DOWN)
        logger.info("Cleaning up resources")

        if self._audio_plan is not None:
            logger.info("Releasing audio source (%s)", self._audio_plan.kind.value)
            self._audio_plan = None

        try:
            await self._publisher.stop()
        except Exception:
            logger.exception("Error stopping FFmpeg")

        try:
            await self._browser.close()
        except Exception:
            logger.exception("Error closing browser")

        self._set_state(SessionState.TERMINATED)
