"""Playwright Chromium セッション管理.

Xvfb 仮想ディスプレイ上に (headless ではない) Chromium を起動し、
対象ページを開いてキャプチャ解像度に合わせる。
Xvfb 自体の起動は外部 (entrypoint) に任せる。
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess

from playwright.async_api import Browser, Page, Playwright, async_playwright

from web_rtmp_stream.config import SessionConfig

logger = logging.getLogger(__name__)

# Chromium 起動引数（ウィンドウサイズ・ディスプレイは起動時に追加）
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-logging",
    "--disable-domain-reliability",
    "--disable-notifications",
    "--no-first-run",
    "--kiosk",
    # レンダリングを間引かせない
    "--autoplay-policy=no-user-gesture-required",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-frame-rate-limit",
    "--disable-gpu-vsync",
    # GPU / コンポジタ
    "--ignore-gpu-blocklist",
    "--enable-gpu-rasterization",
    "--enable-accelerated-2d-canvas",
    "--enable-accelerated-video-decode",
    "--enable-zero-copy",
    "--enable-webgl",
    "--force-device-scale-factor=1",
    # ローカルコンテンツ向けにメディア・セキュリティ制限を緩める
    "--allow-running-insecure-content",
    "--disable-web-security",
    "--enable-usermedia-screen-capturing",
    "--allow-http-screen-capture",
    "--enable-features=PulseAudio",
]


class BrowserLaunchError(RuntimeError):
    """ブラウザ起動またはページ遷移の失敗."""


def check_display(display: str) -> bool:
    """X11 ディスプレイが利用可能か確認する.

    Args:
        display: チェックするディスプレイ (例: ":99")

    Returns:
        ディスプレイが利用可能なら True
    """
    try:
        result = subprocess.run(
            ["xdpyinfo", "-display", display],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


class BrowserSession:
    """1つのブラウザ + ページを管理する.

    Usage:
        browser = BrowserSession(config)
        page = await browser.start()
        ...
        await browser.close()
    """

    def __init__(self, config: SessionConfig):
        self._config = config
        self._pw: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    @property
    def page(self) -> Page | None:
        return self._page

    @property
    def is_open(self) -> bool:
        return self._pw is not None

    def _launch_args(self) -> list[str]:
        c = self._config
        return [
            f"--display={c.display}",
            *CHROMIUM_ARGS,
            f"--window-size={c.width},{c.height}",
            "--window-position=0,0",
        ]

    def _launch_env(self) -> dict[str, str]:
        return {
            **os.environ,
            "DISPLAY": self._config.display,
            "PULSE_SERVER": self._config.pulse_server,
        }

    async def start(self) -> Page:
        """ブラウザを起動して対象ページを開く.

        途中で失敗しても作成済みのハンドルは保持する（close() で解放）。

        Returns:
            表示中のページ

        Raises:
            BrowserLaunchError: 起動またはページ遷移に失敗した場合
        """
        if self._pw is not None:
            raise RuntimeError("BrowserSession is already started")

        c = self._config
        if not check_display(c.display):
            logger.warning("X display %s is not reachable, launching anyway", c.display)

        logger.info("Starting Chromium on display %s (%s)", c.display, c.resolution)
        try:
            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=False,
                executable_path=c.browser_executable,
                ignore_default_args=["--enable-automation"],
                args=self._launch_args(),
                env=self._launch_env(),
            )
            logger.info("Browser launched successfully")

            self._page = await self._browser.new_page(
                viewport={"width": c.width, "height": c.height}
            )
            logger.info("New page created (viewport=%s)", c.resolution)

            logger.info("Navigating to: %s", c.web_url)
            await self._page.goto(
                c.web_url,
                wait_until="domcontentloaded",
                timeout=c.navigation_timeout * 1000,
            )
        except Exception as e:
            raise BrowserLaunchError(f"Browser setup failed: {e}") from e

        logger.info("Page loaded successfully")

        # video/audio 要素の初期化を待つ
        await asyncio.sleep(c.settle_delay)
        logger.info("Browser setup complete")
        return self._page

    async def close(self) -> None:
        """ページ → ブラウザ → Playwright の順に解放する.

        各ステップは独立 try/except（1つの失敗で他が止まらない）。
        何度呼んでもよい。
        """
        page, self._page = self._page, None
        browser, self._browser = self._browser, None
        pw, self._pw = self._pw, None

        if page is not None:
            try:
                await page.close()
                logger.info("Page closed")
            except Exception:
                logger.exception("Error closing page")

        if browser is not None:
            try:
                await browser.close()
                logger.info("Browser closed")
            except Exception:
                logger.exception("Error closing browser")

        if pw is not None:
            try:
                await pw.stop()
                logger.info("Playwright stopped")
            except Exception:
                logger.exception("Error stopping playwright")
