"""BrowserSession のテスト.

Playwright はモックし、起動引数・遷移・解放順序を確認する。
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from web_rtmp_stream.browser import BrowserLaunchError, BrowserSession
from web_rtmp_stream.config import SessionConfig


def _config(**kwargs) -> SessionConfig:
    kwargs.setdefault("settle_delay", 0)
    return SessionConfig(
        web_url="https://example.com/overlay", rtmp_url="rtmp://host/live/key", **kwargs
    )


class FakePlaywright:
    """async_playwright() の代わり."""

    def __init__(self):
        self.calls: list[str] = []
        self.page = MagicMock()
        self.page.goto = AsyncMock(side_effect=lambda *a, **k: self.calls.append("goto"))
        self.page.close = AsyncMock(side_effect=lambda: self.calls.append("page.close"))

        self.browser = MagicMock()
        self.browser.new_page = AsyncMock(return_value=self.page)
        self.browser.close = AsyncMock(side_effect=lambda: self.calls.append("browser.close"))

        self.pw = MagicMock()
        self.pw.chromium.launch = AsyncMock(return_value=self.browser)
        self.pw.stop = AsyncMock(side_effect=lambda: self.calls.append("pw.stop"))

        self.factory = MagicMock()
        self.factory.return_value.start = AsyncMock(return_value=self.pw)


@pytest.fixture
def fake_pw():
    fake = FakePlaywright()
    with (
        patch("web_rtmp_stream.browser.async_playwright", fake.factory),
        patch("web_rtmp_stream.browser.check_display", return_value=True),
    ):
        yield fake


class TestStart:
    @pytest.mark.asyncio
    async def test_start_opens_page(self, fake_pw):
        session = BrowserSession(_config(width=1280, height=720, display=":101"))
        page = await session.start()

        assert page is fake_pw.page
        assert session.page is fake_pw.page
        assert session.is_open

        kwargs = fake_pw.pw.chromium.launch.call_args.kwargs
        assert kwargs["headless"] is False
        assert kwargs["ignore_default_args"] == ["--enable-automation"]
        assert "--display=:101" in kwargs["args"]
        assert "--window-size=1280,720" in kwargs["args"]
        assert "--autoplay-policy=no-user-gesture-required" in kwargs["args"]
        assert kwargs["env"]["DISPLAY"] == ":101"
        assert kwargs["env"]["PULSE_SERVER"] == "unix:/tmp/pulse-socket"
        assert kwargs["executable_path"] is None

        fake_pw.browser.new_page.assert_awaited_once_with(
            viewport={"width": 1280, "height": 720}
        )
        goto = fake_pw.page.goto.call_args
        assert goto.args == ("https://example.com/overlay",)
        assert goto.kwargs["wait_until"] == "domcontentloaded"
        assert goto.kwargs["timeout"] == 60000

    @pytest.mark.asyncio
    async def test_settle_delay(self, fake_pw):
        session = BrowserSession(_config(settle_delay=2))
        with patch("web_rtmp_stream.browser.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await session.start()
        mock_sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_executable_path(self, fake_pw):
        session = BrowserSession(_config(browser_executable="/usr/bin/chromium"))
        await session.start()
        kwargs = fake_pw.pw.chromium.launch.call_args.kwargs
        assert kwargs["executable_path"] == "/usr/bin/chromium"

    @pytest.mark.asyncio
    async def test_missing_display_is_not_fatal(self, fake_pw):
        with patch("web_rtmp_stream.browser.check_display", return_value=False):
            page = await BrowserSession(_config()).start()
        assert page is fake_pw.page

    @pytest.mark.asyncio
    async def test_launch_failure(self, fake_pw):
        fake_pw.pw.chromium.launch.side_effect = RuntimeError("Executable doesn't exist")
        session = BrowserSession(_config())
        with pytest.raises(BrowserLaunchError, match="Executable doesn't exist"):
            await session.start()
        # Playwright は起動済みなので close() で解放できる
        assert session.is_open
        await session.close()
        assert fake_pw.calls == ["pw.stop"]

    @pytest.mark.asyncio
    async def test_navigation_failure_keeps_handles(self, fake_pw):
        fake_pw.page.goto.side_effect = TimeoutError("Timeout 60000ms exceeded")
        session = BrowserSession(_config())
        with pytest.raises(BrowserLaunchError):
            await session.start()
        assert session.page is fake_pw.page
        fake_pw.page.goto.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, fake_pw):
        session = BrowserSession(_config())
        await session.start()
        with pytest.raises(RuntimeError, match="already started"):
            await session.start()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_order(self, fake_pw):
        session = BrowserSession(_config())
        await session.start()
        await session.close()
        assert fake_pw.calls == ["goto", "page.close", "browser.close", "pw.stop"]
        assert not session.is_open
        assert session.page is None

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, fake_pw):
        session = BrowserSession(_config())
        await session.close()  # 未起動
        await session.start()
        await session.close()
        await session.close()
        fake_pw.browser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_continues_after_errors(self, fake_pw):
        session = BrowserSession(_config())
        await session.start()
        fake_pw.page.close.side_effect = RuntimeError("Target page has been closed")
        await session.close()
        fake_pw.browser.close.assert_awaited_once()
        fake_pw.pw.stop.assert_awaited_once()
