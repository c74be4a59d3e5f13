"""音声ソース決定のテスト.

Playwright の Page はモックし、evaluate の戻り値でページ状態を再現する。
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from web_rtmp_stream.audio import (
    AudioPlan,
    AudioPlanKind,
    probe_page_audio,
    resolve_audio_plan,
)
from web_rtmp_stream.config import AudioMode, SessionConfig


def _config(**kwargs) -> SessionConfig:
    return SessionConfig(
        web_url="https://example.com", rtmp_url="rtmp://host/live/key", **kwargs
    )


def _page(info=None, *, error: Exception | None = None) -> MagicMock:
    page = MagicMock()
    page.wait_for_function = AsyncMock()
    if error is not None:
        page.evaluate = AsyncMock(side_effect=error)
    else:
        page.evaluate = AsyncMock(return_value=info)
    return page


NO_AUDIO = {"audioContextState": "suspended", "elementCount": 0, "elements": []}
ONE_VIDEO = {
    "audioContextState": "suspended",
    "elementCount": 1,
    "elements": [
        {
            "tagName": "VIDEO",
            "src": "https://example.com/a.mp4",
            "paused": False,
            "muted": False,
            "autoplay": True,
        }
    ],
}
RUNNING_CONTEXT = {"audioContextState": "running", "elementCount": 0, "elements": []}


class TestSilentMode:
    @pytest.mark.asyncio
    async def test_silent(self):
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.SILENT), None)
        assert plan == AudioPlan.silent()


class TestIcecastMode:
    @pytest.mark.asyncio
    async def test_uses_ice_url(self):
        config = _config(audio_mode=AudioMode.ICECAST, ice_url="http://radio.example.com/live")
        plan = await resolve_audio_plan(config, None)
        assert plan.kind is AudioPlanKind.URL
        assert plan.url == "http://radio.example.com/live"

    @pytest.mark.asyncio
    async def test_without_url_falls_back_to_silent(self):
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.ICECAST), None)
        assert plan.kind is AudioPlanKind.SILENT


class TestBrowserMode:
    @pytest.mark.asyncio
    async def test_no_media_is_silent(self):
        page = _page(NO_AUDIO)
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.BROWSER), page)
        assert plan.kind is AudioPlanKind.SILENT
        page.evaluate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_media_element_is_live(self):
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.BROWSER), _page(ONE_VIDEO))
        assert plan == AudioPlan.live()

    @pytest.mark.asyncio
    async def test_running_audio_context_is_live(self):
        plan = await resolve_audio_plan(
            _config(audio_mode=AudioMode.BROWSER), _page(RUNNING_CONTEXT)
        )
        assert plan.kind is AudioPlanKind.LIVE

    @pytest.mark.asyncio
    async def test_evaluate_failure_falls_back_to_silent(self):
        page = _page(error=RuntimeError("Execution context was destroyed"))
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.BROWSER), page)
        assert plan.kind is AudioPlanKind.SILENT

    @pytest.mark.asyncio
    async def test_ready_timeout_falls_back_to_silent(self):
        page = _page(ONE_VIDEO)
        page.wait_for_function = AsyncMock(side_effect=TimeoutError("Timeout 10000ms exceeded"))
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.BROWSER), page)
        assert plan.kind is AudioPlanKind.SILENT
        page.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_page_falls_back_to_silent(self):
        plan = await resolve_audio_plan(_config(audio_mode=AudioMode.BROWSER), None)
        assert plan.kind is AudioPlanKind.SILENT


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_result(self):
        probe = await probe_page_audio(_page(ONE_VIDEO))
        assert probe.ok
        assert probe.has_audio
        assert probe.context_state == "suspended"
        assert probe.element_count == 1
        assert probe.elements[0]["tagName"] == "VIDEO"

    @pytest.mark.asyncio
    async def test_probe_error_is_returned(self):
        probe = await probe_page_audio(_page(error=RuntimeError("boom")))
        assert not probe.ok
        assert not probe.has_audio
        assert probe.error == "boom"

    @pytest.mark.asyncio
    async def test_probe_passes_ready_timeout_in_ms(self):
        page = _page(NO_AUDIO)
        await probe_page_audio(page, ready_timeout=2.5)
        _args, kwargs = page.wait_for_function.call_args
        assert kwargs["timeout"] == 2500
