"""音声ソースの決定.

SessionConfig と表示中のページから AudioPlan を決める。
ページ音声の検出はベストエフォートで、失敗時は無音にフォールバックする。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from web_rtmp_stream.config import AudioMode, SessionConfig

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

# document.readyState === 'complete' を待つ上限 (秒)
READY_TIMEOUT = 10.0

# AudioContext の状態取得・再開と audio/video 要素の再生開始
_PROBE_SCRIPT = """
() => {
    let audioContextState = 'none';
    const AudioContextClass = window.AudioContext || window.webkitAudioContext;
    if (typeof AudioContextClass !== 'undefined') {
        const audioContext = new AudioContextClass();
        audioContextState = audioContext.state;
        audioContext.resume().catch(() => {});
    }

    const mediaElements = document.querySelectorAll('audio, video');
    const elements = Array.from(mediaElements).map(el => ({
        tagName: el.tagName,
        src: el.src || el.currentSrc,
        paused: el.paused,
        muted: el.muted,
        autoplay: el.autoplay,
    }));

    mediaElements.forEach(el => {
        if (el.play) {
            el.play().catch(() => {});
        }
    });

    return {
        audioContextState,
        elementCount: mediaElements.length,
        elements,
    };
}
"""


class AudioPlanKind(str, Enum):
    LIVE = "live"
    URL = "url"
    SILENT = "silent"


@dataclass(frozen=True)
class AudioPlan:
    """FFmpeg が音声をどこから取得するか.

    Attributes:
        kind: live (システム音声キャプチャ) / url (外部ストリーム) / silent
        url: kind=url のときの入力 URL
    """

    kind: AudioPlanKind
    url: str | None = None

    @classmethod
    def live(cls) -> AudioPlan:
        return cls(AudioPlanKind.LIVE)

    @classmethod
    def from_url(cls, url: str) -> AudioPlan:
        return cls(AudioPlanKind.URL, url)

    @classmethod
    def silent(cls) -> AudioPlan:
        return cls(AudioPlanKind.SILENT)


@dataclass
class AudioProbe:
    """ページ音声プローブの結果.

    error が設定されている場合、プローブは失敗している。
    """

    context_state: str = "none"
    element_count: int = 0
    elements: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_audio(self) -> bool:
        """音声アクティビティの兆候があるか."""
        return self.ok and (self.context_state == "running" or self.element_count > 0)


async def probe_page_audio(page: Page, ready_timeout: float = READY_TIMEOUT) -> AudioProbe:
    """ページの音声アクティビティを調べる.

    ページ評価の失敗は例外にせず、error 付きの AudioProbe として返す。

    Args:
        page: 表示中のページ
        ready_timeout: readyState 'complete' を待つ上限 (秒)

    Returns:
        AudioProbe
    """
    try:
        await page.wait_for_function(
            "() => document.readyState === 'complete'",
            timeout=ready_timeout * 1000,
        )
        info = await page.evaluate(_PROBE_SCRIPT)
    except Exception as e:
        return AudioProbe(error=str(e) or type(e).__name__)

    info = info or {}
    return AudioProbe(
        context_state=str(info.get("audioContextState", "none")),
        element_count=int(info.get("elementCount", 0)),
        elements=list(info.get("elements", [])),
    )


async def resolve_audio_plan(config: SessionConfig, page: Page | None) -> AudioPlan:
    """SessionConfig とページから AudioPlan を決定する.

    - silent: 常に無音
    - icecast: ICE_URL があればその URL、なければ無音 (警告)
    - browser: ページに AudioContext (running) か audio/video 要素があれば
      システム音声キャプチャ、なければ無音。プローブ失敗時も無音。

    いずれの場合も例外は送出しない。
    """
    logger.info("Setting up audio capture (source: %s)", config.audio_mode.value)

    if config.audio_mode is AudioMode.ICECAST:
        if config.ice_url:
            logger.info("Using Icecast audio from: %s", config.ice_url)
            return AudioPlan.from_url(config.ice_url)
        logger.warning("No ICE_URL provided, falling back to silent audio")
        return _silent()

    if config.audio_mode is AudioMode.BROWSER:
        return await _resolve_page_audio(page)

    return _silent()


async def _resolve_page_audio(page: Page | None) -> AudioPlan:
    if page is None:
        logger.warning("No page available for audio detection, falling back to silent audio")
        return _silent()

    logger.info("Setting up webpage audio capture via PulseAudio")
    probe = await probe_page_audio(page)
    if not probe.ok:
        logger.error("Failed to probe webpage audio: %s", probe.error)
        logger.info("Falling back to silent audio")
        return _silent()

    logger.info(
        "Audio info on page: %s",
        json.dumps(
            {
                "audioContextState": probe.context_state,
                "elementCount": probe.element_count,
                "elements": probe.elements,
            }
        ),
    )

    if probe.has_audio:
        logger.info(
            "Will capture browser audio via PulseAudio (AudioContext: %s, Elements: %d)",
            probe.context_state,
            probe.element_count,
        )
        return AudioPlan.live()

    logger.info("No audio context or elements found, falling back to silent audio")
    return _silent()


def _silent() -> AudioPlan:
    logger.info("Using silent audio track")
    return AudioPlan.silent()
