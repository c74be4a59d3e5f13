"""web-rtmp-stream: Web page restreaming via Xvfb + Playwright + FFmpeg RTMP."""

from web_rtmp_stream.audio import AudioPlan, AudioPlanKind, resolve_audio_plan
from web_rtmp_stream.browser import BrowserSession
from web_rtmp_stream.config import SessionConfig, load_config
from web_rtmp_stream.ffmpeg_publisher import FFmpegPublisher, build_ffmpeg_args
from web_rtmp_stream.session import RestreamSession, SessionState

__all__ = [
    "AudioPlan",
    "AudioPlanKind",
    "BrowserSession",
    "FFmpegPublisher",
    "RestreamSession",
    "SessionConfig",
    "SessionState",
    "build_ffmpeg_args",
    "load_config",
    "resolve_audio_plan",
]
