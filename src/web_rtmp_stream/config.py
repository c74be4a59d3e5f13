"""リストリーム設定.

起動時に環境変数から SessionConfig を一度だけ構築する。
構築後は不変で、各コンポーネントに明示的に渡す。
"""

import logging
import os
from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# 未設定の場合は起動しない
REQUIRED_ENV = ("WEB_URL", "RTMP_URL")


class AudioMode(str, Enum):
    """音声ソースの選択."""

    BROWSER = "browser"  # ページ音声をシステム音声としてキャプチャ
    ICECAST = "icecast"  # 外部ストリームを取り込む
    SILENT = "silent"


class VideoEncoder(str, Enum):
    """映像エンコーダの選択."""

    SOFTWARE = "software"  # libx264
    VAAPI = "vaapi"  # h264_vaapi
    NVENC = "nvenc"  # h264_nvenc


class ConfigError(ValueError):
    """設定エラー（起動時に致命的）."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class SessionConfig(BaseModel):
    """1セッション分の起動パラメータ.

    フィールドの alias は環境変数名と一致する。
    テストなどではフィールド名でも構築できる。

    Attributes:
        web_url: 表示するページの URL
        rtmp_url: 配信先 RTMP URL
        audio_mode: 音声ソース
        ice_url: 外部音声ストリーム URL (audio_mode=icecast のとき使用)
        width: キャプチャ幅 (px)
        height: キャプチャ高さ (px)
        framerate: フレームレート (fps)
        preset: libx264 プリセット
        video_encoder: 映像エンコーダ
        vaapi_device: VAAPI デバイスパス
        display: X11 ディスプレイ (例: ":99")
        pulse_server: ブラウザに渡す PulseAudio サーバ
        browser_executable: Chromium 実行ファイル (None なら Playwright 同梱版)
        ffmpeg_path: ffmpeg 実行ファイル
        thread_queue_size: FFmpeg 入力ごとのスレッドキュー長
        navigation_timeout: ページ遷移タイムアウト (秒)
        settle_delay: 遷移後にメディア初期化を待つ時間 (秒)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    web_url: str = Field(alias="WEB_URL", min_length=1)
    rtmp_url: str = Field(alias="RTMP_URL", min_length=1)
    audio_mode: AudioMode = Field(AudioMode.SILENT, alias="AUDIO_SOURCE")
    ice_url: str | None = Field(None, alias="ICE_URL")
    width: int = Field(854, alias="SCREEN_WIDTH", gt=0)
    height: int = Field(480, alias="SCREEN_HEIGHT", gt=0)
    framerate: int = Field(30, alias="FRAMERATE", gt=0)
    preset: str = Field("veryfast", alias="FFMPEG_PRESET")
    video_encoder: VideoEncoder = Field(VideoEncoder.SOFTWARE, alias="VIDEO_ENCODER")
    vaapi_device: str = Field("/dev/dri/renderD128", alias="VAAPI_DEVICE")
    display: str = Field(":99", alias="DISPLAY")
    pulse_server: str = Field("unix:/tmp/pulse-socket", alias="PULSE_SERVER")
    browser_executable: str | None = Field(None, alias="BROWSER_EXECUTABLE_PATH")
    ffmpeg_path: str = Field("ffmpeg", alias="FFMPEG_PATH")
    thread_queue_size: int = Field(512, alias="THREAD_QUEUE_SIZE", gt=0)
    navigation_timeout: float = Field(60.0, alias="NAVIGATION_TIMEOUT", gt=0, allow_inf_nan=False)
    settle_delay: float = Field(2.0, alias="SETTLE_DELAY", ge=0, allow_inf_nan=False)

    @field_validator("audio_mode", mode="before")
    @classmethod
    def _normalize_audio_mode(cls, value: object) -> AudioMode:
        if isinstance(value, AudioMode):
            return value
        name = str(value).strip().lower()
        try:
            return AudioMode(name)
        except ValueError:
            logger.warning("Unknown audio source: %s, falling back to silence", value)
            return AudioMode.SILENT

    @field_validator("video_encoder", mode="before")
    @classmethod
    def _normalize_video_encoder(cls, value: object) -> VideoEncoder:
        if isinstance(value, VideoEncoder):
            return value
        name = str(value).strip().lower()
        try:
            return VideoEncoder(name)
        except ValueError:
            logger.warning("Unknown video encoder: %s, using software", value)
            return VideoEncoder.SOFTWARE

    @property
    def resolution(self) -> str:
        """解像度 (例: '854x480')."""
        return f"{self.width}x{self.height}"

    @property
    def gop_size(self) -> int:
        """2秒分の GOP サイズ (フレーム数)."""
        return self.framerate * 2


def _env_names() -> list[str]:
    return [f.alias for f in SessionConfig.model_fields.values() if f.alias]


def load_config(environ: Mapping[str, str] | None = None) -> SessionConfig:
    """環境変数から SessionConfig を構築する.

    AUDIO_SOURCE が未指定の場合、ICE_URL があれば icecast、なければ silent。

    Args:
        environ: 読み取る環境変数 (None の場合は os.environ)

    Returns:
        構築した SessionConfig

    Raises:
        ConfigError: 必須項目が欠けている、または値が不正な場合
    """
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_ENV if not env.get(name)]
    if missing:
        raise ConfigError(
            f"Missing required environment variables: {', '.join(missing)}",
            missing=missing,
        )

    raw = {name: env[name] for name in _env_names() if env.get(name)}
    if "AUDIO_SOURCE" not in raw:
        raw["AUDIO_SOURCE"] = AudioMode.ICECAST if raw.get("ICE_URL") else AudioMode.SILENT

    try:
        return SessionConfig.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
