"""FFmpeg x11grab → RTMP パブリッシャ.

Xvfb 仮想ディスプレイと AudioPlan で決まった音声を FFmpeg で取り込み、
H.264 + AAC の FLV として RTMP に送出する。
"""

import asyncio
import logging
import re
import signal

from web_rtmp_stream.audio import AudioPlan, AudioPlanKind
from web_rtmp_stream.config import SessionConfig, VideoEncoder

logger = logging.getLogger(__name__)

# FFmpeg stdout/stderr 読み取りチャンクサイズ
READ_CHUNK_SIZE = 4 * 1024

# 改行のない出力はこの長さで1行として出す
MAX_LINE_BYTES = READ_CHUNK_SIZE * 16

# 進捗行は \r 区切りで出力される
_LINE_SPLIT = re.compile(rb"[\r\n]+")

# 全エンコーダ共通の出力レート制御
MAX_RATE = "3000k"
BUF_SIZE = "6000k"

NVENC_BITRATE = "3000k"
VAAPI_QP = 20

AUDIO_BITRATE = "128k"
SILENT_SAMPLE_RATE = 44100

# SIGTERM 後に SIGKILL するまでの猶予 (秒)
STOP_TIMEOUT = 5.0


class TranscoderError(RuntimeError):
    """FFmpeg の起動失敗."""


def _x11grab_input(display: str) -> str:
    """x11grab 入力名. スクリーン番号がなければ .0 を付ける."""
    if "." in display.rsplit(":", 1)[-1]:
        return display
    return f"{display}.0"


def _video_input_args(c: SessionConfig) -> list[str]:
    return [
        "-thread_queue_size", str(c.thread_queue_size),
        "-f", "x11grab",
        "-framerate", str(c.framerate),
        "-video_size", c.resolution,
        "-draw_mouse", "0",
        "-i", _x11grab_input(c.display),
    ]


def _audio_input_args(c: SessionConfig, plan: AudioPlan) -> list[str]:
    if plan.kind is AudioPlanKind.LIVE:
        # PulseAudio 既定ソースを ALSA 経由で取り込む
        return [
            "-thread_queue_size", str(c.thread_queue_size),
            "-f", "alsa",
            "-i", "default",
        ]
    if plan.kind is AudioPlanKind.URL:
        return [
            "-thread_queue_size", str(c.thread_queue_size),
            "-i", plan.url,
        ]
    return [
        "-f", "lavfi",
        "-i", f"anullsrc=channel_layout=stereo:sample_rate={SILENT_SAMPLE_RATE}",
    ]


def _video_encoder_args(c: SessionConfig) -> list[str]:
    if c.video_encoder is VideoEncoder.VAAPI:
        return [
            "-vf", "format=nv12|vaapi,hwupload",
            "-c:v", "h264_vaapi",
            "-qp", str(VAAPI_QP),
            "-bf", "0",
        ]
    if c.video_encoder is VideoEncoder.NVENC:
        return [
            "-c:v", "h264_nvenc",
            "-preset", "p1",
            "-tune", "ull",
            "-rc", "cbr",
            "-b:v", NVENC_BITRATE,
            "-g", str(c.gop_size),
            "-zerolatency", "1",
            "-delay", "0",
        ]
    return [
        "-c:v", "libx264",
        "-preset", c.preset,
        "-tune", "zerolatency",
    ]


def build_ffmpeg_args(config: SessionConfig, plan: AudioPlan) -> list[str]:
    """FFmpeg の引数リストを構築する（プログラム名は含まない）.

    順序: グローバル → 映像入力 → 音声入力 → 映像エンコード → 共通出力。
    最後の引数は常に配信先 URL。
    """
    c = config
    args = ["-y"]
    if c.video_encoder is VideoEncoder.VAAPI:
        # hwupload のため入力より前に指定する
        args += ["-vaapi_device", c.vaapi_device]

    args += _video_input_args(c)
    args += _audio_input_args(c, plan)
    args += _video_encoder_args(c)
    args += [
        "-maxrate", MAX_RATE,
        "-bufsize", BUF_SIZE,
        "-pix_fmt", "yuv420p",
        "-r", str(c.framerate),
        "-vsync", "cfr",
        "-c:a", "aac",
        "-b:a", AUDIO_BITRATE,
        "-ac", "2",
        "-f", "flv",
        c.rtmp_url,
    ]
    return args


class FFmpegPublisher:
    """FFmpeg プロセスを管理し、画面 + 音声を RTMP に送出する.

    自動再起動は行わない。終了は wait() で一度だけ受け取る。

    Usage:
        publisher = FFmpegPublisher(config)
        await publisher.start(plan)
        code = await publisher.wait()
        await publisher.stop()
    """

    def __init__(self, config: SessionConfig):
        self._config = config
        self._process: asyncio.subprocess.Process | None = None
        self._log_tasks: list[asyncio.Task] = []

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, plan: AudioPlan) -> None:
        """FFmpeg プロセスを起動する.

        Raises:
            RuntimeError: 既に起動中の場合
            TranscoderError: プロセスを起動できなかった場合
        """
        if self._process is not None:
            raise RuntimeError("FFmpegPublisher is already started")

        cmd = [self._config.ffmpeg_path, *build_ffmpeg_args(self._config, plan)]
        logger.info("Starting FFmpeg with args: %s", " ".join(cmd))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscoderError(f"Failed to start FFmpeg: {e}") from e

        logger.info("FFmpeg started (PID=%d)", self._process.pid)

        self._log_tasks = [
            asyncio.create_task(self._forward_output(self._process.stdout, "stdout")),
            asyncio.create_task(self._forward_output(self._process.stderr, "stderr")),
        ]

    async def _forward_output(self, reader: asyncio.StreamReader | None, label: str) -> None:
        """FFmpeg の出力を1行ずつログに流す."""
        if reader is None:
            return
        pending = b""
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                *lines, pending = _LINE_SPLIT.split(pending + chunk)
                for line in lines:
                    self._log_line(label, line)
                if len(pending) >= MAX_LINE_BYTES:
                    self._log_line(label, pending)
                    pending = b""
            self._log_line(label, pending)
        except Exception:
            logger.exception("Error reading FFmpeg %s", label)

    @staticmethod
    def _log_line(label: str, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.info("FFmpeg %s: %s", label, text)

    async def wait(self) -> int:
        """FFmpeg の終了を待ち、終了コードを返す.

        Raises:
            RuntimeError: 起動していない場合
        """
        if self._process is None:
            raise RuntimeError("FFmpegPublisher is not started")

        code = await self._process.wait()
        await self._drain_logs()
        logger.info("FFmpeg process exited with code %d", code)
        return code

    async def _drain_logs(self) -> None:
        if not self._log_tasks:
            return
        _done, pending = await asyncio.wait(self._log_tasks, timeout=1.0)
        for task in pending:
            task.cancel()

    async def stop(self) -> None:
        """FFmpeg プロセスを停止する (SIGTERM → タイムアウト → SIGKILL).

        未起動・終了済みでも何もしない。何度呼んでもよい。
        """
        process, self._process = self._process, None
        if process is None:
            return

        pid = process.pid
        try:
            if process.returncode is not None:
                logger.debug("FFmpeg already exited (PID=%d)", pid)
                return

            logger.info("Stopping FFmpeg (PID=%d)", pid)
            try:
                process.send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
                    logger.info("FFmpeg exited gracefully (PID=%d)", pid)
                except asyncio.TimeoutError:
                    logger.warning(
                        "FFmpeg did not exit in %.0fs, sending SIGKILL (PID=%d)",
                        STOP_TIMEOUT,
                        pid,
                    )
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                logger.debug("FFmpeg already exited (PID=%d)", pid)
        finally:
            await self._drain_logs()
            self._log_tasks = []
