"""Audio transcoding for WhatsApp voice messages (OGG container, Opus codec)."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path

from app.config import settings
from app.logging import get_logger
from app.services.inbox.errors import TranscodeFailed

logger = get_logger(__name__)

OGG_OPUS_MIME = "audio/ogg"

# Mono 48 kHz VoIP-tuned Opus, the profile WhatsApp renders as a voice note.
_OPUS_ARGS = [
    "-vn",
    "-ac", "1",
    "-ar", "48000",
    "-c:a", "libopus",
    "-b:a", "32k",
    "-vbr", "on",
    "-application", "voip",
]


def is_ogg_opus(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    base = mime_type.split(";", 1)[0].strip().lower()
    return base == "audio/ogg" and "opus" in mime_type.lower()


def transcode_to_ogg_opus(content: bytes, source_name: str = "audio") -> bytes:
    """Transcode arbitrary audio bytes to OGG/Opus with ffmpeg.

    Raises:
        TranscodeFailed: ffmpeg is missing, times out, or exits non-zero
    """
    if not content:
        raise TranscodeFailed("Audio file is empty")
    suffix = Path(source_name).suffix or ".bin"
    with tempfile.TemporaryDirectory(prefix="inbox-audio-") as workdir:
        src_path = Path(workdir) / f"source{suffix}"
        dst_path = Path(workdir) / "voice.ogg"
        src_path.write_bytes(content)
        cmd = [settings.ffmpeg_binary, "-y", "-i", str(src_path), *_OPUS_ARGS, str(dst_path)]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                timeout=settings.transcode_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            logger.error("audio_transcode_ffmpeg_missing binary=%s", settings.ffmpeg_binary)
            raise TranscodeFailed("Audio conversion is unavailable on this server") from exc
        except subprocess.TimeoutExpired as exc:
            logger.error("audio_transcode_timeout seconds=%s", settings.transcode_timeout)
            raise TranscodeFailed("Audio conversion timed out") from exc

        if result.returncode != 0 or not dst_path.exists():
            stderr = (result.stderr or b"").decode("utf-8", "ignore")[-500:]
            logger.error(
                "audio_transcode_failed returncode=%s stderr=%s", result.returncode, stderr
            )
            raise TranscodeFailed("Audio conversion failed", vendor_error=None)
        output = dst_path.read_bytes()
    logger.info("audio_transcoded input_bytes=%s output_bytes=%s", len(content), len(output))
    return output
