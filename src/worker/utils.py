import asyncio
import json
import os
from fractions import Fraction
from math import gcd
from pathlib import Path
import logging

from api_ingest.exceptions.exceptions import TranscodingError, UnsupportedMedia
from api_ingest.schema import VideoMetadataSchema
from worker.quality_profiles import QualityProfile, VIDEO_ENCODERS, AUDIO_ENCODERS

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 400
THUMBNAIL_HEIGHT = 225
SEGMENT_SECONDS = 10


def get_video_size(path) -> int:
    """Return the size of the file"""
    try:
        return os.path.getsize(path)
    except OSError as e:
        logger.error(f"Error getting size for file {path}: {e}")
        return -1


def thumbnail_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced timestamps strictly inside (0, duration)."""
    step = duration / (count + 1)
    return [round(step * (i + 1), 3) for i in range(count)]


def _parse_rate(value: str | None) -> float:
    if not value or value in ("0/0", "0"):
        return 0.0
    try:
        return round(float(Fraction(value)), 3)
    except (ValueError, ZeroDivisionError):
        return 0.0


def _aspect_ratio(stream: dict, width: int, height: int) -> str:
    ratio = stream.get("display_aspect_ratio")
    if ratio and ratio != "0:1":
        return ratio
    divisor = gcd(width, height) or 1
    return f"{width // divisor}:{height // divisor}"


def parse_probe_output(probe: dict, file_size: int) -> VideoMetadataSchema:
    streams = probe.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise UnsupportedMedia("No video stream found in source")
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    fmt = probe.get("format", {})

    width = int(video.get("width") or 0)
    height = int(video.get("height") or 0)
    duration = float(fmt.get("duration") or video.get("duration") or 0)
    return VideoMetadataSchema(
        duration=duration,
        width=width,
        height=height,
        fps=_parse_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
        bitrate=int(fmt.get("bit_rate") or video.get("bit_rate") or 0),
        codec=video.get("codec_name", "unknown"),
        audio_codec=audio.get("codec_name", "unknown") if audio else "none",
        file_size=file_size,
        aspect_ratio=_aspect_ratio(video, width, height),
    )


class FFmpegTranscoder:
    """Thin async wrapper over the ffmpeg and ffprobe command line tools."""

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe

    async def _run(self, cmd: list[str]) -> str:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodingError(f"Could not start {cmd[0]}: {e}") from e
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # a cancelled job must not leave ffmpeg running
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            tail = stderr.decode(errors="replace")[-500:]
            logger.error(f"FFmpeg error: {tail}")
            raise TranscodingError(f"{Path(cmd[0]).name} exited with code {process.returncode}: {tail}")
        return stdout.decode(errors="replace")

    async def probe(self, path: Path) -> VideoMetadataSchema:
        output = await self._run([
            self.ffprobe, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            str(path),
        ])
        try:
            probe = json.loads(output)
        except json.JSONDecodeError as e:
            raise UnsupportedMedia(f"Could not read probe output for {path.name}") from e
        return parse_probe_output(probe, get_video_size(path))

    async def extract_frame(self, source: Path, timestamp: float, output_path: Path) -> None:
        scale = (
            f"scale={THUMBNAIL_WIDTH}:{THUMBNAIL_HEIGHT}:force_original_aspect_ratio=increase,"
            f"crop={THUMBNAIL_WIDTH}:{THUMBNAIL_HEIGHT}"
        )
        await self._run([
            self.ffmpeg, "-y",
            "-ss", str(timestamp),
            "-i", str(source),
            "-frames:v", "1",
            "-vf", scale,
            "-q:v", "2",
            str(output_path),
        ])

    async def encode(
        self,
        source: Path,
        output_path: Path,
        profile: QualityProfile,
        video_codec: str = "h264",
        audio_codec: str = "aac",
    ) -> None:
        scale = (
            f"scale={profile.width}:{profile.height}:force_original_aspect_ratio=decrease,"
            "pad=ceil(iw/2)*2:ceil(ih/2)*2"
        )
        logger.info(f"Encoding {source.name} to {profile.quality.value}")
        await self._run([
            self.ffmpeg, "-y",
            "-i", str(source),
            "-vf", scale,
            "-c:v", VIDEO_ENCODERS[video_codec],
            "-preset", "fast",
            "-crf", str(profile.crf),
            "-maxrate", profile.video_bitrate,
            "-bufsize", f"{2 * int(profile.video_bitrate.rstrip('k'))}k",
            "-c:a", AUDIO_ENCODERS[audio_codec],
            "-b:a", profile.audio_bitrate,
            "-movflags", "+faststart",
            str(output_path),
        ])

    async def segment_hls(self, rendition: Path, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        playlist = output_dir / "playlist.m3u8"
        await self._run([
            self.ffmpeg, "-y",
            "-i", str(rendition),
            "-c", "copy",
            "-f", "hls",
            "-hls_time", str(SEGMENT_SECONDS),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / "segment_%03d.ts"),
            str(playlist),
        ])
        return playlist

    async def package_dash(self, renditions: list[Path], output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        manifest = output_dir / "manifest.mpd"
        cmd = [self.ffmpeg, "-y"]
        for rendition in renditions:
            cmd += ["-i", str(rendition)]
        for i in range(len(renditions)):
            cmd += ["-map", f"{i}:v:0"]
        # one audio track is enough, every rendition carries the same one
        cmd += ["-map", "0:a:0?"]
        cmd += [
            "-c", "copy",
            "-f", "dash",
            "-seg_duration", str(SEGMENT_SECONDS),
            "-use_template", "1",
            "-use_timeline", "1",
            "-adaptation_sets", "id=0,streams=v id=1,streams=a",
            str(manifest),
        ]
        await self._run(cmd)
        return manifest
