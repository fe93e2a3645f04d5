from dataclasses import dataclass

from api_ingest.models import Quality


@dataclass(frozen=True)
class QualityProfile:
    quality: Quality
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str
    crf: int

    @property
    def bandwidth(self) -> int:
        """Peak bits per second, as advertised in adaptive manifests."""
        return (_kbps(self.video_bitrate) + _kbps(self.audio_bitrate)) * 1000

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


def _kbps(value: str) -> int:
    return int(value.rstrip("k"))


QUALITY_PROFILES = {
    Quality.Q360P: QualityProfile(Quality.Q360P, 640, 360, "800k", "96k", 28),
    Quality.Q720P: QualityProfile(Quality.Q720P, 1280, 720, "2500k", "128k", 25),
    Quality.Q1080P: QualityProfile(Quality.Q1080P, 1920, 1080, "5000k", "192k", 23),
    Quality.Q4K: QualityProfile(Quality.Q4K, 3840, 2160, "15000k", "256k", 20),
}

VIDEO_ENCODERS = {"h264": "libx264", "h265": "libx265"}
AUDIO_ENCODERS = {"aac": "aac", "opus": "libopus"}
