from worker.quality_profiles import QualityProfile


def build_hls_master(variants: list[tuple[QualityProfile, str]]) -> str:
    """Master playlist listing one stream per (profile, relative playlist path)."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for profile, playlist in variants:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},RESOLUTION={profile.resolution}")
        lines.append(playlist)
    return "\n".join(lines) + "\n"
