# streamguard/mapper.py

from streamguard.classifier import classify_platform_cached
from streamguard.schemas import SessionSnapshot, UNKNOWN


def format_quality_string(bitrate: int, source_bitrate: int, is_transcode: bool) -> str:
    """
    Human readable quality for a stream.

    Prefers the delivered bitrate, falls back to the source bitrate, then to
    the transcode decision alone.
    """
    effective = bitrate or source_bitrate
    if effective:
        return f"{int(effective / 1_000_000 + 0.5)}Mbps"
    return "Transcoding" if is_transcode else "Direct"


def snapshot_to_columns(snapshot: SessionSnapshot) -> dict:
    """Session columns refreshed from a snapshot on every poll"""
    platform = classify_platform_cached(snapshot.platform, snapshot.product, snapshot.device)

    return {
        "rating_key": snapshot.rating_key,
        "external_session_id": snapshot.external_session_id,
        "media_title": snapshot.media_title,
        "media_type": snapshot.media_type,
        "progress_ms": snapshot.progress_ms,
        "total_duration_ms": snapshot.total_duration_ms,
        "ip_address": snapshot.ip_address,
        "geo_city": snapshot.geo_city,
        "geo_region": snapshot.geo_region,
        "geo_country": snapshot.geo_country,
        "geo_lat": snapshot.geo_lat,
        "geo_lon": snapshot.geo_lon,
        "player_name": snapshot.player_name,
        "device_id": snapshot.device_id,
        "product": snapshot.product or UNKNOWN,
        "device": snapshot.device or UNKNOWN,
        "platform": platform,
        "quality": format_quality_string(snapshot.bitrate, snapshot.source_bitrate, snapshot.is_transcode),
        "is_transcode": snapshot.is_transcode,
        "video_decision": snapshot.video_decision,
        "audio_decision": snapshot.audio_decision,
        "bitrate": snapshot.bitrate or snapshot.source_bitrate or None,
    }
