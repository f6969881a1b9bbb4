# streamguard/schemas.py

from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Literal, Optional, Type
from datetime import datetime

UNKNOWN = "unknown"

RULE_TYPES = (
    "impossible_travel",
    "simultaneous_locations",
    "device_velocity",
    "concurrent_streams",
    "geo_restriction",
    "inactive_user",
)

Severity = Literal["low", "warning", "high"]


class SessionSnapshot(BaseModel):
    """Normalized 'now playing' entry produced by a media-server adapter"""

    session_key: str
    rating_key: Optional[str] = None
    external_session_id: Optional[str] = None

    # User
    external_user_id: str
    username: str = "Unknown"

    # Media
    media_title: str = ""
    media_type: Literal["movie", "episode", "track"] = "movie"

    # Playback
    state: Literal["playing", "paused"] = "playing"
    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    last_paused_at: Optional[datetime] = None  # Exact pause time, when the provider reports it

    # Network / geo (already resolved by the lookup collaborator)
    ip_address: str = ""
    geo_city: str = UNKNOWN
    geo_region: str = UNKNOWN
    geo_country: str = UNKNOWN
    geo_lat: Optional[float] = None
    geo_lon: Optional[float] = None

    # Device
    player_name: str = UNKNOWN
    device_id: str = ""
    product: str = ""
    device: str = ""
    platform: str = ""

    # Quality
    is_transcode: bool = False
    video_decision: Optional[str] = None
    audio_decision: Optional[str] = None
    bitrate: int = 0
    source_bitrate: int = 0

    class Config:
        extra = "ignore"

    @field_validator("geo_city", "geo_region", "geo_country", "player_name", mode="before")
    @classmethod
    def _unknown_when_missing(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return UNKNOWN
        return value

    @field_validator("ip_address", "device_id", "product", "device", "platform", mode="before")
    @classmethod
    def _empty_when_missing(cls, value):
        return "" if value is None else value

    @field_validator("geo_lat", "geo_lon", mode="before")
    @classmethod
    def _drop_unparseable_coordinates(cls, value):
        if value is None or isinstance(value, (int, float)):
            return value
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value):
        return "paused" if str(value or "").lower() == "paused" else "playing"


class CycleResponse(BaseModel):
    status: str
    processed: int
    errors: int = 0


# ---------------------------------------------------------------------------
# Rule parameters, one model per rule type
# ---------------------------------------------------------------------------


class RuleParams(BaseModel):
    class Config:
        extra = "ignore"
        populate_by_name = True


class ConcurrentStreamsParams(RuleParams):
    max_streams: int = Field(default=3, alias="maxStreams", ge=1)


class SimultaneousLocationsParams(RuleParams):
    min_distance_km: float = Field(default=100.0, alias="minDistanceKm", ge=0)
    max_locations: Optional[int] = Field(default=None, alias="maxLocations", ge=1)


class DeviceVelocityParams(RuleParams):
    max_ips: int = Field(default=5, alias="maxIps", ge=1)
    window_hours: float = Field(default=24.0, alias="windowHours", gt=0)
    count_by: Literal["ip", "device"] = Field(default="ip", alias="countBy")


class ImpossibleTravelParams(RuleParams):
    max_speed_kmh: float = Field(default=500.0, alias="maxSpeedKmh", gt=0)


class GeoRestrictionParams(RuleParams):
    mode: Literal["blocklist", "allowlist"] = "blocklist"
    countries: List[str] = Field(default_factory=list)

    @field_validator("countries", mode="before")
    @classmethod
    def _upper(cls, value):
        return [str(c).upper() for c in (value or [])]


class InactiveUserParams(RuleParams):
    inactive_days: int = Field(default=30, alias="inactiveDays")
    sticky_acknowledgement: bool = Field(default=False, alias="stickyAcknowledgement")


RULE_PARAM_MODELS: Dict[str, Type[RuleParams]] = {
    "concurrent_streams": ConcurrentStreamsParams,
    "simultaneous_locations": SimultaneousLocationsParams,
    "device_velocity": DeviceVelocityParams,
    "impossible_travel": ImpossibleTravelParams,
    "geo_restriction": GeoRestrictionParams,
    "inactive_user": InactiveUserParams,
}


def parse_rule_params(rule_type: str, params: Optional[dict]) -> RuleParams:
    """Validate a stored params blob against the model for its rule type"""
    model = RULE_PARAM_MODELS.get(rule_type)
    if model is None:
        raise ValueError(f"Unknown rule type: {rule_type}")
    return model.model_validate(params or {})


# ---------------------------------------------------------------------------
# Public payloads (events and API responses)
# ---------------------------------------------------------------------------


class SessionOut(BaseModel):
    id: str
    server_id: str
    server_user_id: str
    session_key: str
    rating_key: Optional[str] = None
    media_title: str
    media_type: str
    state: str
    started_at: datetime
    stopped_at: Optional[datetime] = None
    paused_duration_ms: int = 0
    duration_ms: Optional[int] = None
    progress_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    watched: bool = False
    reference_id: Optional[str] = None
    ip_address: str = ""
    geo_city: Optional[str] = None
    geo_country: Optional[str] = None
    device: Optional[str] = None
    platform: Optional[str] = None
    quality: Optional[str] = None
    is_transcode: bool = False

    class Config:
        from_attributes = True


class ViolationOut(BaseModel):
    id: str
    rule_id: str
    rule_type: str
    server_user_id: str
    session_id: str
    severity: str
    data: dict = Field(default_factory=dict)
    acknowledged_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
