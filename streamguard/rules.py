# streamguard/rules.py

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from streamguard.schemas import (
    UNKNOWN,
    ConcurrentStreamsParams,
    DeviceVelocityParams,
    GeoRestrictionParams,
    ImpossibleTravelParams,
    InactiveUserParams,
    SimultaneousLocationsParams,
    parse_rule_params,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

MULTI_SESSION_RULE_TYPES = frozenset({"concurrent_streams", "simultaneous_locations"})

RULE_SEVERITY: Dict[str, str] = {
    "impossible_travel": "high",
    "simultaneous_locations": "warning",
    "device_velocity": "warning",
    "concurrent_streams": "low",
    "geo_restriction": "high",
    "inactive_user": "warning",
}

TRUST_SCORE_PENALTIES: Dict[str, int] = {
    "high": 20,
    "warning": 10,
    "low": 5,
}


@dataclass
class EvaluationResult:
    """Outcome of one rule for one session; `rule` is the rule that produced it"""
    violated: bool
    severity: str
    rule: Any
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def related_session_ids(self) -> List[str]:
        return list(self.data.get("relatedSessionIds") or [])


def is_multi_session_rule(rule_type: str) -> bool:
    return rule_type in MULTI_SESSION_RULE_TYPES


def get_trust_score_penalty(severity: str) -> int:
    return TRUST_SCORE_PENALTIES.get(severity, 0)


def does_rule_apply_to_user(rule, server_user_id: str) -> bool:
    """Global rules (no user) apply to everyone"""
    return rule.server_user_id is None or rule.server_user_id == server_user_id


def is_known(value: Optional[str]) -> bool:
    """Empty strings and the unknown sentinel never identify anything"""
    if value is None:
        return False
    value = str(value).strip()
    return bool(value) and value.lower() != UNKNOWN


def same_identifier(a: Optional[str], b: Optional[str]) -> bool:
    return is_known(a) and is_known(b) and a == b


def has_coordinates(session) -> bool:
    return session.geo_lat is not None and session.geo_lon is not None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def session_distance_km(a, b) -> float:
    return haversine_km(a.geo_lat, a.geo_lon, b.geo_lat, b.geo_lon)


def location_label(session) -> str:
    parts = [p for p in (session.geo_city, session.geo_country) if is_known(p)]
    return ", ".join(parts) if parts else UNKNOWN


Handler = Callable[[Any, Any, List[Any], List[Any]], Optional[Dict[str, Any]]]


class RuleEngine:
    """
    Evaluates one session against the configured rules.

    `recent` is the user's recent-session window. It is hardened before any
    rule sees it: the triggering session is removed by id, and the "active"
    view keeps only sessions whose stopped_at is NULL, whatever their state
    column says.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {
            "concurrent_streams": self._concurrent_streams,
            "simultaneous_locations": self._simultaneous_locations,
            "device_velocity": self._device_velocity,
            "impossible_travel": self._impossible_travel,
            "geo_restriction": self._geo_restriction,
        }

    def evaluate(self, current, rules: Sequence[Any], recent: Sequence[Any]) -> List[EvaluationResult]:
        """Return one violated result per rule that fires, each carrying its rule"""
        history = [s for s in recent if s.id != current.id]
        active = [s for s in history if s.stopped_at is None]

        results: List[EvaluationResult] = []
        for rule in rules:
            if not rule.is_active:
                continue

            handler = self._handlers.get(rule.type)
            if handler is None:
                # inactive_user runs from the inactivity scanner, not per poll
                continue

            try:
                params = parse_rule_params(rule.type, rule.params)
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping rule {rule.id} ({rule.type}): invalid params: {e}")
                continue

            data = handler(current, params, history, active)
            if data is None:
                continue

            results.append(EvaluationResult(
                violated=True,
                severity=RULE_SEVERITY[rule.type],
                rule=rule,
                data=data,
            ))

        return results

    def evaluate_inactive_user(
        self,
        rule,
        last_activity_at: Optional[datetime],
        now: datetime,
        acknowledged_activity_at: Optional[str] = None,
    ) -> Optional[EvaluationResult]:
        """
        Flag a user idle for at least `inactiveDays`.

        With sticky acknowledgement, a user already acknowledged at this exact
        last-activity value stays quiet until they stream again.
        """
        params: InactiveUserParams = parse_rule_params(rule.type, rule.params)
        inactive_days = int(params.inactive_days)
        if inactive_days <= 0 or last_activity_at is None:
            return None

        if now - last_activity_at < timedelta(days=inactive_days):
            return None

        last_activity_iso = last_activity_at.isoformat()
        if params.sticky_acknowledgement and acknowledged_activity_at == last_activity_iso:
            return None

        return EvaluationResult(
            violated=True,
            severity=RULE_SEVERITY["inactive_user"],
            rule=rule,
            data={
                "inactiveDays": inactive_days,
                "daysInactive": (now - last_activity_at).days,
                "lastActivityAt": last_activity_iso,
            },
        )

    # ------------------------------------------------------------------
    # Per-type handlers: return violation data, or None when not violated
    # ------------------------------------------------------------------

    def _concurrent_streams(self, current, params: ConcurrentStreamsParams, history, active):
        # A second row for the same device is a reconnect, not another stream
        others = [s for s in active if not same_identifier(s.device_id, current.device_id)]
        count = 1 + len(others)
        if count <= params.max_streams:
            return None

        return {
            "activeStreamCount": count,
            "maxStreams": params.max_streams,
            "relatedSessionIds": [s.id for s in others],
        }

    def _simultaneous_locations(self, current, params: SimultaneousLocationsParams, history, active):
        if not has_coordinates(current):
            return None

        located = [s for s in active if has_coordinates(s)]
        if not located:
            return None

        distances = {s.id: session_distance_km(current, s) for s in located}
        clusters = self._cluster_locations([current] + located, params.min_distance_km)

        if params.max_locations is not None:
            # Location budget: distance only decides what counts as one location
            if len(clusters) <= params.max_locations:
                return None
            own_cluster = {s.id for s in clusters[0]}
            related = [s for s in located if s.id not in own_cluster]
        else:
            related = [s for s in located if distances[s.id] >= params.min_distance_km]
            if not related:
                return None

        return {
            "locationCount": len(clusters),
            "locations": [location_label(cluster[0]) for cluster in clusters],
            "maxDistanceKm": round(max(distances.values()), 1),
            "minDistanceKm": params.min_distance_km,
            "relatedSessionIds": [s.id for s in related],
        }

    @staticmethod
    def _cluster_locations(sessions, radius_km: float) -> List[List[Any]]:
        """Greedy grouping: a session joins the first cluster whose anchor is within radius"""
        clusters: List[List[Any]] = []
        for session in sessions:
            for cluster in clusters:
                if session_distance_km(cluster[0], session) < radius_km:
                    cluster.append(session)
                    break
            else:
                clusters.append([session])
        return clusters

    def _device_velocity(self, current, params: DeviceVelocityParams, history, active):
        window_start = current.started_at - timedelta(hours=params.window_hours)
        in_window = [current] + [s for s in history if s.started_at >= window_start]

        attr = "ip_address" if params.count_by == "ip" else "device_id"
        seen = sorted({getattr(s, attr) for s in in_window if is_known(getattr(s, attr))})
        if len(seen) <= params.max_ips:
            return None

        return {
            "uniqueCount": len(seen),
            "countBy": params.count_by,
            "maxIps": params.max_ips,
            "windowHours": params.window_hours,
            "values": seen,
        }

    def _impossible_travel(self, current, params: ImpossibleTravelParams, history, active):
        if not has_coordinates(current):
            return None

        worst: Optional[Tuple[float, Any, float, float]] = None
        for other in history:
            # Roaming or a VPN switch moves one device around; that is not travel
            if same_identifier(other.device_id, current.device_id):
                continue
            if not has_coordinates(other):
                continue

            distance = session_distance_km(current, other)
            if distance <= 0:
                continue

            last_seen = other.stopped_at or other.started_at
            hours = abs((current.started_at - last_seen).total_seconds()) / 3600
            # Floor at one minute so the speed stays finite
            speed = distance / max(hours, 1 / 60)

            if speed > params.max_speed_kmh and (worst is None or speed > worst[0]):
                worst = (speed, other, distance, hours)

        if worst is None:
            return None

        speed, other, distance, hours = worst
        return {
            "previousSessionId": other.id,
            "previousLocation": location_label(other),
            "currentLocation": location_label(current),
            "distanceKm": round(distance, 1),
            "timeDiffHours": round(hours, 2),
            "calculatedSpeedKmh": round(speed, 1),
            "maxSpeedKmh": params.max_speed_kmh,
        }

    def _geo_restriction(self, current, params: GeoRestrictionParams, history, active):
        country = (current.geo_country or "").upper()
        if not is_known(country) or not params.countries:
            return None

        listed = country in params.countries
        if params.mode == "blocklist" and not listed:
            return None
        if params.mode == "allowlist" and listed:
            return None

        return {
            "country": country,
            "mode": params.mode,
            "countries": params.countries,
        }
