from datetime import timedelta

import pytest

from factories import BASE_TIME, BROOKLYN, LONDON, LOS_ANGELES, make_rule, make_session
from streamguard.rules import (
    RuleEngine,
    does_rule_apply_to_user,
    get_trust_score_penalty,
    haversine_km,
    is_known,
)


@pytest.fixture
def rule_engine():
    return RuleEngine()


def in_la(**overrides):
    return make_session(geo_city="Los Angeles", geo_lat=LOS_ANGELES[0], geo_lon=LOS_ANGELES[1], **overrides)


class TestHelpers:
    def test_haversine_new_york_to_los_angeles(self):
        distance = haversine_km(40.7128, -74.0060, 34.0522, -118.2437)
        assert 3900 < distance < 4000

    def test_unknown_and_empty_are_not_identifiers(self):
        assert is_known("device-a")
        assert not is_known("")
        assert not is_known("unknown")
        assert not is_known(None)

    def test_global_rule_applies_to_everyone(self):
        assert does_rule_apply_to_user(make_rule("geo_restriction"), "anyone")
        scoped = make_rule("geo_restriction", server_user_id="user-1")
        assert does_rule_apply_to_user(scoped, "user-1")
        assert not does_rule_apply_to_user(scoped, "user-2")

    def test_trust_penalties(self):
        assert get_trust_score_penalty("high") == 20
        assert get_trust_score_penalty("warning") == 10
        assert get_trust_score_penalty("low") == 5


class TestConcurrentStreams:
    def test_violation_over_limit(self, rule_engine):
        current = make_session(device_id="d1")
        others = [make_session(device_id="d2"), make_session(device_id="d3")]
        rule = make_rule("concurrent_streams", {"maxStreams": 2})

        results = rule_engine.evaluate(current, [rule], [current] + others)

        assert len(results) == 1
        assert results[0].severity == "low"
        assert results[0].data["activeStreamCount"] == 3
        assert set(results[0].related_session_ids) == {s.id for s in others}

    def test_current_session_not_counted_twice(self, rule_engine):
        current = make_session(device_id="d1")
        rule = make_rule("concurrent_streams", {"maxStreams": 1})
        assert rule_engine.evaluate(current, [rule], [current, current]) == []

    def test_stopped_session_with_stale_playing_state_ignored(self, rule_engine):
        current = make_session(device_id="d1")
        stale = make_session(device_id="d2", state="playing", stopped_at=BASE_TIME)
        rule = make_rule("concurrent_streams", {"maxStreams": 1})
        assert rule_engine.evaluate(current, [rule], [stale]) == []

    def test_same_device_reconnect_not_counted(self, rule_engine):
        current = make_session(device_id="d1")
        reconnect = make_session(device_id="d1")
        rule = make_rule("concurrent_streams", {"maxStreams": 1})
        assert rule_engine.evaluate(current, [rule], [reconnect]) == []

    def test_empty_device_ids_never_match(self, rule_engine):
        current = make_session(device_id="")
        other = make_session(device_id="")
        rule = make_rule("concurrent_streams", {"maxStreams": 1})
        results = rule_engine.evaluate(current, [rule], [other])
        assert len(results) == 1
        assert results[0].data["activeStreamCount"] == 2


class TestSimultaneousLocations:
    def test_far_apart_active_sessions(self, rule_engine):
        current = make_session(device_id="d1")
        other = in_la(device_id="d2")
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100})

        results = rule_engine.evaluate(current, [rule], [other])

        assert len(results) == 1
        assert results[0].severity == "warning"
        assert results[0].related_session_ids == [other.id]

    def test_nearby_sessions_ok(self, rule_engine):
        current = make_session(device_id="d1")
        other = make_session(device_id="d2", geo_lat=BROOKLYN[0], geo_lon=BROOKLYN[1])
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100})
        assert rule_engine.evaluate(current, [rule], [other]) == []

    def test_stopped_remote_session_ignored(self, rule_engine):
        current = make_session(device_id="d1")
        other = in_la(device_id="d2", stopped_at=BASE_TIME)
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100})
        assert rule_engine.evaluate(current, [rule], [other]) == []

    def test_within_location_budget(self, rule_engine):
        """Two far-apart locations fit a budget of three"""
        current = make_session(device_id="d1")
        other = in_la(device_id="d2")
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100, "maxLocations": 3})
        assert rule_engine.evaluate(current, [rule], [other]) == []

    def test_location_budget_exceeded(self, rule_engine):
        current = make_session(device_id="d1")
        nearby = make_session(device_id="d2", geo_lat=BROOKLYN[0], geo_lon=BROOKLYN[1])
        la = in_la(device_id="d3")
        london = make_session(device_id="d4", geo_city="London", geo_country="GB", geo_lat=LONDON[0], geo_lon=LONDON[1])
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100, "maxLocations": 2})

        results = rule_engine.evaluate(current, [rule], [nearby, la, london])

        assert len(results) == 1
        assert results[0].data["locationCount"] == 3
        # Sessions sharing the trigger's location are not part of the breach
        assert set(results[0].related_session_ids) == {la.id, london.id}

    def test_location_budget_met_by_nearby_sessions(self, rule_engine):
        current = make_session(device_id="d1")
        nearby = make_session(device_id="d2", geo_lat=BROOKLYN[0], geo_lon=BROOKLYN[1])
        rule = make_rule("simultaneous_locations", {"minDistanceKm": 100, "maxLocations": 1})
        assert rule_engine.evaluate(current, [rule], [nearby]) == []

    def test_missing_coordinates_ignored(self, rule_engine):
        current = make_session(geo_lat=None, geo_lon=None)
        other = in_la(device_id="d2")
        rule = make_rule("simultaneous_locations", {})
        assert rule_engine.evaluate(current, [rule], [other]) == []


class TestImpossibleTravel:
    def test_new_york_then_los_angeles_within_an_hour(self, rule_engine):
        previous = make_session(device_id="d1", started_at=BASE_TIME, stopped_at=BASE_TIME + timedelta(minutes=30))
        current = in_la(device_id="d2", started_at=BASE_TIME + timedelta(minutes=60))
        rule = make_rule("impossible_travel", {"maxSpeedKmh": 500})

        results = rule_engine.evaluate(current, [rule], [previous])

        assert len(results) == 1
        assert results[0].severity == "high"
        assert results[0].data["previousSessionId"] == previous.id
        assert results[0].data["calculatedSpeedKmh"] > 500

    def test_same_device_excluded(self, rule_engine):
        previous = make_session(device_id="d1", stopped_at=BASE_TIME + timedelta(minutes=30))
        current = in_la(device_id="d1", started_at=BASE_TIME + timedelta(minutes=60))
        rule = make_rule("impossible_travel", {})
        assert rule_engine.evaluate(current, [rule], [previous]) == []

    def test_plausible_flight(self, rule_engine):
        previous = make_session(device_id="d1", stopped_at=BASE_TIME)
        current = in_la(device_id="d2", started_at=BASE_TIME + timedelta(hours=10))
        rule = make_rule("impossible_travel", {"maxSpeedKmh": 900})
        assert rule_engine.evaluate(current, [rule], [previous]) == []


class TestDeviceVelocity:
    def test_too_many_ips_in_window(self, rule_engine):
        current = make_session(ip_address="1.1.1.3", started_at=BASE_TIME + timedelta(hours=2))
        history = [
            make_session(ip_address="1.1.1.1", stopped_at=BASE_TIME),
            make_session(ip_address="1.1.1.2", stopped_at=BASE_TIME),
        ]
        rule = make_rule("device_velocity", {"maxIps": 2, "windowHours": 24})

        results = rule_engine.evaluate(current, [rule], history)

        assert len(results) == 1
        assert results[0].data["uniqueCount"] == 3

    def test_sessions_outside_window_ignored(self, rule_engine):
        current = make_session(ip_address="1.1.1.3", started_at=BASE_TIME + timedelta(hours=48))
        history = [make_session(ip_address="1.1.1.1"), make_session(ip_address="1.1.1.2")]
        rule = make_rule("device_velocity", {"maxIps": 2, "windowHours": 24})
        assert rule_engine.evaluate(current, [rule], history) == []

    def test_count_by_device(self, rule_engine):
        current = make_session(ip_address="1.1.1.1", device_id="d3", started_at=BASE_TIME + timedelta(hours=1))
        history = [
            make_session(ip_address="1.1.1.1", device_id="d1", stopped_at=BASE_TIME),
            make_session(ip_address="1.1.1.1", device_id="d2", stopped_at=BASE_TIME),
        ]
        by_device = make_rule("device_velocity", {"maxIps": 2, "countBy": "device"})
        by_ip = make_rule("device_velocity", {"maxIps": 2, "countBy": "ip"})

        results = rule_engine.evaluate(current, [by_device, by_ip], history)

        assert [r.rule.id for r in results] == [by_device.id]
        assert results[0].data["countBy"] == "device"
        assert results[0].data["values"] == ["d1", "d2", "d3"]

    def test_unknown_values_not_counted(self, rule_engine):
        current = make_session(ip_address="")
        history = [make_session(ip_address="unknown"), make_session(ip_address="1.1.1.1")]
        rule = make_rule("device_velocity", {"maxIps": 1})
        assert rule_engine.evaluate(current, [rule], history) == []


class TestGeoRestriction:
    def test_blocklist_is_case_insensitive(self, rule_engine):
        rule = make_rule("geo_restriction", {"mode": "blocklist", "countries": ["us"]})
        results = rule_engine.evaluate(make_session(geo_country="US"), [rule], [])
        assert len(results) == 1
        assert results[0].data["country"] == "US"

    def test_allowlist(self, rule_engine):
        rule = make_rule("geo_restriction", {"mode": "allowlist", "countries": ["US"]})
        assert rule_engine.evaluate(make_session(geo_country="US"), [rule], []) == []
        assert len(rule_engine.evaluate(make_session(geo_country="DE"), [rule], [])) == 1

    def test_unknown_country_never_violates(self, rule_engine):
        rule = make_rule("geo_restriction", {"mode": "allowlist", "countries": ["US"]})
        assert rule_engine.evaluate(make_session(geo_country="unknown"), [rule], []) == []

    def test_empty_list_never_violates(self, rule_engine):
        rule = make_rule("geo_restriction", {"mode": "allowlist", "countries": []})
        assert rule_engine.evaluate(make_session(geo_country="DE"), [rule], []) == []


class TestEvaluate:
    def test_each_result_carries_its_own_rule(self, rule_engine):
        """Several violated rules must not all report the first rule"""
        current = make_session(device_id="d1", geo_country="DE")
        other = in_la(device_id="d2")
        geo = make_rule("geo_restriction", {"mode": "blocklist", "countries": ["DE"]})
        streams = make_rule("concurrent_streams", {"maxStreams": 1})

        results = rule_engine.evaluate(current, [geo, streams], [other])

        assert {r.rule.id: r.rule.type for r in results} == {geo.id: "geo_restriction", streams.id: "concurrent_streams"}

    def test_inactive_rule_skipped(self, rule_engine):
        rule = make_rule("geo_restriction", {"countries": ["US"]}, is_active=False)
        assert rule_engine.evaluate(make_session(), [rule], []) == []

    def test_invalid_params_skipped(self, rule_engine):
        bad = make_rule("concurrent_streams", {"maxStreams": "lots"})
        good = make_rule("geo_restriction", {"countries": ["US"]})
        results = rule_engine.evaluate(make_session(), [bad, good], [])
        assert [r.rule.id for r in results] == [good.id]

    def test_inactive_user_rule_not_run_per_poll(self, rule_engine):
        rule = make_rule("inactive_user", {"inactiveDays": 1})
        assert rule_engine.evaluate(make_session(), [rule], []) == []


class TestInactiveUser:
    def test_flags_after_threshold(self, rule_engine):
        rule = make_rule("inactive_user", {"inactiveDays": 30})
        result = rule_engine.evaluate_inactive_user(rule, BASE_TIME, BASE_TIME + timedelta(days=30))
        assert result is not None
        assert result.severity == "warning"
        assert result.data["daysInactive"] == 30
        assert result.data["lastActivityAt"] == BASE_TIME.isoformat()

    def test_not_yet_inactive(self, rule_engine):
        rule = make_rule("inactive_user", {"inactiveDays": 30})
        assert rule_engine.evaluate_inactive_user(rule, BASE_TIME, BASE_TIME + timedelta(days=29)) is None

    def test_sticky_acknowledgement_holds_until_new_activity(self, rule_engine):
        rule = make_rule("inactive_user", {"inactiveDays": 30, "stickyAcknowledgement": True})
        later = BASE_TIME + timedelta(days=60)

        assert rule_engine.evaluate_inactive_user(rule, BASE_TIME, later, BASE_TIME.isoformat()) is None

        newer_activity = BASE_TIME + timedelta(days=1)
        assert rule_engine.evaluate_inactive_user(rule, newer_activity, later, BASE_TIME.isoformat()) is not None

    def test_without_sticky_acknowledgement_flags_again(self, rule_engine):
        rule = make_rule("inactive_user", {"inactiveDays": 30})
        later = BASE_TIME + timedelta(days=60)
        assert rule_engine.evaluate_inactive_user(rule, BASE_TIME, later, BASE_TIME.isoformat()) is not None
