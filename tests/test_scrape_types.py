"""
tests/test_scrape_types.py

Unit tests for the scraper data model: ScrapeConfig validation, the session
status machine, SessionState bookkeeping and ScrapeSummary.

Coverage
--------
- Name cleaning, case-insensitive dedupe and blank rejection
- Concurrency bounds (ints only, inclusive limits)
- Allowed and rejected status transitions
- Terminal sessions reject further mutation
- Progress percent rounding and clamping
- Carrier application to records with and without phones
"""

from __future__ import annotations

import pytest

from app.scraper.errors import InvalidSessionTransitionError, ScrapeConfigError
from app.scraper.types import (
    CARRIER_UNKNOWN,
    CARRIER_UNRESOLVED,
    BusinessRecord,
    CarrierResult,
    IndustryFailure,
    ScrapeConfig,
    ScrapeSummary,
    SessionState,
    SessionStatus,
    TownResult,
    check_transition,
)


def _town_result(town: str, *names: str, industry: str = "Plumbers") -> TownResult:
    return TownResult(
        town=town,
        businesses=[BusinessRecord(name=name, town=town, industry=industry) for name in names],
        industry_failures=[],
        duration_seconds=1.0,
    )


# ---------------------------------------------------------------------------
# ScrapeConfig
# ---------------------------------------------------------------------------


class TestScrapeConfig:
    def test_names_are_trimmed_and_deduped_case_insensitively(self) -> None:
        config = ScrapeConfig(
            towns=("  Polokwane ", "polokwane", "Tzaneen", ""),
            industries=("Plumbers", "  plumbers", "Dentists"),
        )
        assert config.towns == ("Polokwane", "Tzaneen")
        assert config.industries == ("Plumbers", "Dentists")

    def test_inner_whitespace_is_collapsed(self) -> None:
        config = ScrapeConfig(towns=("Port   Elizabeth",), industries=("Car  Wash",))
        assert config.towns == ("Port Elizabeth",)
        assert config.industries == ("Car Wash",)

    def test_defaults(self) -> None:
        config = ScrapeConfig(towns=("Polokwane",), industries=("Plumbers",))
        assert config.simultaneous_towns == 2
        assert config.simultaneous_industries == 2
        assert config.simultaneous_lookups == 2
        assert config.enable_provider_lookup is True

    @pytest.mark.parametrize("towns", [(), ("  ",), ("", " ")])
    def test_blank_towns_rejected(self, towns: tuple[str, ...]) -> None:
        with pytest.raises(ScrapeConfigError, match="towns"):
            ScrapeConfig(towns=towns, industries=("Plumbers",))

    def test_blank_industries_rejected(self) -> None:
        with pytest.raises(ScrapeConfigError, match="industries"):
            ScrapeConfig(towns=("Polokwane",), industries=())

    def test_plain_string_is_not_a_name_list(self) -> None:
        with pytest.raises(ScrapeConfigError):
            ScrapeConfig(towns="Polokwane", industries=("Plumbers",))  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        "field_name, value",
        [
            ("simultaneous_towns", 0),
            ("simultaneous_towns", 6),
            ("simultaneous_industries", 4),
            ("simultaneous_lookups", 0),
            ("simultaneous_lookups", 4),
        ],
    )
    def test_concurrency_out_of_bounds(self, field_name: str, value: int) -> None:
        with pytest.raises(ScrapeConfigError, match=field_name):
            ScrapeConfig(towns=("A",), industries=("B",), **{field_name: value})

    def test_concurrency_upper_bounds_are_inclusive(self) -> None:
        config = ScrapeConfig(
            towns=("A",),
            industries=("B",),
            simultaneous_towns=5,
            simultaneous_industries=3,
            simultaneous_lookups=3,
        )
        assert config.simultaneous_towns == 5

    def test_bool_is_not_an_int(self) -> None:
        with pytest.raises(ScrapeConfigError):
            ScrapeConfig(towns=("A",), industries=("B",), simultaneous_towns=True)

    def test_payload_round_trip(self) -> None:
        config = ScrapeConfig(
            towns=("Polokwane", "Tzaneen"),
            industries=("Plumbers",),
            simultaneous_towns=3,
            enable_provider_lookup=False,
        )
        assert ScrapeConfig.from_payload(config.to_payload()) == config


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (SessionStatus.PENDING, SessionStatus.RUNNING),
            (SessionStatus.RUNNING, SessionStatus.PAUSED),
            (SessionStatus.PAUSED, SessionStatus.RUNNING),
            (SessionStatus.PAUSED, SessionStatus.STOPPED),
            (SessionStatus.RUNNING, SessionStatus.COMPLETED),
            (SessionStatus.RUNNING, SessionStatus.FAILED),
        ],
    )
    def test_allowed(self, current: str, target: str) -> None:
        check_transition(current, target)

    @pytest.mark.parametrize(
        "current, target",
        [
            (SessionStatus.PENDING, SessionStatus.COMPLETED),
            (SessionStatus.PENDING, SessionStatus.PAUSED),
            (SessionStatus.COMPLETED, SessionStatus.RUNNING),
            (SessionStatus.STOPPED, SessionStatus.RUNNING),
            (SessionStatus.FAILED, SessionStatus.PAUSED),
        ],
    )
    def test_rejected(self, current: str, target: str) -> None:
        with pytest.raises(InvalidSessionTransitionError) as excinfo:
            check_transition(current, target)
        assert excinfo.value.current == current
        assert excinfo.value.target == target

    def test_running_stamps_started_at_once(self) -> None:
        state = SessionState(session_id="s")
        state.transition(SessionStatus.RUNNING)
        first = state.started_at
        state.transition(SessionStatus.PAUSED)
        state.transition(SessionStatus.RUNNING)
        assert state.started_at == first
        assert state.finished_at is None

    def test_terminal_stamps_finished_at(self) -> None:
        state = SessionState(session_id="s")
        state.transition(SessionStatus.RUNNING)
        state.transition(SessionStatus.COMPLETED)
        assert state.is_terminal
        assert state.finished_at is not None


# ---------------------------------------------------------------------------
# SessionState
# ---------------------------------------------------------------------------


class TestSessionState:
    def test_town_success_accumulates_records(self) -> None:
        state = SessionState(session_id="s", total_towns=2)
        state.record_town_success(_town_result("A", "One", "Two"))
        assert state.completed_towns == ["A"]
        assert len(state.businesses) == 2

    def test_duplicate_town_success_is_ignored(self) -> None:
        state = SessionState(session_id="s", total_towns=1)
        state.record_town_success(_town_result("A", "One"))
        state.record_town_success(_town_result("A", "One"))
        assert state.completed_towns == ["A"]
        assert len(state.businesses) == 1

    def test_success_clears_an_earlier_failure(self) -> None:
        state = SessionState(session_id="s", total_towns=1)
        state.record_town_failure("A", "browser crashed")
        state.record_town_success(_town_result("A", "One"))
        assert state.failed_towns == {}
        assert state.processed_towns == 1

    def test_failure_after_success_is_ignored(self) -> None:
        state = SessionState(session_id="s", total_towns=1)
        state.record_town_success(_town_result("A", "One"))
        state.record_town_failure("A", "late failure")
        assert state.failed_towns == {}

    def test_progress_percent(self) -> None:
        state = SessionState(session_id="s", total_towns=3)
        assert state.progress_percent == 0
        state.record_town_success(_town_result("A"))
        assert state.progress_percent == 33
        state.record_town_failure("B", "boom")
        assert state.progress_percent == 67
        state.record_town_success(_town_result("C"))
        assert state.progress_percent == 100

    def test_progress_with_no_towns_is_zero(self) -> None:
        assert SessionState(session_id="s").progress_percent == 0

    def test_terminal_state_rejects_updates(self) -> None:
        state = SessionState(session_id="s", total_towns=1)
        state.transition(SessionStatus.RUNNING)
        state.transition(SessionStatus.STOPPED)
        with pytest.raises(InvalidSessionTransitionError):
            state.record_town_success(_town_result("A", "One"))
        with pytest.raises(InvalidSessionTransitionError):
            state.record_town_failure("A", "boom")

    def test_apply_carriers(self) -> None:
        state = SessionState(session_id="s", total_towns=1)
        state.businesses = [
            BusinessRecord(name="Has phone", town="A", industry="B", phone="011 123 4567"),
            BusinessRecord(name="No phone", town="A", industry="B"),
            BusinessRecord(name="Lookup failed", town="A", industry="B", phone="082"),
        ]
        state.apply_carriers(
            {
                "011 123 4567": CarrierResult(carrier="Telkom", confidence=1.0),
                "082": CarrierResult(carrier=CARRIER_UNKNOWN, confidence=0.0, error="HTTP 503"),
            }
        )
        carriers = [record.carrier for record in state.businesses]
        assert carriers == ["Telkom", CARRIER_UNKNOWN, CARRIER_UNKNOWN]
        assert state.lookup_failures == 1

    def test_snapshot_shape(self) -> None:
        state = SessionState(session_id="s", total_towns=2)
        state.record_town_success(_town_result("A", "One"))
        snapshot = state.snapshot()
        assert snapshot["session_id"] == "s"
        assert snapshot["completed_towns"] == 1
        assert snapshot["businesses"] == 1
        assert snapshot["progress"] == 50


# ---------------------------------------------------------------------------
# Records and summary
# ---------------------------------------------------------------------------


class TestRecords:
    def test_new_record_is_unresolved(self) -> None:
        record = BusinessRecord(name="X", town="A", industry="B")
        assert record.carrier == CARRIER_UNRESOLVED

    def test_blank_town_rejected(self) -> None:
        with pytest.raises(ValueError):
            BusinessRecord(name="X", town=" ", industry="B")

    def test_from_dict_defaults(self) -> None:
        record = BusinessRecord.from_dict({"name": "X", "town": "A", "industry": "B"})
        assert record.address == ""
        assert record.maps_url == ""
        assert record.carrier == CARRIER_UNRESOLVED


class TestScrapeSummary:
    def test_businesses_per_town(self) -> None:
        state = SessionState(session_id="s", total_towns=3)
        state.record_town_success(_town_result("A", "One", "Two"))
        state.record_town_success(_town_result("B", "Three"))
        state.record_town_failure("C", "boom")
        state.industry_failures.append(IndustryFailure(town="A", industry="Dentists", error="x"))
        state.transition(SessionStatus.RUNNING)
        state.transition(SessionStatus.COMPLETED)

        summary = ScrapeSummary.from_state(state, duration_seconds=12.34567)
        assert summary.towns_completed == 2
        assert summary.towns_failed == 1
        assert summary.businesses_per_town == 1.5
        assert summary.industry_failures == 1
        assert summary.to_dict()["duration_seconds"] == 12.346
        assert summary.to_dict()["failed_towns"] == {"C": "boom"}

    def test_businesses_per_town_without_completions(self) -> None:
        summary = ScrapeSummary(
            status=SessionStatus.FAILED,
            towns_total=1,
            towns_completed=0,
            towns_failed=1,
            businesses_total=0,
            duration_seconds=0.0,
        )
        assert summary.businesses_per_town == 0.0
