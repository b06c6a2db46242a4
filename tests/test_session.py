"""End-to-end tests for a map session on the in-memory backend."""

import asyncio

import pytest

from unlock_geo.points import GeoPoint
from unlock_engine.backend import InMemoryBackend
from unlock_engine.config import FALLBACK_COLOR, LOCKED_COLOR, EngineConfig, SyncConfig, USER_COLORS
from unlock_engine.errors import BackendError, FailureReason, PoiPlacementError
from unlock_engine.events import CelebrationEvent, UnlockFailure
from unlock_engine.location import DeniedSource
from unlock_engine.models import MapUser
from unlock_engine.session import MapSession
from unlock_engine.stream import StreamState
from unlock_engine.synchronizer import OutcomeStatus

from conftest import (
    FAR_AWAY,
    INSIDE_MACARENA,
    INSIDE_TRIANA,
    INSIDE_TRIANA_2,
    MACARENA,
    GatedBackend,
    fix,
    make_district,
)

USERS = [MapUser("u1", "ana"), MapUser("u2", "bea")]
CONFIG = EngineConfig(sync=SyncConfig(retry_delay_s=0))


def _districts(**triana):
    return [make_district("Triana", **triana), make_district("Macarena", MACARENA)]


def _backend(**triana) -> InMemoryBackend:
    return InMemoryBackend(_districts(**triana), USERS)


def _session(backend, source, user_id="u1") -> MapSession:
    return MapSession(backend, source, "m1", user_id, CONFIG)


class FailingBackend(InMemoryBackend):
    async def fetch_districts(self, map_id):
        raise BackendError("HTTP 404", status=404)


class TestUnlockFlow:
    @pytest.mark.asyncio
    async def test_enter_district_unlocks_and_celebrates_once(self, manual_source):
        backend = _backend()
        async with _session(backend, manual_source) as session:
            events = []
            session.subscribe(events.append)

            assert manual_source.push(INSIDE_TRIANA, 1.0) is not None
            await session.wait_idle()

            # Leave and come back
            assert manual_source.push(FAR_AWAY, 2.0) is None
            assert manual_source.push(INSIDE_TRIANA_2, 3.0) is None
            await session.wait_idle()

            assert len(events) == 1
            assert isinstance(events[0], CelebrationEvent)
            assert events[0].district_name == "Triana"
            views = {v.id: v for v in session.snapshot()}
            assert views["Triana"].is_unlocked
            assert views["Triana"].fill_color == USER_COLORS[0]
            assert not views["Triana"].pending
            assert views["Macarena"].fill_color == LOCKED_COLOR

        assert backend.unlock_calls == [("Triana", "u1", "sevilla", USER_COLORS[0])]
        assert backend.owner_of("Triana") == "u1"
        assert manual_source.subscription.closed

    @pytest.mark.asyncio
    async def test_optimistic_state_visible_while_in_flight(self, manual_source):
        backend = GatedBackend(_districts(), USERS)
        async with _session(backend, manual_source) as session:
            manual_source.push(INSIDE_TRIANA, 1.0)
            await backend.entered.wait()
            view = next(v for v in session.snapshot() if v.id == "Triana")
            assert view.is_unlocked
            assert view.pending
            backend.gate.set()
            await session.wait_idle()
            view = next(v for v in session.snapshot() if v.id == "Triana")
            assert not view.pending

    @pytest.mark.asyncio
    async def test_owned_by_other_rolls_back(self, manual_source):
        backend = _backend()
        async with _session(backend, manual_source) as session:
            # Another user unlocks Triana after this session loaded
            await backend.unlock("Triana", "u2", "sevilla", USER_COLORS[1])
            events = []
            session.subscribe(events.append)

            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()

            assert len(events) == 1
            failure = events[0]
            assert isinstance(failure, UnlockFailure)
            assert failure.reason is FailureReason.ALREADY_OWNED_BY_OTHER
            assert failure.district_name == "Triana"
            assert not failure.retryable

            d = session.registry.get("Triana")
            assert not d.is_unlocked
            assert d.color == LOCKED_COLOR

            await session.refresh()
            d = session.registry.get("Triana")
            assert d.is_unlocked
            assert d.unlocked_by_user_id == "u2"
            assert d.color == USER_COLORS[1]

    @pytest.mark.asyncio
    async def test_transient_failure_then_manual_retry(self, manual_source):
        backend = _backend()
        backend.fail_next = 2
        async with _session(backend, manual_source) as session:
            events = []
            session.subscribe(events.append)

            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()

            assert [type(e) for e in events] == [UnlockFailure]
            assert events[0].reason is FailureReason.NETWORK_TRANSIENT
            assert events[0].retryable
            assert session.retryable() == ["Triana"]
            assert not session.registry.get("Triana").is_unlocked

            outcome = await session.retry("Triana")
            assert outcome.status is OutcomeStatus.CONFIRMED
            assert isinstance(events[-1], CelebrationEvent)
            assert session.retryable() == []
            assert len(backend.unlock_calls) == 3

    @pytest.mark.asyncio
    async def test_retry_unknown_district(self, manual_source):
        async with _session(_backend(), manual_source) as session:
            assert await session.retry("Triana") is None

    @pytest.mark.asyncio
    async def test_superseded_response_is_dropped(self, manual_source):
        backend = GatedBackend(_districts(), USERS)
        async with _session(backend, manual_source) as session:
            events = []
            session.subscribe(events.append)

            manual_source.push(INSIDE_TRIANA, 1.0)
            await backend.entered.wait()
            manual_source.push(INSIDE_MACARENA, 2.0)
            assert not session.registry.get("Triana").is_unlocked

            backend.gate.set()
            await session.wait_idle()

            assert [e.district_name for e in events] == ["Macarena"]
            assert not session.registry.get("Triana").is_unlocked
            assert session.synchronizer.stats.superseded == 1

            # The server accepted the first call; a refresh reconciles it
            assert backend.owner_of("Triana") == "u1"
            await session.refresh()
            assert session.registry.get("Triana").is_unlocked

    @pytest.mark.asyncio
    async def test_district_removed_while_unlock_in_flight(self, manual_source, caplog):
        backend = GatedBackend(_districts(), USERS)
        async with _session(backend, manual_source) as session:
            events = []
            session.subscribe(events.append)

            manual_source.push(INSIDE_TRIANA, 1.0)
            await backend.entered.wait()

            # The server drops Triana, then brings it back after a refresh
            triana = backend._districts.pop("Triana")
            await session.refresh()
            assert "Triana" not in session.registry
            assert session.ledger.pending_intents() == []
            backend._districts["Triana"] = triana

            backend.gate.set()
            await session.wait_idle()

            assert events == []
            assert session.synchronizer.stats.superseded == 1
            assert "Triana" not in session.registry
            assert "Unlock task failed" not in caplog.text

            await session.refresh()
            assert session.registry.get("Triana").is_unlocked

    @pytest.mark.asyncio
    async def test_retry_supersedes_other_pending_unlock(self, manual_source):
        backend = GatedBackend(_districts(), USERS)
        backend.fail_next = 2
        backend.gate.set()
        async with _session(backend, manual_source) as session:
            events = []
            session.subscribe(events.append)

            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()
            assert session.retryable() == ["Triana"]

            backend.gate = asyncio.Event()
            backend.entered.clear()
            manual_source.push(INSIDE_MACARENA, 2.0)
            await backend.entered.wait()
            assert session.registry.is_pending("Macarena")

            retry = asyncio.create_task(session.retry("Triana"))
            await asyncio.sleep(0)
            assert not session.registry.get("Macarena").is_unlocked
            assert not session.registry.is_pending("Macarena")
            assert session.registry.is_pending("Triana")

            backend.gate.set()
            outcome = await retry
            await session.wait_idle()

            assert outcome.status is OutcomeStatus.CONFIRMED
            assert session.synchronizer.stats.superseded == 1
            assert [type(e) for e in events] == [UnlockFailure, CelebrationEvent]
            assert events[-1].district_name == "Triana"
            assert not session.registry.get("Macarena").is_unlocked


class TestColors:
    @pytest.mark.asyncio
    async def test_session_color_from_roster(self, manual_source):
        async with _session(_backend(), manual_source, user_id="u2") as session:
            assert session.color == USER_COLORS[1]
            assert [u.username for u in session.users] == ["ana", "bea"]

    @pytest.mark.asyncio
    async def test_user_missing_from_roster_skips_held_colors(self, manual_source):
        backend = InMemoryBackend(_districts(), [MapUser("u2", "bea", color=USER_COLORS[0])])
        async with _session(backend, manual_source) as session:
            assert session.color == USER_COLORS[1]
            assert len(session.assignments) == 2

    @pytest.mark.asyncio
    async def test_unlocked_districts_painted_with_owner_color(self, manual_source):
        backend = InMemoryBackend([
            make_district("Triana", is_unlocked=True, unlocked_by_user_id="u2"),
            make_district("Macarena", MACARENA, is_unlocked=True, unlocked_by_user_id="ghost"),
        ], USERS)
        async with _session(backend, manual_source) as session:
            views = {v.id: v for v in session.snapshot()}
            assert views["Triana"].fill_color == USER_COLORS[1]
            assert views["Macarena"].fill_color == FALLBACK_COLOR


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_permission_denied_keeps_map_available(self):
        async with _session(_backend(), DeniedSource()) as session:
            failures = [e for e in session.events.history if isinstance(e, UnlockFailure)]
            assert [f.reason for f in failures] == [FailureReason.LOCATION_PERMISSION_DENIED]
            assert len(session.snapshot()) == 2

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_requests(self, manual_source):
        backend = GatedBackend(_districts(), USERS)
        session = _session(backend, manual_source)
        await session.open()
        events = []
        session.subscribe(events.append)

        manual_source.push(INSIDE_TRIANA, 1.0)
        await backend.entered.wait()
        await session.close()

        assert session.closed
        assert session.processor.state is StreamState.STOPPED
        assert manual_source.subscription.closed
        assert backend.unlock_calls == []
        assert events == []
        assert session.on_fix(fix(INSIDE_MACARENA, 2.0)) is None

    @pytest.mark.asyncio
    async def test_exception_in_body_closes_session(self, manual_source):
        with pytest.raises(ValueError):
            async with _session(_backend(), manual_source) as session:
                raise ValueError("boom")
        assert session.closed
        assert manual_source.subscription.closed

    @pytest.mark.asyncio
    async def test_failed_open_closes(self, manual_source):
        session = _session(FailingBackend([]), manual_source)
        with pytest.raises(BackendError):
            await session.open()
        assert session.closed
        assert manual_source.subscription is None

    @pytest.mark.asyncio
    async def test_open_twice(self, manual_source):
        async with _session(_backend(), manual_source) as session:
            with pytest.raises(RuntimeError):
                await session.open()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_session(self, manual_source):
        async with _session(_backend(), manual_source) as session:
            def explode(event):
                raise RuntimeError("listener bug")

            session.subscribe(explode)
            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()
            assert isinstance(session.events.history[-1], CelebrationEvent)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manual_source):
        async with _session(_backend(), manual_source) as session:
            events = []
            unsubscribe = session.subscribe(events.append)
            unsubscribe()
            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()
            assert events == []


class TestPoiPlacement:
    @pytest.mark.asyncio
    async def test_placement_rules(self, manual_source):
        async with _session(_backend(), manual_source) as session:
            manual_source.push(INSIDE_TRIANA, 1.0)
            await session.wait_idle()

            assert session.locate_poi_district(GeoPoint(*INSIDE_TRIANA)).id == "Triana"

            with pytest.raises(PoiPlacementError) as exc_info:
                session.locate_poi_district(GeoPoint(*INSIDE_MACARENA))
            assert exc_info.value.district_name == "Macarena"

            with pytest.raises(PoiPlacementError) as exc_info:
                session.locate_poi_district(GeoPoint(*FAR_AWAY))
            assert exc_info.value.district_name is None

    @pytest.mark.asyncio
    async def test_placement_uses_exact_containment(self, manual_source):
        backend = _backend(is_unlocked=True, unlocked_by_user_id="u1")
        async with _session(backend, manual_source) as session:
            # Near Triana's centroid but outside its boundary
            with pytest.raises(PoiPlacementError):
                session.locate_poi_district(GeoPoint(37.3875, -6.0005))
