"""
Convergence Coordinator Tests - debounced commits, confirmed adoption, resync,
write-through persistence and recovery bootstrap.
"""

import asyncio
import copy
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from core.errors import PersistenceError  # noqa: E402
from eq.enablement import disable_filter, enable_filter  # noqa: E402
from eq.mapping import edit_band, set_preamp  # noqa: E402
from fake_engine import DEFAULT_CONFIG, FakeEngine  # noqa: E402
from session.client import Session  # noqa: E402
from session.convergence import ConvergenceCoordinator, UploadStatus, VolumeCoordinator  # noqa: E402
from session.events import UploadStatusChanged, ViewChanged  # noqa: E402


def peq(config, name):
    return config["filters"][name]["parameters"]


@pytest.fixture
def coordinator(session):
    coord = ConvergenceCoordinator(session)
    coord.load(session.config)
    return coord


class TestEdits:
    """Optimistic edits and debouncing."""

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_commit(self, coordinator, engine):
        """Three quick edits produce exactly one SetConfigJson."""
        for gain in (-1.0, -2.0, -4.5):
            coordinator.apply_local_edit(edit_band("peq1", gain=gain))

        assert coordinator.view.band("peq1").gain == -4.5
        assert coordinator.pending_edits == 3
        await asyncio.sleep(0.2)

        assert engine.commands("control").count("SetConfigJson") == 1
        assert peq(engine.config, "peq1")["gain"] == -4.5
        assert coordinator.pending_edits == 0

    @pytest.mark.asyncio
    async def test_edit_clamped(self, coordinator):
        coordinator.apply_local_edit(edit_band("peq1", freq=5, gain=40.04, q=0.04))
        band = coordinator.view.band("peq1")
        assert (band.freq, band.gain, band.q) == (20.0, 24.0, 0.1)
        coordinator.cancel_pending()

    @pytest.mark.asyncio
    async def test_edit_before_load(self, session):
        coordinator = ConvergenceCoordinator(session)
        with pytest.raises(RuntimeError):
            coordinator.apply_local_edit(edit_band("peq1", gain=1.0))

    @pytest.mark.asyncio
    async def test_cancel_pending_keeps_working_copy(self, coordinator, engine):
        coordinator.apply_local_edit(edit_band("peq1", gain=-9.0))
        assert coordinator.cancel_pending()
        await asyncio.sleep(0.1)

        assert "SetConfigJson" not in engine.commands("control")
        assert peq(coordinator.working_copy, "peq1")["gain"] == -9.0
        assert not coordinator.cancel_pending()

    @pytest.mark.asyncio
    async def test_commit_now_with_nothing_pending(self, coordinator, engine):
        assert await coordinator.commit_now()
        assert "SetConfigJson" not in engine.commands("control")


class TestConfirmedAdoption:
    """After a commit the view reflects what the engine accepted."""

    @pytest.mark.asyncio
    async def test_engine_normalization_wins(self, coordinator, engine):
        def clamp(config):
            params = config["filters"]["peq1"]["parameters"]
            params["gain"] = max(params["gain"], -12.0)
            return config

        engine.on_set_config = clamp
        coordinator.apply_local_edit(edit_band("peq1", gain=-20.0))
        assert coordinator.view.band("peq1").gain == -20.0

        assert await coordinator.commit_now()
        assert coordinator.view.band("peq1").gain == -12.0
        assert coordinator.confirmed == coordinator.working_copy

    @pytest.mark.asyncio
    async def test_edits_during_commit_are_replayed(self, coordinator, engine):
        """An edit made while a commit is in flight survives adoption and is committed next."""
        engine.delays["SetConfigJson"] = 0.2
        views = []
        coordinator.session.events.subscribe(ViewChanged, views.append)

        coordinator.apply_local_edit(edit_band("peq1", gain=-6.0))
        commit = asyncio.ensure_future(coordinator.commit_now())
        await asyncio.sleep(0.05)
        coordinator.apply_local_edit(edit_band("peq2", gain=4.0))

        assert await commit
        assert engine.commands("control").count("SetConfigJson") == 2
        assert peq(engine.config, "peq1")["gain"] == -6.0
        assert peq(engine.config, "peq2")["gain"] == 4.0
        # First adoption still carried the in-flight edit as unconfirmed
        unconfirmed = [v for v in views if not v.confirmed and v.view.band("peq2").gain == 4.0]
        assert unconfirmed
        assert views[-1].confirmed

    @pytest.mark.asyncio
    async def test_status_transitions(self, coordinator):
        statuses = []
        coordinator.session.events.subscribe(UploadStatusChanged, lambda e: statuses.append(e.status))

        coordinator.apply_local_edit(set_preamp(-3.0))
        assert await coordinator.commit_now()
        assert coordinator.upload_status is UploadStatus.SUCCESS

        await asyncio.sleep(0.2)
        assert coordinator.upload_status is UploadStatus.IDLE
        assert statuses == ["pending", "success", "idle"]

    @pytest.mark.asyncio
    async def test_preamp_round_trip(self, coordinator, engine):
        coordinator.apply_local_edit(set_preamp(-3.0))
        assert await coordinator.commit_now()

        assert engine.config["pipeline"][0] == {"type": "Mixer", "name": "preamp"}
        assert coordinator.view.preamp_gain == -3.0


class TestFailures:
    """Rejected commits resync; local validation does not."""

    @pytest.mark.asyncio
    async def test_engine_rejection_resyncs(self, coordinator, engine):
        engine.errors["SetConfigJson"] = "filter gain out of range"
        coordinator.apply_local_edit(edit_band("peq1", gain=-7.0))

        assert not await coordinator.commit_now()
        assert coordinator.upload_status is UploadStatus.ERROR
        assert "filter gain out of range" in coordinator.upload_message
        # Working copy is back to the engine's configuration
        assert peq(coordinator.working_copy, "peq1")["gain"] == -3.0
        assert coordinator.view.band("peq1").gain == -3.0

    @pytest.mark.asyncio
    async def test_validation_failure_keeps_edits(self, coordinator, engine):
        def dangling(snapshot):
            snapshot["pipeline"].append({"type": "Processor", "name": "ghost"})

        coordinator.apply_local_edit(dangling)
        assert not await coordinator.commit_now()

        assert coordinator.upload_status is UploadStatus.ERROR
        assert "SetConfigJson" not in engine.commands("control")
        assert coordinator.working_copy["pipeline"][-1]["name"] == "ghost"

    @pytest.mark.asyncio
    async def test_malformed_step_is_a_validation_error(self, coordinator, engine):
        """A non-string step name ends the commit with an error status, not a crash."""

        def bad_mixer(snapshot):
            snapshot["pipeline"].append({"type": "Mixer", "name": ["x"]})

        coordinator.apply_local_edit(bad_mixer)
        assert not await coordinator.commit_now()

        assert coordinator.upload_status is UploadStatus.ERROR
        assert "must be a string" in coordinator.upload_message
        assert "SetConfigJson" not in engine.commands("control")

    @pytest.mark.asyncio
    async def test_failed_resync_keeps_optimistic_copy(self, coordinator, engine):
        """Commit and read-back both fail: the local edit stays and the status is error."""
        engine.errors["SetConfigJson"] = "busy"
        engine.errors["GetConfigJson"] = "busy"
        coordinator.apply_local_edit(edit_band("peq1", gain=-7.0))

        assert not await coordinator.commit_now()

        assert coordinator.upload_status is UploadStatus.ERROR
        assert peq(coordinator.working_copy, "peq1")["gain"] == -7.0
        assert coordinator.view.band("peq1").gain == -7.0
        assert peq(coordinator.confirmed, "peq1")["gain"] == -3.0


class TestEnablement:
    """Disable/enable through the coordinator keeps band positions."""

    @pytest.mark.asyncio
    async def test_disable_then_enable(self, coordinator, engine):
        overlay = coordinator.overlay
        coordinator.apply_local_edit(disable_filter("peq1", overlay))
        assert await coordinator.commit_now()

        assert engine.config["pipeline"][0]["names"] == ["hp", "peq2"]
        band = coordinator.view.band("peq1")
        assert band is not None and not band.enabled
        assert coordinator.view.filter_names == ["hp", "peq1", "peq2"]

        coordinator.apply_local_edit(enable_filter("peq1", overlay))
        assert await coordinator.commit_now()
        assert engine.config["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]
        assert coordinator.view.band("peq1").enabled

    @pytest.mark.asyncio
    async def test_enable_during_commit(self, coordinator, engine):
        """Enabling while another commit is in flight survives adoption of the confirmed snapshot."""
        overlay = coordinator.overlay
        coordinator.apply_local_edit(disable_filter("peq1", overlay))
        assert await coordinator.commit_now()

        engine.delays["SetConfigJson"] = 0.2
        coordinator.apply_local_edit(edit_band("peq2", gain=4.0))
        commit = asyncio.ensure_future(coordinator.commit_now())
        await asyncio.sleep(0.05)
        coordinator.apply_local_edit(enable_filter("peq1", overlay))

        assert await commit
        assert await coordinator.commit_now()

        assert engine.config["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]
        assert coordinator.working_copy["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]
        assert len(overlay) == 0
        assert coordinator.view.band("peq1").enabled
        assert peq(engine.config, "peq2")["gain"] == 4.0

    @pytest.mark.asyncio
    async def test_disable_during_commit_keeps_position(self, coordinator, engine):
        """A disable replayed onto the confirmed snapshot records its position once."""
        overlay = coordinator.overlay
        engine.delays["SetConfigJson"] = 0.2
        coordinator.apply_local_edit(edit_band("peq2", gain=4.0))
        commit = asyncio.ensure_future(coordinator.commit_now())
        await asyncio.sleep(0.05)
        coordinator.apply_local_edit(disable_filter("peq1", overlay))

        assert await commit
        assert await coordinator.commit_now()
        assert engine.config["pipeline"][0]["names"] == ["hp", "peq2"]
        assert [loc.index for loc in overlay.locations("peq1")] == [1]
        assert coordinator.view.filter_names == ["hp", "peq1", "peq2"]

        engine.delays.clear()
        coordinator.apply_local_edit(enable_filter("peq1", overlay))
        assert await coordinator.commit_now()
        assert engine.config["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]

    @pytest.mark.asyncio
    async def test_rejected_disable_restores_overlay(self, coordinator, engine):
        """After a rejected disable the engine still runs the filter, and so does the view."""
        overlay = coordinator.overlay
        engine.errors["SetConfigJson"] = "rejected"
        coordinator.apply_local_edit(disable_filter("peq1", overlay))

        assert not await coordinator.commit_now()

        assert not overlay.is_disabled("peq1")
        assert coordinator.working_copy["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]
        assert coordinator.view.band("peq1").enabled

    @pytest.mark.asyncio
    async def test_rejected_enable_keeps_filter_disabled(self, coordinator, engine):
        overlay = coordinator.overlay
        coordinator.apply_local_edit(disable_filter("peq1", overlay))
        assert await coordinator.commit_now()

        engine.errors["SetConfigJson"] = "rejected"
        coordinator.apply_local_edit(enable_filter("peq1", overlay))
        assert not await coordinator.commit_now()

        assert overlay.is_disabled("peq1")
        assert coordinator.working_copy["pipeline"][0]["names"] == ["hp", "peq2"]
        assert coordinator.view.filter_names == ["hp", "peq1", "peq2"]
        assert not coordinator.view.band("peq1").enabled


class TestPersistence:
    """Write-through and recovery bootstrap."""

    @pytest.mark.asyncio
    async def test_write_through_after_confirm(self, session, engine):
        persistence = AsyncMock()
        coordinator = ConvergenceCoordinator(session, persistence=persistence)
        coordinator.load(session.config)

        coordinator.apply_local_edit(edit_band("peq2", freq=6000))
        assert await coordinator.commit_now()
        await coordinator.close()

        persistence.put_latest_state.assert_awaited_once()
        stored = persistence.put_latest_state.await_args.args[0]
        assert stored == coordinator.confirmed

    @pytest.mark.asyncio
    async def test_write_through_failure_is_not_commit_failure(self, session):
        persistence = AsyncMock()
        persistence.put_latest_state.side_effect = PersistenceError(503, "unavailable")
        coordinator = ConvergenceCoordinator(session, persistence=persistence)
        coordinator.load(session.config)

        coordinator.apply_local_edit(edit_band("peq2", freq=6000))
        assert await coordinator.commit_now()
        await coordinator.close()
        assert coordinator.upload_status is UploadStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_bootstrap_keeps_config_in_use(self, session):
        persistence = AsyncMock()
        coordinator = ConvergenceCoordinator(session, persistence=persistence)

        assert not await coordinator.bootstrap()
        persistence.get_latest_state.assert_not_awaited()
        assert coordinator.view.filter_names == ["hp", "peq1", "peq2"]

    @pytest.mark.asyncio
    async def test_bootstrap_restores_recovery_cache(self, fast_settings):
        empty = copy.deepcopy(DEFAULT_CONFIG)
        empty["pipeline"][0]["names"] = []
        engine = FakeEngine(config=empty)
        await engine.start()
        try:
            session = Session(settings=fast_settings)
            assert await session.connect("127.0.0.1", engine.control_port, engine.telemetry_port)
            persistence = AsyncMock()
            persistence.get_latest_state.return_value = copy.deepcopy(DEFAULT_CONFIG)
            coordinator = ConvergenceCoordinator(session, persistence=persistence)

            assert await coordinator.bootstrap()
            assert engine.config["pipeline"][0]["names"] == ["hp", "peq1", "peq2"]
            assert coordinator.view.filter_names == ["hp", "peq1", "peq2"]
            await session.disconnect()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_bootstrap_survives_persistence_error(self, fast_settings):
        engine = FakeEngine(config={"pipeline": []})
        await engine.start()
        try:
            session = Session(settings=fast_settings)
            assert await session.connect("127.0.0.1", engine.control_port, engine.telemetry_port)
            persistence = AsyncMock()
            persistence.get_latest_state.side_effect = PersistenceError(None, "connection refused")
            coordinator = ConvergenceCoordinator(session, persistence=persistence)

            assert not await coordinator.bootstrap()
            assert coordinator.view.bands == []
            await session.disconnect()
        finally:
            await engine.stop()


class TestVolumeCoordinator:
    """Debounced volume."""

    @pytest.mark.asyncio
    async def test_debounced_send(self, session, engine):
        volume = VolumeCoordinator(session)
        for db in (-20, -15, -12.5):
            volume.set_volume_db(db)

        assert volume.displayed_db == -12.5
        await volume.flush()

        assert engine.commands("control").count("SetVolume") == 1
        assert engine.volume == -12.5
        assert volume.confirmed_db == -12.5

    @pytest.mark.asyncio
    async def test_failure_reverts_display(self, session, engine):
        engine.errors["SetVolume"] = "device busy"
        volume = VolumeCoordinator(session)
        before = volume.confirmed_db

        volume.set_volume_db(-30)
        await volume.flush()

        assert volume.displayed_db == before
        assert engine.volume == before
