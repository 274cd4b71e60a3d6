"""
Convergence Coordinator - keeps local edits converged with the engine.

Edits apply optimistically to a working copy and re-derive the view at once.
A debounce timer collapses bursts of edits into a single commit. After every
commit the working copy is replaced by the engine's confirmed snapshot, with
any edits made while the commit was in flight replayed on top, so the view
always reflects what the engine accepted.

    coordinator = ConvergenceCoordinator(session, persistence=client)
    await coordinator.bootstrap()
    coordinator.apply_local_edit(edit_band("peq1", gain=-3.0))
    await coordinator.commit_now()
"""

import asyncio
import copy
from collections.abc import Callable
from enum import Enum
from typing import Any

from config.settings import Settings
from core.errors import ConfigValidationError, DspRemoteError, PersistenceError
from eq.enablement import DisabledFiltersOverlay
from eq.mapping import Mutator, extract_eq_view
from logger_config import get_logger

from .client import Session, clamp_volume
from .debounce import Debouncer
from .events import UploadStatusChanged, ViewChanged
from .validation import config_has_filters_in_use

logger = get_logger("convergence")


class UploadStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ConvergenceCoordinator:
    """Owns the working copy, pending edit batch and commit pipeline."""

    def __init__(
        self,
        session: Session,
        persistence: Any = None,
        overlay: DisabledFiltersOverlay | None = None,
        settings: Settings | None = None,
        derive_view: Callable[[dict, DisabledFiltersOverlay], Any] | None = None,
    ):
        self.settings = settings or session.settings
        cfg = self.settings.convergence
        self.session = session
        self.persistence = persistence
        self.overlay = overlay if overlay is not None else DisabledFiltersOverlay()
        self.success_display_s = cfg.success_display_s
        self._derive_view = derive_view or extract_eq_view

        self._confirmed: dict | None = None
        self._working: dict | None = None
        self._batch: list[Mutator] = []
        self.view: Any = None
        self.upload_status = UploadStatus.IDLE
        self.upload_message: str | None = None

        self._debouncer = Debouncer(cfg.debounce_s, self._schedule_commit)
        self._commit_task: asyncio.Task | None = None
        self._rerun = False
        self._success_timer: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def working_copy(self) -> dict | None:
        return copy.deepcopy(self._working) if self._working is not None else None

    @property
    def confirmed(self) -> dict | None:
        return copy.deepcopy(self._confirmed) if self._confirmed is not None else None

    @property
    def pending_edits(self) -> int:
        return len(self._batch)

    @property
    def commit_scheduled(self) -> bool:
        return self._debouncer.pending

    @property
    def committing(self) -> bool:
        return self._commit_task is not None and not self._commit_task.done()

    def load(self, snapshot: dict):
        """Adopt a confirmed snapshot as the baseline, discarding pending edits."""
        self._debouncer.cancel()
        self._batch = []
        self._confirmed = copy.deepcopy(snapshot)
        self._working = copy.deepcopy(snapshot)
        self._publish_view(confirmed=True)

    def _publish_view(self, confirmed: bool):
        self.view = self._derive_view(self._working, self.overlay)
        self.session.events.emit(ViewChanged(self.view, confirmed))

    def _set_status(self, status: UploadStatus, message: str | None = None):
        if self._success_timer is not None:
            self._success_timer.cancel()
            self._success_timer = None
        self.upload_status = status
        self.upload_message = message
        self.session.events.emit(UploadStatusChanged(status.value, message))
        if status is UploadStatus.SUCCESS:
            loop = asyncio.get_running_loop()
            self._success_timer = loop.call_later(self.success_display_s, self._clear_success)

    def _clear_success(self):
        self._success_timer = None
        if self.upload_status is UploadStatus.SUCCESS:
            self._set_status(UploadStatus.IDLE)

    # =========================================================================
    # Edits
    # =========================================================================

    def apply_local_edit(self, mutator: Mutator):
        """Apply an edit to the working copy now; commit after the debounce window."""
        if self._working is None:
            raise RuntimeError("No configuration loaded")
        mutator(self._working)
        self._batch.append(mutator)
        self._publish_view(confirmed=False)
        self._debouncer.call()

    def cancel_pending(self) -> bool:
        """Drop a scheduled commit; the working copy keeps its edits."""
        cancelled = self._debouncer.cancel()
        if cancelled:
            logger.debug("Scheduled commit cancelled")
        return cancelled

    async def commit_now(self) -> bool:
        """
        Commit pending edits immediately and wait for the result.

        Returns True when the engine confirmed the latest commit (or there was
        nothing to commit).
        """
        scheduled = self._debouncer.cancel()
        if self.committing:
            if scheduled or self._batch:
                self._rerun = True
            await asyncio.shield(self._commit_task)
            return self.upload_status is not UploadStatus.ERROR
        if not scheduled and not self._batch:
            return True
        self._start_commits()
        await asyncio.shield(self._commit_task)
        return self.upload_status is not UploadStatus.ERROR

    # =========================================================================
    # Commit pipeline
    # =========================================================================

    def _schedule_commit(self):
        if self.committing:
            self._rerun = True
            return
        self._start_commits()

    def _start_commits(self):
        self._commit_task = asyncio.get_running_loop().create_task(self._run_commits())

    async def _run_commits(self):
        while True:
            self._rerun = False
            await self._commit_once()
            # Edits made during the commit re-armed the debouncer; commit_now may ask for a rerun
            if not self._rerun:
                return

    async def _commit_once(self) -> bool:
        if self._working is None:
            return False

        outgoing = copy.deepcopy(self._working)
        sent, self._batch = self._batch, []
        self._set_status(UploadStatus.PENDING)

        try:
            confirmed = await self.session.set_config(outgoing)
        except ConfigValidationError as e:
            logger.warning(f"Commit rejected locally: {e}")
            self._set_status(UploadStatus.ERROR, str(e))
            return False
        except DspRemoteError as e:
            logger.warning(f"Commit failed: {e}")
            self._set_status(UploadStatus.ERROR, str(e))
            await self._resync(sent)
            return False

        self._adopt(confirmed)
        self._write_through(confirmed)
        self._set_status(UploadStatus.SUCCESS)
        logger.info("Commit confirmed", extra={"replayed_edits": len(self._batch)})
        return True

    def _adopt(self, snapshot: dict):
        """Engine truth becomes the baseline; in-flight edits are replayed on top."""
        self._confirmed = copy.deepcopy(snapshot)
        working = copy.deepcopy(snapshot)
        for mutator in self._batch:
            mutator(working)
        self._working = working
        self._publish_view(confirmed=not self._batch)

    async def _resync(self, rejected: list[Mutator]):
        try:
            fresh = await self.session.get_config()
        except DspRemoteError as e:
            logger.warning(f"Resync after failed commit failed, keeping local edits: {e}")
            return
        logger.warning("Resynced with engine configuration after failed commit")
        # The engine never saw the rejected edits; undo what they did to the overlay
        for mutator in reversed(rejected):
            revert = getattr(mutator, "revert_overlay", None)
            if revert is not None:
                revert()
        self._adopt(fresh)

    def _write_through(self, snapshot: dict):
        if self.persistence is None or not self.settings.persistence.enabled:
            return
        task = asyncio.get_running_loop().create_task(self._persist(copy.deepcopy(snapshot)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, snapshot: dict):
        try:
            await self.persistence.put_latest_state(snapshot)
        except PersistenceError as e:
            logger.warning(f"Failed to persist latest state: {e}")

    # =========================================================================
    # Startup / shutdown
    # =========================================================================

    async def bootstrap(self) -> bool:
        """
        Load the session's confirmed snapshot. If it has no filters in use,
        restore the recovery cache from persistence first.

        Returns True if the recovery cache was restored.
        """
        snapshot = self.session.config
        if snapshot is None:
            raise RuntimeError("Session has no confirmed configuration")

        restored = False
        if not config_has_filters_in_use(snapshot) and self.persistence is not None:
            cached = None
            try:
                cached = await self.persistence.get_latest_state()
            except PersistenceError as e:
                logger.warning(f"Could not fetch recovery state: {e}")

            if cached and config_has_filters_in_use(cached):
                try:
                    snapshot = await self.session.set_config(cached)
                    restored = True
                    logger.info("Restored configuration from recovery cache")
                except DspRemoteError as e:
                    logger.warning(f"Could not restore recovery state: {e}")

        self.load(snapshot)
        return restored

    async def close(self):
        """Flush a scheduled commit and wait for outstanding work."""
        if self._debouncer.pending and self.session.control_open:
            await self.commit_now()
        self._debouncer.cancel()
        if self._commit_task is not None:
            await asyncio.gather(self._commit_task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._success_timer is not None:
            self._success_timer.cancel()
            self._success_timer = None


class VolumeCoordinator:
    """Debounced main-volume control: immediate display, confirmed value on success."""

    def __init__(self, session: Session, settings: Settings | None = None):
        self.settings = settings or session.settings
        self.session = session
        self.displayed_db: float | None = session.volume_db
        self.confirmed_db: float | None = session.volume_db
        self._debouncer = Debouncer(self.settings.convergence.volume_debounce_s, self._schedule_send)
        self._task: asyncio.Task | None = None

    def set_volume_db(self, db: float) -> float:
        db = clamp_volume(db, self.settings)
        self.displayed_db = db
        self._debouncer.call()
        return db

    def _schedule_send(self):
        self._task = asyncio.get_running_loop().create_task(self._send(self.displayed_db))

    async def _send(self, db: float):
        try:
            self.confirmed_db = await self.session.set_volume(db)
        except DspRemoteError as e:
            logger.warning(f"Volume change to {db:.1f} dB failed: {e}")
            if self.displayed_db == db:
                self.displayed_db = self.confirmed_db

    async def flush(self):
        """Send a pending change now and wait for it."""
        self._debouncer.flush()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def close(self):
        await self.flush()
