"""Sync service for orchestrating feed synchronization runs."""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.config import settings
from feedsync.database.database import SessionLocal
from feedsync.exceptions import InvalidStateError, NotFoundError, SyncAborted, SyncCancelled
from feedsync.models import AtomFeed, SyncRun
from feedsync.models.enums import (
    ACTIVE_SYNC_STATUSES,
    ENTITY_TYPE_FOR_SYNC,
    EntityType,
    FeedType,
    SyncStatus,
    SyncType,
    TriggeredBy,
)
from feedsync.services.atom_client import AtomFeedClient, parse_atom_entries
from feedsync.services.entity_mapper import map_entry
from feedsync.services.notifications import (
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_PROGRESS,
    SYNC_STARTED,
    SyncEvent,
    SyncNotifier,
)
from feedsync.services.reconciler import EntityReconciler
from feedsync.services.validation import (
    validate_id,
    validate_pagination,
    validate_sync_request_type,
    validate_sync_status,
    validate_sync_type,
    validate_triggered_by,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
INTERRUPTED_MESSAGE = "Interrupted by shutdown"

RECORD_ERRORS = (ValueError, TypeError, SQLAlchemyError)


@dataclass
class SyncRequestResult:
    """Result of a sync request.

    Attributes:
        ids: Run id for every requested type, in request order.
        reused_ids: Subset of ``ids`` that were already pending or running.
        message: Human-readable summary.
    """

    ids: List[int]
    reused_ids: List[int] = field(default_factory=list)
    message: str = ""


def run_to_dict(run: SyncRun) -> Dict[str, Any]:
    """Serialize a sync run for API responses and notifications."""
    return {
        "id": run.id,
        "sync_type": run.sync_type,
        "status": run.status,
        "triggered_by": run.triggered_by,
        "is_cancelled": bool(run.is_cancelled),
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "records_processed": run.records_processed or 0,
        "records_created": run.records_created or 0,
        "records_updated": run.records_updated or 0,
        "records_unchanged": run.records_unchanged or 0,
        "records_failed": run.records_failed or 0,
        "error_message": run.error_message,
        "created_at": run.created_at.isoformat() if run.created_at else None,
    }


class SyncService:
    """Runs at most one sync per type, each as its own background task.

    Every sync type has its own lock, so a slow PROJECTS run never blocks
    an OPPORTUNITIES request. Runs are cancelled cooperatively: ``cancel``
    only signals, and the runner finalizes the row at its next checkpoint.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[SyncNotifier] = None,
        client_factory: Optional[Callable[[], AtomFeedClient]] = None,
        max_consecutive_failures: Optional[int] = None,
        adaptive_sync_enabled: Optional[bool] = None,
    ):
        """Initialize sync service.

        Args:
            session_factory: Creates the session each background run uses.
            notifier: Event fan-out; a private one is created if omitted.
            client_factory: Creates the feed client for a run.
            max_consecutive_failures: Abort threshold for back-to-back record
                failures (defaults to settings).
            adaptive_sync_enabled: Whether PROJECTS runs merge linked detail
                feeds (defaults to settings).
        """
        self.session_factory = session_factory
        self.notifier = notifier or SyncNotifier(settings.notification_queue_size)
        self.client_factory = client_factory or AtomFeedClient
        self.max_consecutive_failures = (
            max_consecutive_failures if max_consecutive_failures is not None else settings.max_consecutive_failures
        )
        self.adaptive_sync_enabled = (
            adaptive_sync_enabled if adaptive_sync_enabled is not None else settings.adaptive_sync_enabled
        )
        self._locks: Dict[SyncType, asyncio.Lock] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cancel_events: Dict[int, asyncio.Event] = {}

    @contextmanager
    def _session_scope(self, db: Optional[Session] = None) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def _lock_for(self, sync_type: SyncType) -> asyncio.Lock:
        if sync_type not in self._locks:
            self._locks[sync_type] = asyncio.Lock()
        return self._locks[sync_type]

    def is_running(self, run_id: int) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait_for(self, run_id: int) -> None:
        """Wait until a background run finishes. Mostly useful in tests."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def request(self, sync_type: str, triggered_by: str = TriggeredBy.MANUAL.value) -> SyncRequestResult:
        """Request a sync for one type, or every type with ``ALL``.

        Requesting a type that already has a pending or running sync returns
        that run's id instead of starting another one.

        Args:
            sync_type: PROJECTS, OPPORTUNITIES, SERVICE_TICKETS or ALL.
            triggered_by: MANUAL, SCHEDULED or VERSION_BUMP.

        Returns:
            SyncRequestResult with one run id per requested type.

        Raises:
            ValidationError: If the type or trigger is invalid.
        """
        types = validate_sync_request_type(sync_type)
        trigger = validate_triggered_by(triggered_by)

        ids: List[int] = []
        reused: List[int] = []
        for each_type in types:
            run_id, was_reused = await self._request_one(each_type, trigger)
            ids.append(run_id)
            if was_reused:
                reused.append(run_id)

        started = [t.value for t, run_id in zip(types, ids) if run_id not in reused]
        parts = []
        if started:
            parts.append(f"Sync requested for {', '.join(started)}")
        if reused:
            parts.append(f"already active: {', '.join(str(i) for i in reused)}")

        return SyncRequestResult(ids=ids, reused_ids=reused, message="; ".join(parts))

    async def _request_one(self, sync_type: SyncType, trigger: TriggeredBy) -> tuple:
        async with self._lock_for(sync_type):
            with self._session_scope() as db:
                existing = (
                    db.query(SyncRun)
                    .filter(SyncRun.sync_type == sync_type.value, SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
                    .order_by(SyncRun.id.desc())
                    .first()
                )
                if existing is not None:
                    logger.info(f"{sync_type.value} sync already {existing.status} (ID: {existing.id})")
                    return existing.id, True

                run = SyncRun(
                    sync_type=sync_type.value,
                    status=SyncStatus.PENDING.value,
                    triggered_by=trigger.value,
                )
                db.add(run)
                db.commit()
                db.refresh(run)
                run_id = run.id

            cancel_event = asyncio.Event()
            self._cancel_events[run_id] = cancel_event
            task = asyncio.create_task(self._run(run_id, sync_type, cancel_event), name=f"sync-{sync_type.value}-{run_id}")
            self._tasks[run_id] = task
            task.add_done_callback(lambda _task, rid=run_id: self._forget(rid))

        logger.info(f"Queued {sync_type.value} sync {run_id} ({trigger.value})")
        return run_id, False

    def _forget(self, run_id: int) -> None:
        self._tasks.pop(run_id, None)
        self._cancel_events.pop(run_id, None)

    async def _run(self, run_id: int, sync_type: SyncType, cancel_event: asyncio.Event) -> None:
        db = self.session_factory()
        try:
            run = db.get(SyncRun, run_id)
            if run is None or run.is_terminal:
                logger.warning(f"Sync {run_id} is no longer runnable")
                return

            run.status = SyncStatus.RUNNING.value
            run.started_at = datetime.utcnow()
            db.commit()
            self._emit(SYNC_STARTED, run)
            logger.info(f"Starting {sync_type.value} sync {run_id}")

            try:
                await self._execute(db, run, sync_type, cancel_event)
            except SyncCancelled:
                db.rollback()
                logger.info(f"{sync_type.value} sync {run_id} cancelled")
                self._finalize(db, run, SyncStatus.FAILED, CANCELLED_MESSAGE, cancelled=True)
            except asyncio.CancelledError:
                db.rollback()
                self._finalize(db, run, SyncStatus.FAILED, INTERRUPTED_MESSAGE)
                raise
            except Exception as e:
                db.rollback()
                error_message = getattr(e, "message", None) or str(e) or e.__class__.__name__
                logger.error(f"{sync_type.value} sync {run_id} failed: {error_message}")
                self._finalize(db, run, SyncStatus.FAILED, error_message)
            else:
                self._finalize(db, run, SyncStatus.COMPLETED)
                logger.info(
                    f"{sync_type.value} sync {run_id} completed: {run.records_processed} processed, "
                    f"{run.records_created} created, {run.records_updated} updated, "
                    f"{run.records_unchanged} unchanged, {run.records_failed} failed"
                )
        finally:
            db.close()

    async def _execute(self, db: Session, run: SyncRun, sync_type: SyncType, cancel_event: asyncio.Event) -> None:
        self._check_cancel(run.id, cancel_event)

        feeds = (
            db.query(AtomFeed)
            .filter(AtomFeed.feed_type == FeedType(sync_type.value).value, AtomFeed.is_active.is_(True))
            .order_by(AtomFeed.id)
            .all()
        )
        if not feeds:
            raise InvalidStateError(f"No active {sync_type.value} feed configured")

        entity_type = ENTITY_TYPE_FOR_SYNC[sync_type]
        reconciler = EntityReconciler(db)
        consecutive_failures = 0

        async with self.client_factory() as client:
            for feed in feeds:
                self._check_cancel(run.id, cancel_event)
                logger.info(f"Syncing {sync_type.value} from feed: {feed.name}")

                detail_url = self._detail_feed_url(db, feed) if sync_type == SyncType.PROJECTS else None

                xml_content = await self._cancellable(client.fetch_feed(feed.feed_url), run.id, cancel_event)
                entries = parse_atom_entries(xml_content)

                for index, entry in enumerate(entries):
                    # Yield so cancel requests and other sync types run between records
                    await asyncio.sleep(0)
                    self._check_cancel(run.id, cancel_event)

                    try:
                        record = map_entry(entity_type, entry, index)
                        result = reconciler.reconcile(record, run.id)
                    except RECORD_ERRORS as e:
                        db.rollback()
                        run.records_processed += 1
                        run.records_failed += 1
                        db.commit()
                        consecutive_failures += 1
                        logger.warning(f"Sync {run.id}: record {index} of feed '{feed.name}' failed: {e}")
                        if consecutive_failures > self.max_consecutive_failures:
                            raise SyncAborted(
                                f"Aborted after {consecutive_failures} consecutive record failures; last error: {e}"
                            )
                        continue

                    consecutive_failures = 0
                    run.records_processed += 1
                    if result.created:
                        run.records_created += 1
                    elif result.updated:
                        run.records_updated += 1
                    else:
                        run.records_unchanged += 1
                    db.commit()

                    if detail_url:
                        await self._merge_detail(db, client, reconciler, run, record.external_id, detail_url, cancel_event)

                    self._emit(SYNC_PROGRESS, run)

                feed.last_sync = datetime.utcnow()
                db.commit()

        self._check_cancel(run.id, cancel_event)

    def _detail_feed_url(self, db: Session, feed: AtomFeed) -> Optional[str]:
        if not self.adaptive_sync_enabled or not feed.detail_feed_id:
            return None
        detail_feed = db.get(AtomFeed, feed.detail_feed_id)
        if detail_feed is None or not detail_feed.is_active:
            logger.info(f"Detail feed for '{feed.name}' missing or inactive, syncing summary only")
            return None
        logger.info(f"Adaptive sync enabled - fetching details from: {detail_feed.name}")
        return detail_feed.feed_url

    async def _merge_detail(
        self,
        db: Session,
        client: AtomFeedClient,
        reconciler: EntityReconciler,
        run: SyncRun,
        external_id: str,
        detail_url: str,
        cancel_event: asyncio.Event,
    ) -> None:
        detail = await self._cancellable(client.fetch_project_detail(detail_url, external_id), run.id, cancel_event)
        if detail is None:
            return

        project = reconciler.find_entity(EntityType.PROJECT, external_id)
        if project is None:
            return

        try:
            reconciler.merge_detail(project, detail.fields, run.id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to store detail data for project {external_id}: {e}")

    async def _cancellable(self, coro, run_id: int, cancel_event: asyncio.Event):
        """Await a coroutine, abandoning it as soon as cancellation is requested."""
        work = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (work, waiter):
                if not future.done():
                    future.cancel()

        if work.done() and not work.cancelled():
            return work.result()
        raise SyncCancelled(run_id)

    @staticmethod
    def _check_cancel(run_id: int, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise SyncCancelled(run_id)

    def _finalize(
        self,
        db: Session,
        run: SyncRun,
        status: SyncStatus,
        error_message: Optional[str] = None,
        cancelled: bool = False,
    ) -> None:
        db.refresh(run)
        if run.is_terminal:
            logger.warning(f"Sync {run.id} already {run.status}, leaving it unchanged")
            return

        run.status = status.value
        run.completed_at = datetime.utcnow()
        run.error_message = error_message
        run.is_cancelled = cancelled
        db.commit()

        self._emit(SYNC_COMPLETED if status == SyncStatus.COMPLETED else SYNC_FAILED, run)

    def _emit(self, event_name: str, run: SyncRun) -> None:
        event = SyncEvent(
            event=event_name,
            run_id=run.id,
            sync_type=run.sync_type,
            status=run.status,
            counters={
                "records_processed": run.records_processed or 0,
                "records_created": run.records_created or 0,
                "records_updated": run.records_updated or 0,
                "records_unchanged": run.records_unchanged or 0,
                "records_failed": run.records_failed or 0,
            },
            error_message=run.error_message,
        )
        self.notifier.publish(event)

    def cancel(self, run_id: int, db: Optional[Session] = None) -> Dict[str, Any]:
        """Cancel a pending or running sync.

        A run with a live task is signalled and finalizes itself at its next
        checkpoint; this call does not wait for that. A pending or running
        row with no live task is finalized directly.

        Raises:
            ValidationError: If the id is not a positive integer.
            NotFoundError: If the run does not exist.
            InvalidStateError: If the run already finished.
        """
        validate_id(run_id, "sync id")

        with self._session_scope(db) as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                raise NotFoundError(f"Sync {run_id} not found")
            if run.is_terminal:
                raise InvalidStateError(f"Cannot cancel sync with status {run.status}")

            cancel_event = self._cancel_events.get(run_id)
            if cancel_event is not None and self.is_running(run_id):
                cancel_event.set()
                logger.info(f"Cancellation requested for sync {run_id}")
                return {"message": f"Cancellation requested for sync {run_id}", "id": run_id}

            logger.info(f"Sync {run_id} has no live runner, marking it cancelled")
            self._finalize(session, run, SyncStatus.FAILED, CANCELLED_MESSAGE, cancelled=True)
            return {"message": f"Sync {run_id} cancelled", "id": run_id}

    def recover_orphaned_runs(self, db: Optional[Session] = None) -> int:
        """Fail pending or running rows that no live task in this process owns.

        Returns:
            Number of runs marked FAILED.
        """
        with self._session_scope(db) as session:
            orphans = (
                session.query(SyncRun)
                .filter(SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
                .all()
            )
            recovered = 0
            for run in orphans:
                if self.is_running(run.id):
                    continue
                run.status = SyncStatus.FAILED.value
                run.completed_at = datetime.utcnow()
                run.error_message = INTERRUPTED_MESSAGE
                recovered += 1
            session.commit()

        if recovered:
            logger.warning(f"Marked {recovered} orphaned sync run(s) as failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every live run and wait for the runners to finalize."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} running sync(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self, db: Optional[Session] = None) -> Dict[str, Any]:
        """Get the latest completed run per type and every active run."""
        with self._session_scope(db) as session:
            status: Dict[str, Any] = {}
            for sync_type in SyncType:
                last = (
                    session.query(SyncRun)
                    .filter(SyncRun.sync_type == sync_type.value, SyncRun.status == SyncStatus.COMPLETED.value)
                    .order_by(SyncRun.completed_at.desc(), SyncRun.id.desc())
                    .first()
                )
                status[sync_type.value] = {
                    "last_sync": last.completed_at.isoformat() if last and last.completed_at else None,
                    "last_sync_id": last.id if last else None,
                    "records_synced": last.records_processed if last else 0,
                }

            active = (
                session.query(SyncRun)
                .filter(SyncRun.status.in_(ACTIVE_SYNC_STATUSES))
                .order_by(SyncRun.id)
                .all()
            )
            return {
                "types": status,
                "active_syncs": [
                    {"id": run.id, "sync_type": run.sync_type, "status": run.status} for run in active
                ],
            }

    def get_history(
        self,
        db: Optional[Session] = None,
        sync_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: Optional[int] = 0,
    ) -> List[Dict[str, Any]]:
        """Get sync runs newest first.

        Raises:
            ValidationError: On an unknown type or status or bad pagination.
        """
        limit, offset = validate_pagination(limit, offset)
        type_filter = validate_sync_type(sync_type).value if sync_type else None
        status_filter = validate_sync_status(status).value if status else None

        with self._session_scope(db) as session:
            query = session.query(SyncRun)
            if type_filter:
                query = query.filter(SyncRun.sync_type == type_filter)
            if status_filter:
                query = query.filter(SyncRun.status == status_filter)
            runs = query.order_by(SyncRun.created_at.desc(), SyncRun.id.desc()).offset(offset).limit(limit).all()
            return [run_to_dict(run) for run in runs]

    def get_run(self, run_id: int, db: Optional[Session] = None) -> Dict[str, Any]:
        validate_id(run_id, "sync id")
        with self._session_scope(db) as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                raise NotFoundError(f"Sync {run_id} not found")
            return run_to_dict(run)
