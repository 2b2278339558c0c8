# backend/photo_analysis/coordinator.py
"""
Owns the analysis queue: record state machine, positions, the global
pause/resume breaker, crash recovery and the loop that walks a report's photos
through the vision API.

Work arrives either from the broker (preferred) or from the local poller, which
only runs while the broker is down. Only one report is processed at a time per
process; both paths go through the same run lock, and each run re-checks the
record's status first so duplicate deliveries are harmless.

Cancel, pause and resume are written by other threads. The loop re-reads the
record between photos to see them.
"""
import logging
import math
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.orm.exc import ObjectDeletedError
from sqlmodel import Session, select, func

from . import collaborators, config, system_config
from .analysis_client import AnalysisClient, AnalysisResult
from .errors import (
    AlreadyProcessingError,
    AlreadyQueuedError,
    CriticalUpstreamError,
    NotConfiguredError,
    NotInQueueError,
    NothingToAnalyzeError,
    ReportNotFoundError,
    UpstreamError,
)
from .models import ACTIVE_STATUSES, Photo, QueueRecord, QueueStatus, Report, User, utcnow
from .notifications import NotificationSink
from .text_match import resolve
from .worker import LocalPoller

logger = logging.getLogger(__name__)

CAPTION_TYPE_MISSING = "Type not identified"
CAPTION_NOT_IDENTIFIED = "Not identified"
CAPTION_ANALYSIS_ERROR = "Analysis error"


def compose_prompt(default_prompt: str, prompt: str) -> str:
    if default_prompt and default_prompt.strip():
        return f"{default_prompt} {prompt}"
    return prompt


class QueueCoordinator:
    def __init__(self, engine, client: AnalysisClient, broker=None,
                 notifier: Optional[NotificationSink] = None,
                 poll_interval: float = config.POLL_INTERVAL_SECONDS):
        self.engine = engine
        self.client = client
        self.broker = broker
        self.notifier = notifier or NotificationSink()
        self.poller = LocalPoller(self.process_next, poll_interval)
        self._run_lock = threading.Lock()

    def _session(self) -> Session:
        # records handed back to callers stay readable after the session closes
        return Session(self.engine, expire_on_commit=False)

    # --- lifecycle ---

    def start(self):
        self.recover()
        if self.broker is not None:
            self.broker.on_connect(self._on_broker_connect)
            self.broker.on_disconnect(self._on_broker_disconnect)
        if self.broker is None or not self.broker.is_connected():
            logger.warning("broker not available, using local polling every %ss", self.poller.interval)
            self.poller.start()
        if self.broker is not None:
            self.broker.start()

    def shutdown(self):
        self.poller.stop()
        if self.broker is not None:
            self.broker.stop()

    def _broker_live(self) -> bool:
        return self.broker is not None and self.broker.is_connected()

    def _on_broker_connect(self):
        self.broker.consume(self._handle_message)
        if self.poller.running:
            self.poller.stop()
            logger.info("broker connected, local polling stopped")
        self._publish_backlog()

    def _on_broker_disconnect(self):
        logger.warning("broker lost, local polling resumed")
        self.poller.start()

    def _handle_message(self, message: Dict[str, Any]):
        self.process_report(message["reportId"])

    def _publish(self, record: QueueRecord) -> bool:
        if not self._broker_live():
            return False
        return self.broker.publish({"reportId": record.report_id, "ownerId": record.owner_id},
                                   priority=config.DEFAULT_PRIORITY)

    def _publish_backlog(self):
        with self._session() as session:
            pending = session.exec(
                select(QueueRecord).where(QueueRecord.status == QueueStatus.PENDING)
                .order_by(QueueRecord.position)
            ).all()
        for record in pending:
            self._publish(record)
        if pending:
            logger.info("published %d pending reports after broker connect", len(pending))

    # --- positions ---

    def recompute_positions(self, session: Session):
        """Compact pending positions to 1..N by creation order; clear them elsewhere."""
        pending = session.exec(select(QueueRecord).where(QueueRecord.status == QueueStatus.PENDING)).all()
        pending = sorted(pending, key=lambda r: (r.created_at, r.position or 0))
        for index, record in enumerate(pending, start=1):
            if record.position != index:
                record.position = index
                session.add(record)

        stale = session.exec(select(QueueRecord).where(
            QueueRecord.status != QueueStatus.PENDING, QueueRecord.position != None)).all()  # noqa: E711
        for record in stale:
            record.position = None
            session.add(record)
        session.commit()

    def _find(self, session: Session, report_id: str, owner_id: Optional[str] = None) -> Optional[QueueRecord]:
        stmt = select(QueueRecord).where(QueueRecord.report_id == report_id)
        if owner_id is not None:
            stmt = stmt.where(QueueRecord.owner_id == owner_id)
        return session.exec(stmt).first()

    # --- enqueue / cancel ---

    def enqueue(self, report_id: str, owner_id: str, force: bool = False) -> QueueRecord:
        with self._session() as session:
            if collaborators.get_report(session, report_id) is None:
                raise ReportNotFoundError()

            existing = self._find(session, report_id)
            if existing is not None:
                if existing.status == QueueStatus.PROCESSING:
                    raise AlreadyProcessingError()
                if existing.status == QueueStatus.CANCELLED and existing.current_image_id is not None:
                    # cancelled run is still finishing its last photo
                    raise AlreadyProcessingError()
                if existing.status in (QueueStatus.PENDING, QueueStatus.PAUSED) and not force:
                    raise AlreadyQueuedError()

            if not self.client.is_configured():
                raise NotConfiguredError()

            if force:
                count = collaborators.reset_photos(session, report_id)
                logger.info("report %s: %d photos reset for re-analysis", report_id, count)

            total = collaborators.count_unanalyzed(session, report_id)
            if total == 0:
                collaborators.set_report_status(session, report_id, collaborators.REPORT_DONE)
                raise NothingToAnalyzeError()

            if existing is not None:
                session.delete(existing)
                session.commit()

            paused = system_config.get_queue_state(session).paused
            if paused:
                # breaker is open: park it until an operator resumes
                record = QueueRecord(report_id=report_id, owner_id=owner_id,
                                     status=QueueStatus.PAUSED, total_images=total)
            else:
                last = session.exec(
                    select(func.max(QueueRecord.position)).where(QueueRecord.status == QueueStatus.PENDING)
                ).one()
                record = QueueRecord(report_id=report_id, owner_id=owner_id, status=QueueStatus.PENDING,
                                     position=(last or 0) + 1, total_images=total)
            session.add(record)
            session.commit()
            self.recompute_positions(session)
            session.refresh(record)

        logger.info("report %s queued (status=%s position=%s images=%d)",
                    report_id, record.status.value, record.position, total)
        if not paused:
            self._publish(record)
        return record

    def cancel(self, report_id: str, owner_id: Optional[str] = None):
        with self._session() as session:
            record = self._find(session, report_id, owner_id)
            if record is None:
                raise NotInQueueError()

            if record.status == QueueStatus.PROCESSING:
                # the running loop sees this after the current photo
                record.status = QueueStatus.CANCELLED
                record.position = None
                session.add(record)
                session.commit()
                self.notifier.notify_status_change(report_id, QueueStatus.CANCELLED.value)
            else:
                session.delete(record)
                session.commit()
            self.recompute_positions(session)
        logger.info("report %s removed from queue", report_id)

    # --- crash recovery ---

    def recover(self) -> Dict[str, int]:
        completed = requeued = 0
        with self._session() as session:
            records = session.exec(select(QueueRecord).where(
                QueueRecord.status.in_([QueueStatus.PENDING, QueueStatus.PROCESSING]))).all()
            for record in records:
                if record.processed_images >= record.total_images:
                    # last photo was saved but the record never got marked
                    record.processed_images = record.total_images
                    record.status = QueueStatus.COMPLETED
                    record.completed_at = utcnow()
                    record.current_image_id = None
                    record.position = None
                    session.add(record)
                    collaborators.set_report_status(session, record.report_id, collaborators.REPORT_DONE)
                    completed += 1
                elif record.status == QueueStatus.PROCESSING:
                    record.status = QueueStatus.PENDING
                    record.current_image_id = None
                    session.add(record)
                    requeued += 1

            # a cancelled run that died mid-photo would otherwise block re-enqueue
            stale = session.exec(select(QueueRecord).where(
                QueueRecord.status == QueueStatus.CANCELLED, QueueRecord.current_image_id != None)).all()  # noqa: E711
            for record in stale:
                record.current_image_id = None
                session.add(record)
            session.commit()
            self.recompute_positions(session)

        if completed or requeued:
            logger.warning("startup recovery: %d completed, %d returned to pending", completed, requeued)
        return {"completed": completed, "requeued": requeued}

    # --- execution ---

    def process_report(self, report_id: str) -> bool:
        """Run one report to the end. Returns True if it completed."""
        with self._run_lock:
            return self._run_report(report_id)

    def process_next(self) -> bool:
        """Local polling tick: resume the processing record or start the head of the queue."""
        if not self._run_lock.acquire(blocking=False):
            return False
        try:
            if not self.client.is_configured():
                return False
            with self._session() as session:
                if system_config.get_queue_state(session).paused:
                    return False
                record = session.exec(
                    select(QueueRecord).where(QueueRecord.status == QueueStatus.PROCESSING)
                ).first()
                if record is None:
                    record = session.exec(
                        select(QueueRecord).where(QueueRecord.status == QueueStatus.PENDING)
                        .order_by(QueueRecord.position)
                    ).first()
            if record is None:
                return False
            try:
                return self._run_report(record.report_id)
            except Exception as e:
                logger.error("error processing queue: %s", e)
                return False
        finally:
            self._run_lock.release()

    def _run_report(self, report_id: str) -> bool:
        with self._session() as session:
            record = self._find(session, report_id)
            if record is None:
                logger.warning("report %s not found in queue", report_id)
                return False
            if record.status in (QueueStatus.COMPLETED, QueueStatus.CANCELLED, QueueStatus.PAUSED):
                logger.info("report %s is %s, skipping", report_id, record.status.value)
                return False
            if system_config.get_queue_state(session).paused:
                logger.info("queue paused, report %s not started", report_id)
                return False

            record.status = QueueStatus.PROCESSING
            record.started_at = record.started_at or utcnow()
            record.error_message = None
            session.add(record)
            session.commit()
            self.recompute_positions(session)
            collaborators.set_report_status(session, report_id, collaborators.REPORT_IN_PROGRESS)
            self.notifier.notify_status_change(report_id, QueueStatus.PROCESSING.value)
            logger.info("report %s: analysis started", report_id)

            try:
                return self._photo_loop(session, record)
            except CriticalUpstreamError:
                # breaker already paused this record
                raise
            except Exception as e:
                logger.error("error processing report %s: %s", report_id, e)
                session.rollback()
                if not self._reload(session, record):
                    raise
                if record.status != QueueStatus.PAUSED:
                    record.status = QueueStatus.ERROR
                    record.error_message = str(e)
                    record.current_image_id = None
                    session.add(record)
                    session.commit()
                    self.notifier.notify_status_change(report_id, QueueStatus.ERROR.value)
                raise

    def _reload(self, session: Session, record: QueueRecord) -> bool:
        """Re-read the record; False if it was deleted underneath us."""
        try:
            session.refresh(record)
        except (ObjectDeletedError, InvalidRequestError):
            return False
        return True

    def _photo_loop(self, session: Session, record: QueueRecord) -> bool:
        report_id = record.report_id
        while True:
            photo = collaborators.next_unanalyzed(session, report_id)
            if not self._reload(session, record):
                logger.warning("report %s was removed from the queue during processing, stopping", report_id)
                return False

            if record.status != QueueStatus.PROCESSING:
                logger.info("report %s was %s during processing, stopping", report_id, record.status.value)
                record.current_image_id = None
                session.add(record)
                session.commit()
                return False

            if photo is None:
                record.status = QueueStatus.COMPLETED
                record.completed_at = utcnow()
                record.current_image_id = None
                record.position = None
                session.add(record)
                session.commit()
                self.recompute_positions(session)
                collaborators.set_report_status(session, report_id, collaborators.REPORT_DONE)
                self.notifier.notify_status_change(report_id, QueueStatus.COMPLETED.value)
                logger.info("report %s: analysis completed", report_id)
                return True

            record.current_image_id = photo.id
            session.add(record)
            session.commit()

            self.analyze_photo(session, photo)

            if not self._reload(session, record):
                logger.warning("report %s was removed from the queue during processing, stopping", report_id)
                return False
            record.processed_images += 1
            # photos uploaded after enqueue grow the total
            record.total_images = max(record.total_images, record.processed_images)
            session.add(record)
            session.commit()
            self.notifier.notify_progress(report_id, record.processed_images, record.total_images,
                                          record.progress_percentage)

    # --- per-photo analysis ---

    def analyze_photo(self, session: Session, photo: Photo):
        """Write a caption for one photo. Data problems become diagnostic captions."""
        if not photo.environment_label or not photo.item_label:
            collaborators.save_caption(session, photo, CAPTION_TYPE_MISSING)
            return

        environment = collaborators.find_environment(session, photo.environment_label)
        if environment is None:
            collaborators.save_caption(session, photo, f'Environment "{photo.environment_label}" not found')
            return

        item = collaborators.find_item(session, environment.id, photo.item_label)
        if item is None:
            collaborators.save_caption(session, photo, f'Item "{photo.item_label}" not found')
            return

        image_url = collaborators.photo_url(photo)
        default_prompt = system_config.get_default_prompt(session)
        children = collaborators.children_of(session, item.id)

        if children:
            # stage 1: ask which child this is, with the parent's own prompt only
            identify = self.client.analyze_image(image_url, item.prompt)
            if not identify.success:
                self._handle_failure(session, photo, identify)
                return
            name = resolve(identify.content, [child.name for child in children])
            if name is None:
                collaborators.save_caption(session, photo, CAPTION_NOT_IDENTIFIED)
                return
            child = next(c for c in children if c.name == name)
            prompt = compose_prompt(default_prompt, child.prompt)
        else:
            prompt = compose_prompt(default_prompt, item.prompt)

        result = self.client.analyze_image(image_url, prompt)
        if not result.success:
            self._handle_failure(session, photo, result)
            return
        collaborators.save_caption(session, photo, result.content[:config.CAPTION_MAX_LENGTH])
        logger.debug("photo %s analyzed: %s", photo.id, photo.caption)

    def _handle_failure(self, session: Session, photo: Photo, result: AnalysisResult):
        error = result.error
        if result.critical:
            self.pause_queue(f"{error.status}: {error.message}")
            raise CriticalUpstreamError(error)
        if error.retryable or error.type == "configuration_error":
            # photo stays unanalyzed so a later run picks it up again
            raise UpstreamError(error)
        logger.warning("photo %s could not be analyzed (%s): %s", photo.id, error.type, error.message)
        collaborators.save_caption(session, photo, CAPTION_ANALYSIS_ERROR)

    # --- circuit breaker ---

    def pause_queue(self, reason: str) -> int:
        logger.error("PAUSING QUEUE: %s", reason)
        with self._session() as session:
            system_config.set_paused(session, reason)
            records = session.exec(select(QueueRecord).where(
                QueueRecord.status.in_([QueueStatus.PENDING, QueueStatus.PROCESSING]))).all()
            for record in records:
                record.status = QueueStatus.PAUSED
                record.position = None
                session.add(record)
            session.commit()
            paused_count = session.exec(select(func.count()).select_from(QueueRecord).where(
                QueueRecord.status == QueueStatus.PAUSED)).one()

        for record in records:
            self.notifier.notify_status_change(record.report_id, QueueStatus.PAUSED.value)
        logger.warning("queue paused: %d records affected", paused_count)
        return paused_count

    def resume_queue(self) -> Dict[str, Any]:
        self.client.load_config()
        check = self.client.test_connection()
        if not check["success"]:
            logger.warning("resume refused: %s", check["message"])
            return {"resumed": 0, "message": f"Could not resume: {check['message']}"}

        with self._session() as session:
            records = session.exec(select(QueueRecord).where(QueueRecord.status == QueueStatus.PAUSED)).all()
            for record in records:
                record.status = QueueStatus.PENDING
                record.current_image_id = None
                session.add(record)
            session.commit()
            system_config.clear_paused(session)
            self.recompute_positions(session)

        for record in records:
            self.notifier.notify_status_change(record.report_id, QueueStatus.PENDING.value)
            self._publish(record)

        logger.info("queue resumed: %d records requeued", len(records))
        return {"resumed": len(records),
                "message": f"Queue resumed. {len(records)} reports requeued."}

    # --- status queries ---

    def user_status(self, report_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        with self._session() as session:
            record = self._find(session, report_id, owner_id)
            if record is None:
                return {"inQueue": False}

            images_before = 0
            if record.status == QueueStatus.PENDING and record.position is not None:
                ahead = session.exec(select(QueueRecord).where(
                    QueueRecord.status == QueueStatus.PENDING,
                    QueueRecord.position < record.position)).all()
                images_before = sum(r.total_images for r in ahead)

        remaining = max(record.total_images - record.processed_images, 0)
        seconds = (images_before + remaining) * config.SECONDS_PER_IMAGE
        return {
            "inQueue": record.status in ACTIVE_STATUSES,
            "position": record.position,
            "status": record.status.value,
            "totalImages": record.total_images,
            "processedImages": record.processed_images,
            "progressPercentage": record.progress_percentage,
            "estimatedMinutes": math.ceil(seconds / 60),
        }

    def full_queue(self) -> List[Dict[str, Any]]:
        order = {QueueStatus.PROCESSING: 0, QueueStatus.PENDING: 1, QueueStatus.PAUSED: 2}
        with self._session() as session:
            rows = session.exec(
                select(QueueRecord, Report, User)
                .join(Report, Report.id == QueueRecord.report_id)
                .join(User, User.id == QueueRecord.owner_id)
                .where(QueueRecord.status.in_(list(ACTIVE_STATUSES)))
            ).all()

        rows = sorted(rows, key=lambda row: (order[row[0].status], row[0].position or 0, row[0].created_at))
        return [
            {
                "id": record.id,
                "reportId": record.report_id,
                "address": report.address or "N/A",
                "ownerName": user.name or "N/A",
                "ownerEmail": user.email or "N/A",
                "status": record.status.value,
                "position": record.position,
                "totalImages": record.total_images,
                "processedImages": record.processed_images,
                "progressPercentage": record.progress_percentage,
                "createdAt": record.created_at,
                "startedAt": record.started_at,
            }
            for record, report, user in rows
        ]

    def stats(self) -> Dict[str, int]:
        def count(session, *where):
            return session.exec(select(func.count()).select_from(QueueRecord).where(*where)).one()

        since = utcnow() - timedelta(hours=24)
        with self._session() as session:
            pending = count(session, QueueRecord.status == QueueStatus.PENDING)
            processing = count(session, QueueRecord.status == QueueStatus.PROCESSING)
            paused = count(session, QueueRecord.status == QueueStatus.PAUSED)
            completed_today = count(session, QueueRecord.status == QueueStatus.COMPLETED,
                                    QueueRecord.completed_at > since)
        return {
            "pending": pending,
            "processing": processing,
            "paused": paused,
            "completedToday": completed_today,
            "total": pending + processing + paused,
        }

    def global_status(self) -> Dict[str, Any]:
        with self._session() as session:
            state = system_config.get_queue_state(session)
            paused_items = session.exec(select(func.count()).select_from(QueueRecord).where(
                QueueRecord.status == QueueStatus.PAUSED)).one()
        if not state.paused:
            return {"paused": False, "pausedItems": paused_items}
        return {
            "paused": True,
            "reason": state.reason or "Unknown reason",
            "pausedAt": state.paused_at,
            "pausedItems": paused_items,
        }
