"""
Digest worker: the periodic batch that folds unprocessed events into a
digest and delivers it to the notification sink.

One tick is an explicit sequence of stages:

    FETCH → AGGREGATE → PERSIST_DIGEST → MARK_PROCESSED → DELIVER → CONFIRM_SENT
    RETRY_UNSENT

Each stage either lets the chain continue, ends the new-digest chain early
because there is nothing more to do (no events, no sink, delivery refused),
or fails. A failure is logged, recorded on the `TickReport` and aborts the
rest of the tick. Stages already committed are never undone; the next tick
picks up whatever is left (unprocessed events, unsent digests).

RETRY_UNSENT runs whenever no stage failed, including ticks with no new
events, so a backlog of unsent digests drains even when nothing new
arrives.

Run standalone:
    python backend/worker.py          # loop every DIGEST_INTERVAL_SECONDS
    python backend/worker.py --once   # single tick
"""

import argparse
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, List, Optional

from digest import generate_digest, resolve_timezone
from errors import DeliveryFailure, StorageFailure, TickStageFailed
from models import Digest, StoredEvent
from repo_digests import DigestRepo
from repo_events import EventRepo
from settings import LOG_FORMAT, Settings, settings
from sink import DigestSink

logger = logging.getLogger(__name__)


class TickStage(Enum):
    FETCH = "fetch"
    AGGREGATE = "aggregate"
    PERSIST_DIGEST = "persist_digest"
    MARK_PROCESSED = "mark_processed"
    DELIVER = "deliver"
    CONFIRM_SENT = "confirm_sent"
    RETRY_UNSENT = "retry_unsent"


@dataclass
class TickReport:
    """What one tick did; `failure` is set when a stage aborted the tick."""

    events: List[StoredEvent] = field(default_factory=list)
    digest: Optional[Digest] = None
    processed_count: int = 0
    delivered: bool = False
    retried: List[str] = field(default_factory=list)
    retry_failures: List[str] = field(default_factory=list)
    completed: List[TickStage] = field(default_factory=list)
    failure: Optional[TickStageFailed] = None

    @property
    def digest_id(self) -> Optional[str]:
        return self.digest.digest_id if self.digest else None

    @property
    def failed_stage(self) -> Optional[TickStage]:
        return self.failure.stage if self.failure else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DigestWorker:
    """Runs digest ticks against the event/digest stores and the sink.

    `sink` may be None when no sink is configured: digests are still
    persisted and events marked, delivery is skipped with a log line.
    """

    def __init__(
        self,
        event_repo: EventRepo,
        digest_repo: DigestRepo,
        sink: Optional[DigestSink],
        tz: tzinfo = timezone.utc,
        batch_limit: int = 500,
        retry_limit: int = 500,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.event_repo = event_repo
        self.digest_repo = digest_repo
        self.sink = sink
        self.tz = tz
        self.batch_limit = batch_limit
        self.retry_limit = retry_limit
        self._now = now

    @classmethod
    def from_settings(cls, cfg: Settings) -> "DigestWorker":
        sink = None
        if cfg.sink_configured:
            sink = DigestSink(cfg.sink_url, cfg.sink_token, timeout=cfg.sink_timeout_seconds)
        return cls(
            event_repo=EventRepo(cfg.db_url),
            digest_repo=DigestRepo(cfg.db_url),
            sink=sink,
            tz=resolve_timezone(cfg.digest_timezone),
            batch_limit=cfg.digest_batch_limit,
            retry_limit=cfg.max_list_limit,
        )

    # --- stages: return True to continue the new-digest chain ---

    def _fetch(self, report: TickReport) -> bool:
        report.events = self.event_repo.fetch_unprocessed(limit=self.batch_limit)
        logger.info("Fetched %d unprocessed events", len(report.events))
        return bool(report.events)

    def _aggregate(self, report: TickReport) -> bool:
        report.digest = generate_digest(report.events, self.tz)
        if report.digest is None:
            logger.info("No digest generated")
            return False
        logger.info("Generated digest %s: %s", report.digest.digest_id, report.digest.message)
        return True

    def _persist_digest(self, report: TickReport) -> bool:
        digest = report.digest
        created = self.digest_repo.create_if_new(
            digest.digest_id,
            digest.payload.model_dump(mode="json"),
            digest.message,
        )
        if not created:
            logger.warning("Digest %s already stored", digest.digest_id)
        return True

    def _mark_processed(self, report: TickReport) -> bool:
        ids = report.digest.payload.event_ids
        try:
            report.processed_count = self.event_repo.mark_processed(ids, self._now())
        except Exception:
            logger.critical(
                "Digest %s stored but %d events could not be marked processed; "
                "they will be folded into another digest next tick",
                report.digest.digest_id,
                len(ids),
            )
            raise
        logger.info("Marked %d events as processed", report.processed_count)
        return True

    def _deliver(self, report: TickReport) -> bool:
        if self.sink is None:
            logger.info("Sink not configured, skipping delivery of %s", report.digest_id)
            return False
        try:
            self.sink.deliver(report.digest_id, report.digest.message)
        except DeliveryFailure as exc:
            logger.error("Delivery of digest %s failed: %s (will retry next tick)", report.digest_id, exc)
            return False
        report.delivered = True
        return True

    def _confirm_sent(self, report: TickReport) -> bool:
        self.digest_repo.mark_sent(report.digest_id, self._now())
        logger.info("Digest %s sent and confirmed", report.digest_id)
        return True

    def _retry_unsent(self, report: TickReport) -> None:
        if self.sink is None:
            return
        backlog = [
            d for d in self.digest_repo.list_digests(unsent_only=True, limit=self.retry_limit)
            if d.digest_id != report.digest_id
        ]
        for unsent in backlog:
            logger.info("Retrying unsent digest %s", unsent.digest_id)
            try:
                self.sink.deliver(unsent.digest_id, unsent.message)
                self.digest_repo.mark_sent(unsent.digest_id, self._now())
            except (DeliveryFailure, StorageFailure) as exc:
                logger.error("Retry failed for digest %s: %s", unsent.digest_id, exc)
                report.retry_failures.append(unsent.digest_id)
                continue
            report.retried.append(unsent.digest_id)
            logger.info("Retry succeeded for digest %s", unsent.digest_id)

    def run_tick(self) -> TickReport:
        """Run one tick. Never raises; failures are recorded on the report."""

        report = TickReport()
        chain = [
            (TickStage.FETCH, self._fetch),
            (TickStage.AGGREGATE, self._aggregate),
            (TickStage.PERSIST_DIGEST, self._persist_digest),
            (TickStage.MARK_PROCESSED, self._mark_processed),
            (TickStage.DELIVER, self._deliver),
            (TickStage.CONFIRM_SENT, self._confirm_sent),
        ]
        for stage, run in chain:
            try:
                proceed = run(report)
            except Exception as exc:
                return self._abort(report, stage, exc)
            report.completed.append(stage)
            if not proceed:
                break

        try:
            self._retry_unsent(report)
        except Exception as exc:
            return self._abort(report, TickStage.RETRY_UNSENT, exc)
        report.completed.append(TickStage.RETRY_UNSENT)
        return report

    def _abort(self, report: TickReport, stage: TickStage, exc: Exception) -> TickReport:
        report.failure = TickStageFailed(stage, exc)
        logger.error("Tick aborted at %s: %s", stage.value, exc, exc_info=exc)
        return report

    def run_forever(self, interval_seconds: float, stop: Optional[threading.Event] = None) -> None:
        """Run ticks on a fixed interval until `stop` is set."""

        stop = stop or threading.Event()
        logger.info("Digest worker started (interval=%ss)", interval_seconds)
        while not stop.is_set():
            report = self.run_tick()
            logger.info(
                "Tick finished: events=%d digest=%s delivered=%s retried=%d failed_stage=%s",
                len(report.events),
                report.digest_id,
                report.delivered,
                len(report.retried),
                report.failed_stage.value if report.failed_stage else None,
            )
            stop.wait(interval_seconds)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fold unprocessed events into digests and deliver them.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    worker = DigestWorker.from_settings(settings)

    if args.once:
        report = worker.run_tick()
        return 1 if report.failure else 0

    try:
        worker.run_forever(settings.digest_interval_seconds)
    except KeyboardInterrupt:
        logger.info("Digest worker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
