"""Long-lived sync workers and the ``activity-sync`` command line."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from typing import Any, Callable

import structlog

from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db.session import init_engine, session_scope
from app.repositories.webhook import WebhookEventRepository
from app.services.sync_factory import create_reconciler
from app.tasks.sync_jobs import (
    backfill_athlete_job,
    process_pending_events_job,
    reconcile_job,
)

logger = structlog.get_logger(__name__)


class PeriodicWorker(threading.Thread):
    """Runs ``job(stop_event)`` every ``interval`` seconds until stopped.

    A failing pass is logged and the next one is still scheduled.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[threading.Event], Any],
        interval: float,
        stop_event: threading.Event,
        *,
        run_immediately: bool = True,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._job = job
        self._interval = interval
        self._stop_event = stop_event
        self._run_immediately = run_immediately
        self.passes = 0

    def run(self) -> None:
        logger.info("worker_started", worker=self.name, interval_seconds=self._interval)
        if not self._run_immediately and self._stop_event.wait(self._interval):
            return
        while not self._stop_event.is_set():
            try:
                result = self._job(self._stop_event)
            except Exception:
                logger.exception("worker_pass_failed", worker=self.name)
            else:
                logger.info("worker_pass_finished", worker=self.name, result=result)
            self.passes += 1
            if self._stop_event.wait(self._interval):
                break
        logger.info("worker_stopped", worker=self.name)


def build_workers(settings: Settings, stop_event: threading.Event) -> list[PeriodicWorker]:
    workers = [
        PeriodicWorker(
            "event-processor",
            process_pending_events_job,
            settings.event_processing_interval_seconds,
            stop_event,
        )
    ]
    if settings.polling_enabled:
        workers.append(
            PeriodicWorker(
                "reconciler",
                reconcile_job,
                settings.polling_interval_seconds,
                stop_event,
                run_immediately=False,
            )
        )
    return workers


def run_workers(settings: Settings, stop_event: threading.Event) -> None:
    workers = build_workers(settings, stop_event)
    for worker in workers:
        worker.start()
    stop_event.wait()
    for worker in workers:
        worker.join()


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="activity-sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="run the event processor and reconciler until interrupted")
    subparsers.add_parser("process-events", help="run one pass over pending webhook events")

    reconcile_parser = subparsers.add_parser("reconcile", help="run one reconciliation sweep")
    reconcile_parser.add_argument("--athlete-id", type=int, default=None)

    backfill_parser = subparsers.add_parser("backfill", help="initial sync for one athlete")
    backfill_parser.add_argument("athlete_id", type=int)

    failed_parser = subparsers.add_parser("list-failed", help="show events that exhausted their retries")
    failed_parser.add_argument("--limit", type=int, default=50)

    requeue_parser = subparsers.add_parser("requeue", help="return a failed event to pending")
    requeue_parser.add_argument("event_id", type=int)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    init_engine(settings)

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    if args.command == "run":
        run_workers(settings, stop_event)
        return 0

    if args.command == "process-events":
        _print(process_pending_events_job(stop_event))
        return 0

    if args.command == "reconcile":
        if args.athlete_id is None:
            _print(reconcile_job(stop_event))
            return 0
        with session_scope() as session:
            report = create_reconciler(session, settings).reconcile_account(args.athlete_id)
            _print({"athlete_id": args.athlete_id, "synced_activity_ids": report.synced_activity_ids})
        return 0

    if args.command == "backfill":
        _print(backfill_athlete_job(args.athlete_id))
        return 0

    if args.command == "list-failed":
        with session_scope() as session:
            events = WebhookEventRepository(session).list_failed(args.limit)
            _print(
                [
                    {
                        "id": event.id,
                        "object_type": event.object_type,
                        "object_id": event.object_id,
                        "aspect_type": event.aspect_type,
                        "attempts": event.attempts,
                        "error": event.error_message,
                    }
                    for event in events
                ]
            )
        return 0

    if args.command == "requeue":
        with session_scope() as session:
            requeued = WebhookEventRepository(session).requeue(args.event_id)
        if not requeued:
            print(f"Event {args.event_id} is not in the failed state")
            return 1
        print(f"Event {args.event_id} requeued")
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
