from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading
import time

from issuesolver.collaborators import TicketStore
from issuesolver.config import AppConfig
from issuesolver.models import FeedbackCycleResult
from issuesolver.observability import log_event
from issuesolver.review_processor import ReviewFeedbackProcessor


LOGGER = logging.getLogger("issuesolver.scanner")


class FeedbackScanner:
    """Polls in-review tickets and runs one feedback cycle per ticket at a time."""

    def __init__(
        self,
        config: AppConfig,
        *,
        tickets: TicketStore,
        processor: ReviewFeedbackProcessor,
    ) -> None:
        self._config = config
        self._tickets = tickets
        self._processor = processor
        self._running: dict[str, Future[FeedbackCycleResult]] = {}
        self._running_lock = threading.Lock()

    def run(self, *, once: bool, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        with ThreadPoolExecutor(
            max_workers=self._config.runtime.worker_count,
            thread_name_prefix="feedback",
        ) as pool:
            while not stop.is_set():
                log_event(LOGGER, "poll_started", once=once)
                self.poll_once(pool)
                log_event(LOGGER, "poll_completed", running_ticket_count=self.running_count())

                if once:
                    self._wait_for_all()
                    break

                stop.wait(self._config.runtime.poll_interval_seconds)
            self._wait_for_all()
        log_event(LOGGER, "scanner_stopped")

    def poll_once(self, pool: ThreadPoolExecutor) -> list[str]:
        self._reap_finished()
        try:
            ticket_keys = self._tickets.list_in_review_ticket_keys()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ticket_listing_failed",
                level=logging.ERROR,
                error_type=type(exc).__name__,
            )
            return []
        log_event(LOGGER, "tickets_fetched", ticket_count=len(ticket_keys))

        enqueued: list[str] = []
        for ticket_key in ticket_keys:
            with self._running_lock:
                if ticket_key in self._running:
                    log_event(
                        LOGGER,
                        "feedback_cycle_skipped",
                        ticket_key=ticket_key,
                        reason="already_running",
                    )
                    continue
                fut = pool.submit(self._processor.process_ticket, ticket_key)
                self._running[ticket_key] = fut
            enqueued.append(ticket_key)
            log_event(LOGGER, "feedback_cycle_enqueued", ticket_key=ticket_key)
        return enqueued

    def running_count(self) -> int:
        with self._running_lock:
            return len(self._running)

    def _reap_finished(self) -> None:
        with self._running_lock:
            finished = [key for key, fut in self._running.items() if fut.done()]
            futures = [(key, self._running.pop(key)) for key in finished]

        for ticket_key, fut in futures:
            try:
                result = fut.result()
            except Exception as exc:  # noqa: BLE001
                # Already logged with full context by the processor.
                log_event(
                    LOGGER,
                    "feedback_cycle_reaped",
                    ticket_key=ticket_key,
                    outcome="failed",
                    error_type=type(exc).__name__,
                )
                continue
            log_event(
                LOGGER,
                "feedback_cycle_reaped",
                ticket_key=ticket_key,
                outcome=result.status,
            )

    def _wait_for_all(self) -> None:
        while True:
            self._reap_finished()
            with self._running_lock:
                if not self._running:
                    return
            time.sleep(0.05)
