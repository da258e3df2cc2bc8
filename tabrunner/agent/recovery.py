"""Error recovery and guaranteed queue advancement.

Every job outcome, success or failure, ends in
``mark_url_processed_and_continue``, which schedules three independent
scheduler ticks. Each tick re-reads the session, so the redundant ones are
no-ops once the queue has moved on.
"""

import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from tabrunner.agent.state import ExtractionJob, pop_job, progress_text, timer_name
from tabrunner.core.config import config
from tabrunner.core.errors import (
    BackendDeliveryError,
    ExtractionTimeoutError,
    JobError,
)
from tabrunner.core.events import event_bus
from tabrunner.core.timers import TaskScheduler
from tabrunner.data.store import SessionStore
from tabrunner.fetching.reporter import BackendReporter
from tabrunner.fetching.tabs import TabHost

logger = logging.getLogger(__name__)

Tick = Callable[[str], Awaitable[Any]]


class ErrorRecovery:
    def __init__(
        self,
        store: SessionStore,
        reporter: BackendReporter,
        tabs: TabHost,
        timers: TaskScheduler,
        tick: Tick,
    ):
        self.store = store
        self.reporter = reporter
        self.tabs = tabs
        self.timers = timers
        self.tick = tick
        self._seq = itertools.count(1)

    def release_job(self, session_id: str, job: ExtractionJob, close_delay: Optional[float] = None):
        """Cancel the job's timers and close its tab, now or after ``close_delay``."""
        for name in (job.get("load_timer"), job.get("timeout_timer")):
            if name:
                self.timers.cancel(name)
        tab_id = job.get("tab_id")
        if tab_id is None or close_delay is None:
            return
        self.timers.schedule(
            timer_name(session_id, tab_id, "close"),
            close_delay,
            self.tabs.close_quietly,
            tab_id,
        )

    async def handle_url_error(self, session_id: str, url: str, error: JobError):
        await self._fail_job(session_id, url, error, close_delay=config.TAB_CLOSE_DELAY)

    async def handle_extraction_timeout(self, session_id: str, url: str, tab_id: Optional[int]):
        logger.warning(f"Extraction timeout for {url} (tab {tab_id})")
        error = ExtractionTimeoutError("Extraction timeout - page may be slow or blocked")
        await self._fail_job(session_id, url, error, close_delay=None, tab_id=tab_id)

    async def _fail_job(
        self,
        session_id: str,
        url: str,
        error: JobError,
        close_delay: Optional[float],
        tab_id: Optional[int] = None,
    ):
        try:
            record = None
            job = None
            destination = config.BACKEND_URL
            async with self.store.edit(session_id) as session:
                if session is not None:
                    session["consecutive_errors"] += 1
                    session["total_errors"] += 1
                    job = pop_job(session, tab_id=tab_id, url=url)
                    if job is not None:
                        self.release_job(session_id, job, close_delay)
                    logger.warning(
                        f"URL error for {url}: {error} "
                        f"(consecutive: {session['consecutive_errors']})"
                    )
                    record = {
                        "sessionId": session_id,
                        "profileUrl": url,
                        "success": False,
                        "error": str(error),
                        "extractionMethod": error.extraction_method,
                        "consecutiveErrors": session["consecutive_errors"],
                        "totalErrors": session["total_errors"],
                    }
                    destination = session["backend_url"]

            # A timed-out tab is closed right away rather than after the grace delay
            if close_delay is None:
                await self.tabs.close_quietly(tab_id if tab_id is not None else (job or {}).get("tab_id"))

            event_bus.publish(
                "job_error",
                session_id=session_id,
                url=url,
                error=str(error),
                kind=type(error).__name__,
            )

            if record is not None:
                try:
                    await self.reporter.send(destination, record)
                except BackendDeliveryError as e:
                    logger.warning(f"Backend error notification failed: {e}")
                except Exception:
                    logger.exception(f"Unexpected failure reporting error for {url}")

            logger.info(f"Guaranteed continuation after error: {error}")
            await self.mark_url_processed_and_continue(session_id, url, is_error=True)
        except Exception:
            logger.exception(f"Critical error while recovering {url}")
            self._schedule_tick(session_id, "rescue", config.QUEUE_ADVANCE_DELAY)

    async def handle_extraction_complete(self, request: Dict[str, Any], tab_id: Optional[int]):
        session_id = request["sessionId"]
        reported_url = request.get("profileUrl") or request.get("url")
        success = bool(request.get("success"))
        final_url = reported_url or "unknown-url"
        logger.info(f"Extraction completed for {reported_url} (tab {tab_id})")

        try:
            destination = request.get("backendUrl")
            counters: Dict[str, int] = {}
            job = None
            async with self.store.edit(session_id) as session:
                if session is not None:
                    if success:
                        session["consecutive_errors"] = 0
                    else:
                        session["consecutive_errors"] += 1
                        session["total_errors"] += 1
                    job = pop_job(session, tab_id=tab_id, url=reported_url)
                    if job is not None:
                        # The queued URL is what completes, whatever the page reported
                        final_url = job["url"]
                        self.release_job(session_id, job)
                        logger.info(f"Cleaned up extraction tracking for {final_url}")
                    destination = destination or session["backend_url"]
                    counters = {
                        "consecutiveErrors": session["consecutive_errors"],
                        "totalErrors": session["total_errors"],
                    }

            record = {k: v for k, v in request.items() if k != "action"}
            record.update(counters)
            record["profileUrl"] = reported_url or final_url
            try:
                await self.reporter.send(destination or config.BACKEND_URL, record)
            except BackendDeliveryError as e:
                logger.warning(f"Backend completion notification failed: {e}")
            except Exception:
                logger.exception(f"Unexpected failure reporting completion for {final_url}")

            close_tab = tab_id if tab_id is not None else (job or {}).get("tab_id")
            if close_tab is not None:
                self.timers.schedule(
                    timer_name(session_id, close_tab, "close"),
                    config.TAB_CLOSE_DELAY,
                    self.tabs.close_quietly,
                    close_tab,
                )

            await self.mark_url_processed_and_continue(session_id, final_url, is_error=not success)
        except Exception:
            logger.exception("Error in completion handling")
            if tab_id is not None:
                self.timers.schedule(
                    timer_name(session_id, tab_id, "close"), 1.0, self.tabs.close_quietly, tab_id
                )
            self.timers.schedule(
                f"{session_id}:rescue-mark:{next(self._seq)}",
                1.0,
                self.mark_url_processed_and_continue,
                session_id,
                final_url,
                True,
            )

    async def mark_url_processed_and_continue(self, session_id: str, url: str, is_error: bool = False):
        try:
            async with self.store.edit(session_id) as session:
                if session is not None:
                    if url in session["urls"]:
                        session["completed_urls"].add(url)
                    else:
                        logger.warning(f"{url} is not queued in {session_id}, not marking it")
                    session["last_processed_time"] = time.time()
                    if not is_error:
                        session["consecutive_errors"] = 0
                    progress = progress_text(session)
                    logger.info(
                        f"Marked {url} as {'failed' if is_error else 'completed'}. Progress: {progress}"
                    )
                    event_bus.publish(
                        "progress",
                        session_id=session_id,
                        text=progress,
                        completed=len(session["completed_urls"]),
                        total=len(session["urls"]),
                        errors=session["total_errors"],
                    )

            if is_error:
                delay = min(
                    config.QUEUE_ADVANCE_DELAY + config.ERROR_ADVANCE_EXTRA,
                    config.MAX_ERROR_ADVANCE_DELAY,
                )
            else:
                delay = config.QUEUE_ADVANCE_DELAY
            logger.info(f"Primary continuation scheduled in {delay:.1f}s")

            self._schedule_tick(session_id, "primary", delay)
            self._schedule_tick(session_id, "backup", delay + config.BACKUP_CONTINUATION_OFFSET)
            self._schedule_tick(session_id, "emergency", delay + config.EMERGENCY_CONTINUATION_OFFSET)
        except Exception:
            logger.exception(f"Error in mark_url_processed_and_continue for {session_id}")
            for attempt in range(1, config.FALLBACK_ATTEMPTS + 1):
                self._schedule_tick(
                    session_id, f"fallback-{attempt}", attempt * config.QUEUE_ADVANCE_DELAY
                )

    def _schedule_tick(self, session_id: str, label: str, delay: float):
        self.timers.schedule(
            f"{session_id}:continue:{label}:{next(self._seq)}", delay, self.tick, session_id
        )
