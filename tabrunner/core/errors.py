"""Failure taxonomy for the session orchestrator.

Job-level errors are always recovered locally: they are counted, reported to
the backend and turned into a forced queue advance. Nothing here is fatal to
the scheduler.
"""

from typing import Optional


class TabRunnerError(Exception):
    """Base class for every orchestrator error."""


class JobError(TabRunnerError):
    """A single URL could not be extracted."""

    extraction_method = "active-tab-error"


class TabCreationError(JobError):
    """The browser refused to open a tab for the URL."""


class LoadTimeoutError(JobError):
    """The tab never reached a usable state, or vanished while loading."""


class InjectionError(JobError):
    """Session context could not be handed to the page agent."""


class ExtractionTimeoutError(JobError):
    """No completion callback arrived within the job budget."""

    extraction_method = "active-tab-timeout"


class BackendDeliveryError(TabRunnerError):
    """A record could not be delivered after every retry."""

    def __init__(self, message: str, attempts: int, status_code: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class SessionNotFoundError(TabRunnerError):
    """The session was already finished and removed. Benign."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class TabNotFoundError(TabRunnerError):
    """The tab is closed or was never opened."""

    def __init__(self, tab_id):
        super().__init__(f"No tab with id: {tab_id}")
        self.tab_id = tab_id
