import time
from typing import Iterable, List, Optional, Set, TypedDict


class ExtractionJob(TypedDict):
    url: str
    url_index: int
    tab_id: Optional[int]  # None until the tab is open
    start_time: float
    injection_attempted: bool
    load_timer: Optional[str]  # TaskScheduler names, not persisted handles
    timeout_timer: Optional[str]


class Session(TypedDict):
    session_id: str
    urls: List[str]
    completed_urls: Set[str]
    current_index: int
    consecutive_errors: int
    total_errors: int
    is_stopping: bool
    active_extractions: List[ExtractionJob]
    start_time: float
    last_processed_time: float
    backend_url: str


def filter_profile_urls(urls: Iterable[str], pattern: str) -> List[str]:
    """Keep profile URLs only, first occurrence wins."""
    seen = set()
    result = []
    for url in urls:
        if not url or not isinstance(url, str) or pattern not in url:
            continue
        if url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


def new_session(session_id: str, urls: List[str], backend_url: str) -> Session:
    now = time.time()
    return Session(
        session_id=session_id,
        urls=list(urls),
        completed_urls=set(),
        current_index=0,
        consecutive_errors=0,
        total_errors=0,
        is_stopping=False,
        active_extractions=[],
        start_time=now,
        last_processed_time=now,
        backend_url=backend_url,
    )


def new_job(url: str, url_index: int) -> ExtractionJob:
    return ExtractionJob(
        url=url,
        url_index=url_index,
        tab_id=None,
        start_time=time.time(),
        injection_attempted=False,
        load_timer=None,
        timeout_timer=None,
    )


def timer_name(session_id: str, tab_id, kind: str) -> str:
    return f"{session_id}:tab-{tab_id}:{kind}"


def find_job(
    session: Session, tab_id: Optional[int] = None, url: Optional[str] = None
) -> Optional[ExtractionJob]:
    """Match by tab first, then by URL."""
    jobs = session.get("active_extractions") or []
    if tab_id is not None:
        for job in jobs:
            if job.get("tab_id") == tab_id:
                return job
    if url is not None:
        for job in jobs:
            if job.get("url") == url:
                return job
    return None


def pop_job(
    session: Session, tab_id: Optional[int] = None, url: Optional[str] = None
) -> Optional[ExtractionJob]:
    job = find_job(session, tab_id=tab_id, url=url)
    if job is not None:
        session["active_extractions"].remove(job)
    return job


def progress_text(session: Session) -> str:
    return f"{len(session['completed_urls'])}/{len(session['urls'])}"
