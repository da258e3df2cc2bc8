import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _bounded_float(name: str, default: str, low: float, high: float) -> float:
    return min(max(float(os.getenv(name, default)), low), high)


class Config:
    # Backend
    BACKEND_URL = os.getenv(
        "BACKEND_URL", "https://bloomix-frontend-test.onrender.com/v1"
    )
    BACKEND_ENDPOINT_PATH = os.getenv(
        "BACKEND_ENDPOINT_PATH", "/api/headhunter/process-linkedin-dom"
    )
    BACKEND_RETRIES = min(max(int(os.getenv("BACKEND_RETRIES", "3")), 1), 10)
    BACKEND_RETRY_DELAY = _bounded_float("BACKEND_RETRY_DELAY", "1.0", 0.0, 30.0)
    BACKEND_TIMEOUT = _bounded_float("BACKEND_TIMEOUT", "30.0", 1.0, 120.0)
    REPORTER_USER_AGENT = os.getenv("REPORTER_USER_AGENT", "TabRunner/2.0")

    # Only URLs containing this fragment are queued
    PROFILE_URL_PATTERN = os.getenv("PROFILE_URL_PATTERN", "linkedin.com/in/")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "tabrunner.log")
    PROJECT_ROOT = Path(__file__).parent.parent.parent

    # Session storage
    SESSION_STORE_PATH = os.getenv(
        "SESSION_STORE_PATH", "tabrunner_data/sessions.json"
    )
    SESSIONS_KEY = "active_sessions"
    RESUME_SESSIONS = os.getenv("RESUME_SESSIONS", "false").lower() == "true"

    # Browser Configuration
    # The page agent only renders reliably in a visible, focused tab
    HEADLESS = os.getenv("HEADLESS", "false").lower() == "true"
    AGENT_SCRIPT_PATH = os.getenv("AGENT_SCRIPT_PATH")
    AGENT_HANDLER = os.getenv("AGENT_HANDLER", "__tabrunnerAgent")
    AGENT_BINDING = os.getenv("AGENT_BINDING", "tabrunnerSendMessage")

    # User Agents (Simple list for rotation)
    USER_AGENTS = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    ]

    # One job in flight per session
    MAX_CONCURRENT_TABS = 1

    # Queue timings (seconds)
    START_DELAY = _bounded_float("START_DELAY", "2.0", 0.0, 60.0)
    EXTRACTION_TIMEOUT = _bounded_float("EXTRACTION_TIMEOUT", "45.0", 5.0, 600.0)
    JOB_GRACE = _bounded_float("JOB_GRACE", "15.0", 0.0, 300.0)
    QUEUE_ADVANCE_DELAY = _bounded_float("QUEUE_ADVANCE_DELAY", "3.0", 0.1, 60.0)
    ERROR_ADVANCE_EXTRA = 2.0
    MAX_ERROR_ADVANCE_DELAY = 6.0
    BACKUP_CONTINUATION_OFFSET = 15.0
    EMERGENCY_CONTINUATION_OFFSET = 45.0
    FALLBACK_ATTEMPTS = 5
    STALL_THRESHOLD = _bounded_float("STALL_THRESHOLD", "300.0", 30.0, 3600.0)

    # Tab lifecycle timings (seconds)
    TAB_CREATION_DELAY = _bounded_float("TAB_CREATION_DELAY", "2.0", 0.0, 60.0)
    ERROR_BACKOFF_STEP = 1.5
    MAX_ERROR_BACKOFF = 8.0
    LOAD_POLL_INITIAL_DELAY = 1.5
    LOAD_POLL_INTERVAL = 1.0
    MAX_LOAD_CHECKS = min(max(int(os.getenv("MAX_LOAD_CHECKS", "30")), 1), 300)
    DOM_READY_WAIT = _bounded_float("DOM_READY_WAIT", "7.0", 0.0, 60.0)
    INJECTION_ATTEMPTS = min(max(int(os.getenv("INJECTION_ATTEMPTS", "3")), 1), 10)
    INJECTION_RETRY_DELAY = 3.0
    TAB_CLOSE_DELAY = 2.0


config = Config()
