import logging
from typing import Optional

from tabrunner.core.config import config
from tabrunner.core.events import event_bus


class EventBusHandler(logging.Handler):
    """
    Custom logging handler that publishes logs to the event bus
    so they can be displayed in the TUI.
    """

    def emit(self, record):
        try:
            msg = self.format(record)
            event_bus.publish("log", message=msg, level=record.levelname)
        except Exception:
            self.handleError(record)


def setup_logging(log_file: Optional[str] = None, console: bool = False):
    """
    Configure logging to write to a file and the event bus.
    Headless runs also echo to the console.
    """
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    handlers = [logging.FileHandler(log_file or config.LOG_FILE), EventBusHandler()]
    if console:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=config.LOG_LEVEL, handlers=handlers, force=True)
    logging.info("Logging initialized")
