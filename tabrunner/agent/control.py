import asyncio
import logging
from typing import Any, Dict

from tabrunner.core.errors import TabRunnerError

logger = logging.getLogger(__name__)


class ControlChannelError(TabRunnerError):
    pass


class ControlChannel:
    """
    Caller side of the control surface.

    Pings the orchestrator until it answers, backing off linearly, and
    only then sends the real message.
    """

    def __init__(self, orchestrator, max_retries: int = 5, initial_delay: float = 0.2):
        self.orchestrator = orchestrator
        self.max_retries = max_retries
        self.initial_delay = initial_delay

    async def ping(self) -> bool:
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(f"Pinging orchestrator ({attempt}/{self.max_retries})...")
                response = await self.orchestrator.handle_message({"action": "ping"})
                if response and response.get("success"):
                    return True
            except Exception as e:
                logger.warning(f"Ping failed ({attempt}/{self.max_retries}): {e}")
            if attempt < self.max_retries:
                await asyncio.sleep(self.initial_delay * attempt)
        return False

    async def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        if not await self.ping():
            raise ControlChannelError(
                f"Orchestrator did not respond to pings after {self.max_retries} retries"
            )
        return await self.orchestrator.handle_message(message)
