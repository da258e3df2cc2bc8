import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from tabrunner.core.config import config
from tabrunner.core.errors import BackendDeliveryError

logger = logging.getLogger(__name__)


class BackendReporter:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def send(
        self,
        destination: str,
        record: Dict[str, Any],
        endpoint_path: Optional[str] = None,
        retries: Optional[int] = None,
    ) -> Any:
        """
        POST a JSON record, retrying with linear backoff.
        Raises BackendDeliveryError once every attempt has failed.
        """
        retries = config.BACKEND_RETRIES if retries is None else max(retries, 1)
        full_url = f"{destination.rstrip('/')}{endpoint_path or config.BACKEND_ENDPOINT_PATH}"
        label = "SUCCESS" if record.get("success") else "FAILED"
        target = record.get("profileUrl") or record.get("url")
        last_error: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(1, retries + 1):
            try:
                logger.info(
                    f"Sending to backend (attempt {attempt}/{retries}): {label} for {target}"
                )
                response = await self._post(full_url, record)
                last_status = response.status_code
                if not response.is_success:
                    raise httpx.HTTPStatusError(
                        f"Backend responded with status {response.status_code}: {response.reason_phrase}",
                        request=response.request,
                        response=response,
                    )
                result = response.json() if response.content else {}
                accepted = isinstance(result, dict) and result.get("success")
                logger.info(f"Backend response: {'SUCCESS' if accepted else 'FAILED'}")
                return result
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.error(f"Backend error (attempt {attempt}/{retries}): {e}")
                if attempt < retries:
                    delay = config.BACKEND_RETRY_DELAY * attempt
                    logger.info(f"Retrying backend call in {delay:.1f}s...")
                    await asyncio.sleep(delay)

        logger.error(f"Final backend failure for {target}")
        raise BackendDeliveryError(
            f"Delivery to {full_url} failed after {retries} attempts: {last_error}",
            attempts=retries,
            status_code=last_status,
        )

    async def _post(self, url: str, record: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": config.REPORTER_USER_AGENT,
        }
        if self._client is not None:
            return await self._client.post(url, json=record, headers=headers)
        async with httpx.AsyncClient(timeout=config.BACKEND_TIMEOUT) as client:
            return await client.post(url, json=record, headers=headers)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
