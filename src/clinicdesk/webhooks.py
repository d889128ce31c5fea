import asyncio
import httpx
import logging

logger = logging.getLogger(__name__)


class WebhookClient:
    """JSON POSTs to one webhook URL, signed with ``X-Webhook-Secret``.

    Retries once after ``retry_delay`` seconds on failure and never raises.
    ``post_in_background`` runs the same POST as a tracked task so a call
    turn never waits on a slow endpoint.
    """

    def __init__(
        self,
        url: str,
        webhook_secret: str = "",
        timeout: float = 10.0,
        retry_delay: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._client = client
        self._pending: set[asyncio.Task] = set()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=self._headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=self._headers())

    async def post_with_retry(self, payload: dict, label: str) -> bool:
        """POST with one retry after ``retry_delay`` seconds on failure."""
        for attempt in range(2):
            try:
                resp = await self._post(payload)
                resp.raise_for_status()
                return True
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %ss: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
        return False

    def post_in_background(self, payload: dict, label: str) -> asyncio.Task | None:
        try:
            task = asyncio.get_running_loop().create_task(self.post_with_retry(payload, label))
        except RuntimeError:
            logger.warning("No running event loop, %s not sent", label)
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background POST still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
