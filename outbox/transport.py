"""
HTTP transport: the send function the outbox replays messages through.
"""

import logging

import httpx

from resilience import UpstreamServiceError

from .queue import QueuedMessage

logger = logging.getLogger(__name__)


class HttpTransport:
    """
    Posts a queued message as JSON to ``url``.

    Usage:
        transport = HttpTransport("https://example.org/api/messages")
        report = await outbox.sync(transport)

    A non-2xx response raises UpstreamServiceError; connection problems
    raise httpx errors. Either counts as a failed attempt for the outbox.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        headers: dict | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._client = client

    def _payload(self, message: QueuedMessage) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "attachments": message.attachments,
            "enqueued_at": message.enqueued_at,
        }

    async def __call__(self, message: QueuedMessage) -> dict:
        if self._client is not None:
            response = await self._client.post(self.url, json=self._payload(message), headers=self.headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=self._payload(message), headers=self.headers)

        if not response.is_success:
            raise UpstreamServiceError(
                "message transport", f"HTTP {response.status_code} from {self.url}"
            )
        logger.debug("Delivered message %s to %s", message.id, self.url)

        try:
            return response.json()
        except ValueError:
            return {}
