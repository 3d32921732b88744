"""Outbound delivery of digests to the external notification sink."""

import logging
from typing import Optional

import httpx

from digest import build_sink_payload
from errors import DeliveryFailure

logger = logging.getLogger(__name__)


class DigestSink:
    """Bearer-authenticated POST of one digest message to the sink URL.

    Every failure mode (timeout, connection error, non-2xx) raises
    `DeliveryFailure`; only a 2xx response counts as delivered.
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client

    def deliver(self, digest_id: str, message: Optional[str]) -> None:
        body = build_sink_payload(digest_id, message)
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise DeliveryFailure(f"sink timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"sink request failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryFailure(
                f"sink responded {response.status_code}", status_code=response.status_code
            )
        logger.debug("Delivered digest %s (%s)", digest_id, response.status_code)
