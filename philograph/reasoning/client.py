"""
PhiloGraph - Reasoning Transport

The transport is the only piece that talks to the external reasoning (LLM)
service. It knows nothing about breakers or caches.

Error mapping (HttpReasoningTransport):
- Timeout / connection error  -> UnavailableError
- HTTP 429 / 5xx              -> UnavailableError
- Other HTTP 4xx              -> ValidationFailedError
- Body not a JSON object      -> ValidationFailedError
"""

from typing import Any, Dict, Optional, Protocol
import logging

import requests

from philograph.core.errors import UnavailableError, ValidationFailedError

logger = logging.getLogger(__name__)

# Query timeout (seconds)
REQUEST_TIMEOUT = 60


class ReasoningTransport(Protocol):
    """Boundary to the reasoning service: send(kind, payload) -> response."""

    def send(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


class HttpReasoningTransport:
    """
    JSON-over-HTTP transport.

    POST {base_url}/v1/reasoning/{kind} with the structured payload as body.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    def send(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/v1/reasoning/{kind}"

        try:
            logger.debug(f"Reasoning request: {kind}")
            response = self.session.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.Timeout as e:
            logger.warning(f"Reasoning request timed out: {kind}")
            raise UnavailableError(f"Reasoning service timed out ({kind})") from e
        except requests.ConnectionError as e:
            logger.warning(f"Reasoning service unreachable: {kind}: {e}")
            raise UnavailableError(f"Reasoning service unreachable ({kind})") from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Reasoning service error {response.status_code}: {kind}")
            raise UnavailableError(
                f"Reasoning service returned {response.status_code} ({kind})"
            )

        if response.status_code >= 400:
            logger.warning(f"Reasoning request rejected {response.status_code}: {kind}")
            raise ValidationFailedError(
                f"Reasoning service rejected {kind} request: {response.status_code} {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ValidationFailedError(f"Reasoning service returned malformed JSON ({kind})") from e

        if not isinstance(body, dict):
            raise ValidationFailedError(
                f"Reasoning service returned {type(body).__name__}, expected an object ({kind})"
            )

        return body

    def close(self) -> None:
        self.session.close()
