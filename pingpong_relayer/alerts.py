"""
Operator alerts.

Conditions a human has to look at (a response that confirmed without its
event, an intent that ran out of retries) are logged at ERROR and, when a
webhook is configured, posted as JSON.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ._rate_limited_log import rate_limited_log
from .exceptions import AlertKind
from .models import utcnow

logger = logging.getLogger(__name__)


class OperatorAlerter:
    """
    Sends operator-visible alerts.

    Delivery problems are logged and swallowed: an alert must never take the
    intent (or the relayer) down with it.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        retry_count: int = 3,
        timeout: int = 10,
        source: str = "pingpong-relayer"
    ):
        """
        Initialize the alerter.

        Args:
            webhook_url: Endpoint receiving JSON alerts (optional)
            retry_count: Number of HTTP retries for webhook delivery
            timeout: Timeout for webhook requests in seconds
            source: Value of the ``source`` field in every alert
        """
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.source = source
        self.sent = 0

        self.session = requests.Session()
        retries = Retry(
            total=retry_count,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retries))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

    def build_payload(self, kind: AlertKind, message: str, **details: Any) -> Dict[str, Any]:
        return {
            "source": self.source,
            "kind": kind.value,
            "message": message,
            "details": {k: v for k, v in details.items() if v is not None},
            "timestamp": utcnow().isoformat(),
        }

    async def alert(self, kind: AlertKind, message: str, **details: Any) -> None:
        """
        Raise an operator alert.

        Args:
            kind: Alert category
            message: Human-readable description
            **details: Extra context (intent key, tx hash ...); must be JSON serializable
        """
        logger.error(f"[{kind.value}] {message}")
        if not self.webhook_url:
            return
        payload = self.build_payload(kind, message, **details)
        await asyncio.to_thread(self._post, payload)

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            self.sent += 1
        except requests.RequestException as e:
            rate_limited_log(
                f"Failed to deliver operator alert to webhook: {e}",
                level="warning",
                interval=60,
                logger_instance=logger,
                key="alert-webhook-failure",
            )

    def close(self) -> None:
        self.session.close()
