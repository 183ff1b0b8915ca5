"""
auth/delivery.py -- Outbound email channels used by the one-time-code dispatcher.

A channel takes (destination, subject, body) and either returns or raises
DeliveryFailure. Channels never retry: the caller sees the failure and decides
whether to ask again.

  HttpEmailChannel  -- JSON POST to an HTTP email API (Resend-compatible:
                       bearer key, {"from", "to", "subject", "html"}).
  LogEmailChannel   -- development only. Writes the message to the log so a
                       local run works without an email provider.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

from auth.errors import DeliveryFailure

logger = logging.getLogger("warden.auth.delivery")


class DeliveryChannel(ABC):
    @abstractmethod
    def send(self, destination: str, subject: str, body: str) -> None:
        """Deliver one message. Raises DeliveryFailure on any transport error."""


class HttpEmailChannel(DeliveryChannel):
    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        # Shared session for connection pooling. No redirects: the email API
        # is a fixed endpoint and a redirect would re-send the bearer key.
        self._session = session or requests.Session()
        self._session.max_redirects = 0

    def send(self, destination: str, subject: str, body: str) -> None:
        try:
            resp = self._session.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.sender, "to": [destination], "subject": subject, "html": body},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Email delivery to %s failed: %s", destination, exc)
            raise DeliveryFailure() from exc
        logger.info("Email '%s' delivered to %s", subject, destination)


class LogEmailChannel(DeliveryChannel):
    def send(self, destination: str, subject: str, body: str) -> None:
        logger.warning("[DEV] Email to %s -- %s\n%s", destination, subject, body)
