from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import httpx

from storyloop.collaborators.base import ExternalTrackerWriteback
from storyloop.feature_flags import tracker_endpoint
from storyloop.models import ExternalRef

logger = logging.getLogger(__name__)


class WebhookTrackerWriteback(ExternalTrackerWriteback):
    """Posts item outcomes to an HTTP endpoint that fronts an issue tracker."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def push_status(
        self, ref: ExternalRef, outcome: str, metadata: dict[str, Any]
    ) -> None:
        payload = {
            "provider": ref.provider,
            "external_id": ref.external_id,
            "url": ref.url,
            "status": outcome,
            "commit_sha": metadata.get("commit_sha"),
            "comment": metadata.get("comment"),
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=payload, headers=self._headers())
            response.raise_for_status()
        logger.info(
            "Pushed %s status for %s:%s", outcome, ref.provider, ref.external_id
        )


class TrackerRegistry:
    def __init__(self) -> None:
        self._writebacks: dict[str, ExternalTrackerWriteback] = {}

    def register(self, provider: str, writeback: ExternalTrackerWriteback) -> None:
        self._writebacks[provider.strip().lower()] = writeback

    def get(self, provider: str) -> Optional[ExternalTrackerWriteback]:
        return self._writebacks.get(provider.strip().lower())

    def providers(self) -> list[str]:
        return sorted(self._writebacks)

    @classmethod
    def from_env(cls, providers: Iterable[str] = ("jira", "linear", "asana")) -> "TrackerRegistry":
        registry = cls()
        for provider in providers:
            url, token = tracker_endpoint(provider)
            if url:
                registry.register(provider, WebhookTrackerWriteback(url, token=token))
        return registry
