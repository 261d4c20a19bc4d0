import json

import httpx
import pytest

from storyloop.collaborators.trackers import TrackerRegistry, WebhookTrackerWriteback
from storyloop.models import ExternalRef


@pytest.mark.asyncio
async def test_webhook_posts_outcome_with_bearer_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    writeback = WebhookTrackerWriteback(
        "https://hooks.example/jira",
        token="secret",
        transport=httpx.MockTransport(handler),
    )
    ref = ExternalRef(provider="jira", external_id="PROJ-7", url="https://jira/PROJ-7")

    await writeback.push_status(ref, "completed", {"commit_sha": "abc", "comment": "done"})

    [request] = seen
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body == {
        "provider": "jira",
        "external_id": "PROJ-7",
        "url": "https://jira/PROJ-7",
        "status": "completed",
        "commit_sha": "abc",
        "comment": "done",
    }


@pytest.mark.asyncio
async def test_webhook_raises_on_http_error():
    writeback = WebhookTrackerWriteback(
        "https://hooks.example/linear",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await writeback.push_status(ExternalRef("linear", "L-1"), "failed", {})


def test_registry_from_env(monkeypatch):
    monkeypatch.setenv("SL_TRACKER_JIRA_URL", "https://hooks.example/jira")
    monkeypatch.delenv("SL_TRACKER_LINEAR_URL", raising=False)
    monkeypatch.delenv("SL_TRACKER_ASANA_URL", raising=False)

    registry = TrackerRegistry.from_env()

    assert registry.providers() == ["jira"]
    assert isinstance(registry.get("Jira"), WebhookTrackerWriteback)
    assert registry.get("linear") is None
