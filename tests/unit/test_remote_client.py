from __future__ import annotations

import httpx
import pytest

from docgen.core.errors import AuthError, RemoteApiError
from docgen.sf.api import RemoteClient
from docgen.sf.auth import AuthToken, TokenSource


class StubTokenManager:
  """Hands out numbered tokens and records invalidations."""

  def __init__(self) -> None:
    self.issued = 0
    self.invalidations = 0
    self._token: AuthToken | None = None

  async def get_token(self) -> AuthToken:
    if self._token is None:
      self.issued += 1
      self._token = AuthToken(value=f"tok-{self.issued}", expires_at=float("inf"), source=TokenSource.REFRESH_TOKEN, instance_url="https://acme.my.salesforce.com")
    return self._token

  def invalidate(self) -> None:
    self.invalidations += 1
    self._token = None


def _client(responses: list, tokens: StubTokenManager, sleeps: list[float], seen: list[httpx.Request]) -> tuple[httpx.AsyncClient, RemoteClient]:
  queue = list(responses)

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    item = queue.pop(0)
    if isinstance(item, Exception):
      raise item
    return item

  async def fake_sleep(delay: float) -> None:
    sleeps.append(delay)

  http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
  return http_client, RemoteClient(http_client=http_client, token_manager=tokens, sleep=fake_sleep)


@pytest.mark.anyio
async def test_server_errors_are_retried_with_backoff() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(503), httpx.ConnectError("reset"), httpx.Response(200, json={"ok": True})], tokens, sleeps, seen)

  async with http_client:
    response = await client.request("GET", "/limits", correlation_id="cid-1")

  assert response.json() == {"ok": True}
  assert sleeps == [1.0, 2.0]
  assert str(seen[0].url) == "https://acme.my.salesforce.com/services/data/v59.0/limits"
  assert seen[0].headers["Authorization"] == "Bearer tok-1"
  assert seen[0].headers["X-Correlation-Id"] == "cid-1"


@pytest.mark.anyio
async def test_server_errors_give_up_after_three_retries() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(500, json=[{"message": "boom", "errorCode": "UNKNOWN_EXCEPTION"}])] * 4, tokens, sleeps, seen)

  async with http_client:
    with pytest.raises(RemoteApiError) as exc_info:
      await client.request("GET", "/limits")

  assert len(seen) == 4
  assert sleeps == [1.0, 2.0, 4.0]
  assert exc_info.value.retryable is True
  assert exc_info.value.error_code == "UNKNOWN_EXCEPTION"


@pytest.mark.anyio
async def test_client_errors_are_not_retried() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(400, json=[{"message": "Malformed query", "errorCode": "MALFORMED_QUERY"}])], tokens, sleeps, seen)

  async with http_client:
    with pytest.raises(RemoteApiError) as exc_info:
      await client.query("SELECT")

  assert len(seen) == 1
  assert sleeps == []
  assert exc_info.value.status_code == 400
  assert exc_info.value.retryable is False
  assert "Malformed query" in exc_info.value.message


@pytest.mark.anyio
async def test_unauthorized_refreshes_token_and_replays_once() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(401), httpx.Response(201, json={"id": "a0B000000000001AAA", "success": True})], tokens, sleeps, seen)

  async with http_client:
    record_id = await client.create_record("Generated_Document__c", {"Status__c": "QUEUED"})

  assert record_id == "a0B000000000001AAA"
  assert tokens.invalidations == 1
  assert [request.headers["Authorization"] for request in seen] == ["Bearer tok-1", "Bearer tok-2"]


@pytest.mark.anyio
async def test_second_unauthorized_is_auth_error() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(401), httpx.Response(401, json=[{"message": "Session expired", "errorCode": "INVALID_SESSION_ID"}])], tokens, sleeps, seen)

  async with http_client:
    with pytest.raises(AuthError):
      await client.request("GET", "/limits")

  assert len(seen) == 2


@pytest.mark.anyio
async def test_query_follows_pagination() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  pages = [
    httpx.Response(200, json={"records": [{"Id": "1"}], "nextRecordsUrl": "/services/data/v59.0/query/01g-2000"}),
    httpx.Response(200, json={"records": [{"Id": "2"}]}),
  ]
  http_client, client = _client(pages, tokens, sleeps, seen)

  async with http_client:
    records = await client.query("SELECT Id FROM Account")

  assert [record["Id"] for record in records] == ["1", "2"]
  assert str(seen[1].url) == "https://acme.my.salesforce.com/services/data/v59.0/query/01g-2000"


@pytest.mark.anyio
async def test_conditional_update_sends_if_unmodified_since() -> None:
  tokens, sleeps, seen = StubTokenManager(), [], []
  http_client, client = _client([httpx.Response(204)], tokens, sleeps, seen)

  async with http_client:
    await client.update_record("Generated_Document__c", "a0B000000000001AAA", {"Status__c": "PROCESSING"}, if_unmodified_since="Wed, 01 May 2024 10:00:00 GMT")

  assert seen[0].method == "PATCH"
  assert seen[0].headers["If-Unmodified-Since"] == "Wed, 01 May 2024 10:00:00 GMT"
