import json

import httpx
import pytest

from cardify.application.sync.credentials import StaticCredentialProvider
from cardify.domain.errors import AuthError, PermanentRemoteError, TransientRemoteError
from cardify.domain.models import EntityTable
from cardify.infrastructure.adapters.remote_api import HttpRemoteGateway, classify_status


def _gateway(handler, token="tok"):
    return HttpRemoteGateway(
        "http://api.test/api/",
        StaticCredentialProvider(token),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    "status, expected",
    [
        (401, AuthError),
        (403, AuthError),
        (429, TransientRemoteError),
        (500, TransientRemoteError),
        (503, TransientRemoteError),
        (400, PermanentRemoteError),
        (404, PermanentRemoteError),
        (409, PermanentRemoteError),
        (422, PermanentRemoteError),
    ],
)
def test_classify_status(status, expected):
    error = classify_status(status, "msg")
    assert type(error) is expected
    assert error.status_code == status


@pytest.mark.asyncio
async def test_create_posts_payload_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"success": True, "data": {"id": "d1"}})

    gw = _gateway(handler)
    result = await gw.create_entity(EntityTable.DECKS, {"id": "d1", "title": "T"})
    await gw.close()

    assert result == {"id": "d1"}
    assert seen == {
        "method": "POST",
        "path": "/api/decks",
        "auth": "Bearer tok",
        "body": {"id": "d1", "title": "T"},
    }


@pytest.mark.asyncio
async def test_update_and_delete_routes():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"success": True, "data": None})

    gw = _gateway(handler)
    await gw.update_entity(EntityTable.CARDS, "c1", {"frontContent": "Q"})
    await gw.delete_entity(EntityTable.CARDS, "c1")
    await gw.close()

    assert seen == [("PUT", "/api/cards/c1"), ("DELETE", "/api/cards/c1")]


@pytest.mark.asyncio
async def test_list_uses_owner_scope_and_unwraps_envelope():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/decks/user"
        assert request.url.params["owner"] == "u1"
        return httpx.Response(200, json={"success": True, "data": [{"_id": "d1"}]})

    gw = _gateway(handler)
    assert await gw.list_entities(EntityTable.DECKS, "u1") == [{"_id": "d1"}]
    await gw.close()


@pytest.mark.asyncio
async def test_list_rejects_non_list_data():
    gw = _gateway(lambda r: httpx.Response(200, json={"success": True, "data": {"x": 1}}))
    with pytest.raises(PermanentRemoteError):
        await gw.list_entities(EntityTable.CARDS)
    await gw.close()


@pytest.mark.asyncio
async def test_no_token_sends_no_authorization_header():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return httpx.Response(200, json=[])

    gw = _gateway(handler, token=None)
    assert await gw.list_entities(EntityTable.CARDS) == []
    await gw.close()


@pytest.mark.asyncio
async def test_http_errors_are_classified():
    def handler(request: httpx.Request) -> httpx.Response:
        status = {"/api/decks/a": 401, "/api/decks/b": 503, "/api/decks/c": 422}[request.url.path]
        return httpx.Response(status, json={"success": False, "error": "nope"})

    gw = _gateway(handler)
    with pytest.raises(AuthError):
        await gw.update_entity(EntityTable.DECKS, "a", {})
    with pytest.raises(TransientRemoteError):
        await gw.update_entity(EntityTable.DECKS, "b", {})
    with pytest.raises(PermanentRemoteError) as exc:
        await gw.update_entity(EntityTable.DECKS, "c", {})
    assert exc.value.status_code == 422
    assert "nope" in str(exc.value)
    await gw.close()


@pytest.mark.asyncio
async def test_success_false_envelope_is_permanent():
    gw = _gateway(lambda r: httpx.Response(200, json={"success": False, "error": "bad"}))
    with pytest.raises(PermanentRemoteError):
        await gw.create_entity(EntityTable.DECKS, {"id": "d1"})
    await gw.close()


@pytest.mark.asyncio
async def test_transport_failures_are_transient():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (timeout, refused):
        gw = _gateway(handler)
        with pytest.raises(TransientRemoteError):
            await gw.delete_entity(EntityTable.DECKS, "d1")
        await gw.close()


@pytest.mark.asyncio
async def test_is_responsive():
    up = _gateway(lambda r: httpx.Response(503))
    assert await up.is_responsive() is True
    await up.close()

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    down = _gateway(refused)
    assert await down.is_responsive() is False
    await down.close()
