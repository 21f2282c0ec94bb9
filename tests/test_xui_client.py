import json

import httpx
import pytest

import xui_client
from xui_client import XuiClient, AuthError, DuplicateClientError, VPNAPIError


CLIENT_UUID = "11111111-2222-3333-4444-555555555555"
FULL_INBOUND = {
    "id": 1,
    "remark": "r",
    "streamSettings": json.dumps({"realitySettings": {"settings": {"publicKey": "K"}}}),
}


class Panel:
    """Фейковая панель: обработчик для httpx.MockTransport с журналом запросов"""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self.logins = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if path.endswith("/login"):
            self.logins += 1
            return httpx.Response(200, headers={"set-cookie": f"3x-ui=session{self.logins}; Path=/"})
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404)
        return route(request) if callable(route) else route


def _client(panel, base_path=""):
    return XuiClient(
        "https://panel.example.com",
        base_path=base_path,
        username="admin",
        password="secret",
        transport=httpx.MockTransport(panel),
    )


@pytest.mark.asyncio
async def test_add_client_sends_form_with_cookie():
    seen = {}

    def add(request):
        seen["cookie"] = request.headers.get("cookie")
        seen["body"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"success": True, "msg": ""})

    panel = Panel({("POST", "/secret/panel/api/inbounds/addClient"): add})
    await _client(panel, base_path="secret/").add_client(1, CLIENT_UUID, "tg_42_11111111")

    assert seen["cookie"] == "lang=ru-RU; 3x-ui=session1"
    assert seen["body"]["id"] == "1"
    client = json.loads(seen["body"]["settings"])["clients"][0]
    assert client["id"] == CLIENT_UUID
    assert client["email"] == "tg_42_11111111"
    assert client["enable"] is True


@pytest.mark.asyncio
async def test_add_client_duplicate_raises_duplicate_error():
    panel = Panel({
        ("POST", "/panel/api/inbounds/addClient"): httpx.Response(
            200, json={"success": False, "msg": "Duplicate email: tg_42"}
        ),
    })
    with pytest.raises(DuplicateClientError):
        await _client(panel).add_client(1, CLIENT_UUID, "tg_42")


@pytest.mark.asyncio
async def test_relogin_once_on_401_then_succeeds():
    responses = iter([httpx.Response(401), httpx.Response(200, json={"success": True})])
    panel = Panel({("POST", "/panel/api/inbounds/addClient"): lambda request: next(responses)})

    await _client(panel).add_client(1, CLIENT_UUID, "e")

    assert panel.logins == 2


@pytest.mark.asyncio
async def test_repeated_401_raises_auth_error():
    panel = Panel({("POST", "/panel/api/inbounds/addClient"): httpx.Response(403)})

    with pytest.raises(AuthError):
        await _client(panel).add_client(1, CLIENT_UUID, "e")
    assert panel.logins == 2


@pytest.mark.asyncio
async def test_server_error_is_transient():
    panel = Panel({("POST", "/panel/api/inbounds/addClient"): httpx.Response(502)})
    with pytest.raises(VPNAPIError):
        await _client(panel).add_client(1, CLIENT_UUID, "e")


@pytest.mark.asyncio
async def test_login_without_cookie_is_auth_error():
    def handler(request):
        return httpx.Response(200, json={"success": False})

    client = XuiClient("https://panel.example.com", transport=httpx.MockTransport(handler))
    with pytest.raises(AuthError):
        await client.add_client(1, CLIENT_UUID, "e")


@pytest.mark.asyncio
async def test_get_inbound_unwraps_obj_envelope():
    panel = Panel({
        ("GET", "/panel/api/inbounds/get/1"): httpx.Response(200, json={"success": True, "obj": FULL_INBOUND}),
    })
    inbound = await _client(panel).get_inbound(1)
    assert inbound["remark"] == "r"


@pytest.mark.asyncio
async def test_get_inbound_falls_back_to_list_when_incomplete():
    panel = Panel({
        ("GET", "/panel/api/inbounds/get/1"): httpx.Response(200, json={"success": True, "obj": {"id": 1}}),
        ("GET", "/panel/api/inbounds/list"): httpx.Response(
            200, json={"success": True, "obj": [{"id": 2}, FULL_INBOUND]}
        ),
    })
    inbound = await _client(panel).get_inbound(1)
    assert "streamSettings" in inbound


@pytest.mark.asyncio
async def test_disable_client_tries_next_candidate_on_404():
    panel = Panel({
        ("POST", f"/panel/api/inbounds/updateClient/{CLIENT_UUID}/"): httpx.Response(200, json={"success": True}),
    })
    await _client(panel).disable_client(1, CLIENT_UUID)

    update_calls = [path for method, path in panel.calls if "updateClient" in path]
    assert len(update_calls) == 2


@pytest.mark.asyncio
async def test_disable_client_no_candidate_raises():
    panel = Panel({})
    with pytest.raises(VPNAPIError):
        await _client(panel).disable_client(1, CLIENT_UUID)


@pytest.mark.asyncio
async def test_client_traffic_sums_up_and_down():
    panel = Panel({
        ("GET", "/panel/api/inbounds/getClientTraffics/e"): httpx.Response(
            200, json={"success": True, "obj": {"email": "e", "up": 10, "down": 5}}
        ),
    })
    assert await _client(panel).get_client_traffic(1, CLIENT_UUID, "e") == 15


@pytest.mark.asyncio
async def test_client_traffic_zero_is_confirmed_zero():
    panel = Panel({
        ("GET", "/panel/api/inbounds/getClientTraffics/e"): httpx.Response(
            200, json={"success": True, "obj": {"email": "e", "up": 0, "down": 0}}
        ),
    })
    assert await _client(panel).get_client_traffic(1, CLIENT_UUID, "e") == 0


@pytest.mark.asyncio
async def test_client_traffic_unknown_is_none():
    panel = Panel({
        ("GET", "/panel/api/inbounds/getClientTraffics/e"): httpx.Response(200, json={"success": True, "obj": None}),
        ("GET", f"/panel/api/inbounds/getClientTrafficsById/{CLIENT_UUID}"): httpx.Response(500),
    })
    assert await _client(panel).get_client_traffic(1, CLIENT_UUID, "e") is None


def test_module_client_is_built_from_config():
    xui_client._client = None
    client = xui_client.get_client()
    assert client.base_url == "https://panel.example.com"
    assert xui_client.get_client() is client
    xui_client._client = None
