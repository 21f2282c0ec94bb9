"""
Клиент HTTP API панели 3x-ui.

Авторизация через cookie сессии (/login). На 401/403 выполняется один
повторный логин и повтор запроса, после чего поднимается AuthError.
Разные сборки панели отличаются путями, поэтому для get/updateClient
перебираются кандидаты.
"""
import asyncio
import json
import logging
import secrets
from typing import Any, Dict, Optional

import httpx

import config
from errors import TransientGatewayError
from vpn_utils import uuid_preview, DEFAULT_FLOW

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
ADD_CLIENT_PATH = "/panel/api/inbounds/addClient"
GET_INBOUND_CANDIDATES = (
    "/panel/api/inbounds/get/{inbound_id}",
    "/panel/api/inbounds/get/{inbound_id}/",
)
LIST_INBOUNDS_CANDIDATES = (
    "/panel/api/inbounds/list",
    "/panel/api/inbounds/list/",
)
UPDATE_CLIENT_CANDIDATES = (
    "/panel/api/inbounds/updateClient/{client_uuid}",
    "/panel/api/inbounds/updateClient/{client_uuid}/",
)
CLIENT_TRAFFIC_BY_EMAIL = "/panel/api/inbounds/getClientTraffics/{email}"
CLIENT_TRAFFIC_BY_ID = "/panel/api/inbounds/getClientTrafficsById/{client_uuid}"

_AUTH_STATUSES = (401, 403)
_NOT_FOUND_STATUSES = (404, 405)


class VPNAPIError(TransientGatewayError):
    """Ошибка API панели (сеть, таймаут, 5xx, success=false)"""
    pass


class AuthError(VPNAPIError):
    """Ошибка аутентификации (401, 403 после повторного логина)"""
    pass


class DuplicateClientError(VPNAPIError):
    """Клиент с таким UUID/email уже существует в inbound"""
    pass


def _unwrap(payload: Any) -> Any:
    """Снять обёртку {"success": true, "obj": {...}} / data / inbound"""
    if isinstance(payload, dict):
        for field in ("obj", "data", "inbound"):
            value = payload.get(field)
            if value is not None:
                return value
    return payload


def _looks_like_full_inbound(inbound: Any) -> bool:
    return isinstance(inbound, dict) and ("streamSettings" in inbound or "realitySettings" in inbound)


def _is_duplicate_message(message: str) -> bool:
    text = (message or "").lower()
    return "duplicate" in text or "already exist" in text


class XuiClient:
    """Сессионный клиент панели 3x-ui"""

    def __init__(
        self,
        base_url: str,
        base_path: str = "",
        username: str = "",
        password: str = "",
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.base_path = self._normalize_base_path(base_path)
        self.username = username
        self.password = password
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._transport = transport
        self._auth_cookie: Optional[str] = None
        self._login_lock = asyncio.Lock()

    @staticmethod
    def _normalize_base_path(base_path: Optional[str]) -> str:
        value = (base_path or "").strip()
        if value and not value.startswith("/"):
            value = "/" + value
        return value.rstrip("/")

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{self.base_path}{path}"

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _cookie_header(self) -> str:
        # Фронт панели всегда шлёт lang
        if not self._auth_cookie:
            return "lang=ru-RU"
        if self._auth_cookie.startswith("lang="):
            return self._auth_cookie
        return f"lang=ru-RU; {self._auth_cookie}"

    # ------------------------------------------------------------------
    # auth
    # ------------------------------------------------------------------

    async def _login(self, force: bool = False) -> None:
        async with self._login_lock:
            if self._auth_cookie and not force:
                return
            self._auth_cookie = None

            credentials = {"username": self.username, "password": self.password}
            try:
                async with self._http() as client:
                    # Форки отличаются: одни ждут JSON, другие form-urlencoded
                    response = await client.post(self._url(LOGIN_PATH), json=credentials)
                    set_cookie = response.headers.get("set-cookie")
                    if not set_cookie:
                        response = await client.post(self._url(LOGIN_PATH), data=credentials)
                        set_cookie = response.headers.get("set-cookie")
            except httpx.HTTPError as e:
                logger.error(f"xui login: NETWORK_ERROR [error={type(e).__name__}: {e}]")
                raise VPNAPIError(f"3x-ui login failed: {type(e).__name__}: {e}") from e

            if not set_cookie:
                logger.error(f"xui login: FAILED [status={response.status_code}]")
                raise AuthError(f"3x-ui login failed: Set-Cookie not found, status={response.status_code}")

            self._auth_cookie = set_cookie.split(";", 1)[0].strip()
            logger.info(f"xui login: SUCCESS [cookie_name={self._auth_cookie.split('=', 1)[0]}]")

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Cookie": self._cookie_header(), "Accept": "application/json"}
        try:
            async with self._http() as client:
                return await client.request(method, self._url(path), headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"xui request: TIMEOUT [method={method}, path={path}]")
            raise VPNAPIError(f"3x-ui timeout: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"xui request: NETWORK_ERROR [method={method}, path={path}, error={e}]")
            raise VPNAPIError(f"3x-ui network error: {type(e).__name__}: {e}") from e

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Запрос с авторизацией и одним повторным логином на 401/403

        Raises:
            AuthError: Если после повторного логина снова 401/403
            VPNAPIError: Сеть, таймаут, 5xx
        """
        if not self._auth_cookie:
            await self._login()

        response = await self._send(method, path, **kwargs)
        if response.status_code in _AUTH_STATUSES:
            logger.warning(f"xui request: AUTH_EXPIRED [path={path}, status={response.status_code}], relogin")
            await self._login(force=True)
            response = await self._send(method, path, **kwargs)
            if response.status_code in _AUTH_STATUSES:
                raise AuthError(f"3x-ui auth error: status={response.status_code}, path={path}")

        if response.status_code >= 500:
            raise VPNAPIError(f"3x-ui server error: status={response.status_code}, path={path}")
        return response

    @staticmethod
    def _json(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise VPNAPIError(f"3x-ui invalid JSON from {path}: {response.text[:200]}") from e

    @staticmethod
    def _check_success(payload: Any, path: str) -> None:
        # Панель часто отвечает 200 OK с success=false
        if isinstance(payload, dict) and payload.get("success") is False:
            message = str(payload.get("msg") or "")
            if _is_duplicate_message(message):
                raise DuplicateClientError(f"3x-ui duplicate client: {message}")
            raise VPNAPIError(f"3x-ui API error at {path}: {message}")

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def add_client(self, inbound_id: int, client_uuid: Any, email: str) -> None:
        """
        Создать клиента в inbound

        Raises:
            DuplicateClientError: Клиент уже есть (вызывающий считает это успехом)
            VPNAPIError: Прочие ошибки панели
        """
        client = {
            "id": str(client_uuid),
            "security": "",
            "password": "",
            "flow": DEFAULT_FLOW,
            "email": email,
            "limitIp": 0,
            "totalGB": 0,
            "expiryTime": 0,
            "enable": True,
            "tgId": 0,
            "subId": secrets.token_hex(8),
            "comment": "",
            "reset": 0,
        }
        form = {"id": str(inbound_id), "settings": json.dumps({"clients": [client]})}

        logger.info(f"xui add_client: START [inbound={inbound_id}, uuid={uuid_preview(client_uuid)}]")
        response = await self._request("POST", ADD_CLIENT_PATH, data=form)
        if response.status_code >= 400:
            raise VPNAPIError(f"3x-ui addClient failed: status={response.status_code}")
        if response.content and response.text.strip().startswith("{"):
            self._check_success(self._json(response, ADD_CLIENT_PATH), ADD_CLIENT_PATH)
        logger.info(f"xui add_client: SUCCESS [inbound={inbound_id}, uuid={uuid_preview(client_uuid)}]")

    async def _set_client_enabled(self, inbound_id: int, client_uuid: Any, enable: bool) -> None:
        body = {"inboundId": inbound_id, "client": {"id": str(client_uuid), "enable": enable}}
        last_status = None
        for pattern in UPDATE_CLIENT_CANDIDATES:
            path = pattern.format(client_uuid=client_uuid)
            response = await self._request("POST", path, json=body)
            if response.status_code in _NOT_FOUND_STATUSES:
                last_status = response.status_code
                continue
            if response.status_code >= 400:
                raise VPNAPIError(f"3x-ui updateClient failed: status={response.status_code}")
            if response.content and response.text.strip().startswith("{"):
                self._check_success(self._json(response, path), path)
            logger.info(
                f"xui update_client: SUCCESS [inbound={inbound_id}, uuid={uuid_preview(client_uuid)}, enable={enable}]"
            )
            return
        raise VPNAPIError(f"3x-ui updateClient: no endpoint candidate matched, last_status={last_status}")

    async def disable_client(self, inbound_id: int, client_uuid: Any) -> None:
        """
        Выключить клиента (updateClient с enable=false)

        Raises:
            VPNAPIError: Ни один кандидат не подошёл или панель вернула ошибку
        """
        await self._set_client_enabled(inbound_id, client_uuid, False)

    async def enable_client(self, inbound_id: int, client_uuid: Any) -> None:
        """Включить ранее выключенного клиента (повторная выдача после компенсации)"""
        await self._set_client_enabled(inbound_id, client_uuid, True)

    async def get_inbound(self, inbound_id: int) -> Dict[str, Any]:
        """
        Получить inbound (с streamSettings) для сборки ссылки

        Если запись неполная, ищем inbound в списке.

        Raises:
            VPNAPIError: Inbound не получен
        """
        last_status = None
        for pattern in GET_INBOUND_CANDIDATES:
            path = pattern.format(inbound_id=inbound_id)
            response = await self._request("GET", path)
            if response.status_code in _NOT_FOUND_STATUSES:
                last_status = response.status_code
                continue
            if response.status_code >= 400:
                raise VPNAPIError(f"3x-ui getInbound failed: status={response.status_code}")

            payload = self._json(response, path)
            self._check_success(payload, path)
            inbound = _unwrap(payload)
            if not _looks_like_full_inbound(inbound):
                from_list = await self._find_inbound_in_list(inbound_id)
                if from_list is not None:
                    return from_list
            if not isinstance(inbound, dict):
                raise VPNAPIError(f"3x-ui getInbound: unexpected payload for inbound {inbound_id}")
            return inbound
        raise VPNAPIError(f"3x-ui getInbound: no endpoint candidate matched, last_status={last_status}")

    async def _find_inbound_in_list(self, inbound_id: int) -> Optional[Dict[str, Any]]:
        for path in LIST_INBOUNDS_CANDIDATES:
            try:
                response = await self._request("GET", path)
                if response.status_code >= 400:
                    continue
                items = _unwrap(self._json(response, path))
            except VPNAPIError as e:
                logger.debug(f"xui list_inbounds: candidate failed [path={path}, error={e}]")
                continue
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict) and str(item.get("id")) == str(inbound_id):
                    return item
        return None

    async def get_client_traffic(self, inbound_id: int, client_uuid: Any, email: str) -> Optional[int]:
        """
        Суммарный трафик клиента (up + down) в байтах

        Returns:
            Количество байт или None, если трафик неизвестен (ошибка, нет записи).
            None никогда не трактуется как ноль.
        """
        candidates = [CLIENT_TRAFFIC_BY_EMAIL.format(email=email), CLIENT_TRAFFIC_BY_ID.format(client_uuid=client_uuid)]
        for path in candidates:
            try:
                response = await self._request("GET", path)
                if response.status_code >= 400:
                    continue
                payload = self._json(response, path)
            except VPNAPIError as e:
                logger.warning(
                    f"xui get_client_traffic: UNKNOWN [inbound={inbound_id}, uuid={uuid_preview(client_uuid)}, error={e}]"
                )
                continue
            if isinstance(payload, dict) and payload.get("success") is False:
                continue
            total = self._sum_traffic(_unwrap(payload), email)
            if total is not None:
                return total
        return None

    @staticmethod
    def _sum_traffic(record: Any, email: str) -> Optional[int]:
        if isinstance(record, list):
            matching = [r for r in record if isinstance(r, dict) and (not email or r.get("email") == email)]
            record = matching[0] if matching else None
        if not isinstance(record, dict):
            return None
        up, down = record.get("up"), record.get("down")
        if up is None and down is None:
            return None
        try:
            return int(up or 0) + int(down or 0)
        except (TypeError, ValueError):
            return None


# Глобальный клиент панели
_client: Optional[XuiClient] = None


def get_client() -> XuiClient:
    """Получить глобальный клиент панели, создав его при необходимости"""
    global _client
    if _client is None:
        _client = XuiClient(
            base_url=config.XUI_BASE_URL,
            base_path=config.XUI_BASE_PATH,
            username=config.XUI_USERNAME,
            password=config.XUI_PASSWORD,
            connect_timeout=config.XUI_CONNECT_TIMEOUT,
            read_timeout=config.XUI_READ_TIMEOUT,
        )
    return _client


async def add_client(inbound_id: int, client_uuid: Any, email: str) -> None:
    await get_client().add_client(inbound_id, client_uuid, email)


async def disable_client(inbound_id: int, client_uuid: Any) -> None:
    await get_client().disable_client(inbound_id, client_uuid)


async def enable_client(inbound_id: int, client_uuid: Any) -> None:
    await get_client().enable_client(inbound_id, client_uuid)


async def get_inbound(inbound_id: int) -> Dict[str, Any]:
    return await get_client().get_inbound(inbound_id)


async def get_client_traffic(inbound_id: int, client_uuid: Any, email: str) -> Optional[int]:
    return await get_client().get_client_traffic(inbound_id, client_uuid, email)
