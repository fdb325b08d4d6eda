"""Client for the ProxyPanel node API."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping

import requests

from .models import (
    API,
    APIError,
    ClientInfo,
    Config,
    DetectResult,
    DetectRule,
    NodeInfo,
    NodeStatus,
    OnlineUser,
    UserInfo,
    UserTraffic,
    read_local_rule_list,
    speed_limit_to_bps,
)

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 5
_RETRY_COUNT = 3
_ILLEGAL_REASON = "XrayR cannot save reason"
_PATH_PREFIXES = {"V2ray": "/api/v2ray/v1", "Trojan": "/api/trojan/v1"}

# Field kinds used by the response schemas below.
_UINT = "uint"
_DEFAULTS: dict[Any, Any] = {int: 0, _UINT: 0, bool: False, str: ""}

_V2RAY_NODE_SCHEMA = {
    "id": int,
    "is_udp": bool,
    "speed_limit": _UINT,
    "client_limit": int,
    "push_port": int,
    "secret": str,
    "key": str,
    "pem": str,
    "v2_license": str,
    "v2_alter_id": int,
    "v2_port": int,
    "v2_method": str,
    "v2_net": str,
    "v2_type": str,
    "v2_host": str,
    "v2_path": str,
    "v2_tls": bool,
    "v2_cdn": bool,
    "v2_tls_provider": str,
    "redirect_url": str,
}

_SS_NODE_SCHEMA = {
    "id": int,
    "is_udp": int,
    "speed_limit": _UINT,
    "client_limit": int,
    "push_port": int,
    "method": str,
    "protocol": str,
    "obfs": str,
    "obfs_param": str,
    "sinlge": int,
    "port": str,
    "Passwd": str,
}

_TROJAN_NODE_SCHEMA = {
    "id": int,
    "is_udp": bool,
    "speed_limit": _UINT,
    "client_limit": int,
    "push_port": int,
    "trojan_port": int,
}

_VMESS_USER_SCHEMA = {"uid": int, "vmess_uid": str, "speed_limit": _UINT}
_TROJAN_USER_SCHEMA = {"uid": int, "password": str, "speed_limit": _UINT}
_SS_USER_SCHEMA = {"uid": int, "assword": str, "method": str, "speed_limit": _UINT}
_RULE_ITEM_SCHEMA = {"id": int, "type": str, "pattern": str}


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    """Find a JSON member by name, falling back to a case-insensitive match."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return None


def _take(obj: Mapping[str, Any], name: str, kind: Any, what: str) -> Any:
    value = _lookup(obj, name)
    if value is None:
        return _DEFAULTS[kind]
    if kind is bool:
        ok = isinstance(value, bool)
    elif kind is str:
        ok = isinstance(value, str)
    else:
        ok = (
            isinstance(value, int)
            and not isinstance(value, bool)
            and (kind is int or value >= 0)
        )
    if not ok:
        raise APIError(
            f"Unmarshal {what} failed: cannot use {value!r} for field {name!r}"
        )
    return value


def _decode(data: Any, schema: Mapping[str, Any], what: str) -> dict[str, Any]:
    """Check a JSON object against a schema and fill in zero values for missing fields."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise APIError(f"Unmarshal {what} failed: cannot use {data!r} as an object")
    return {name: _take(data, name, kind, what) for name, kind in schema.items()}


def _decode_list(
    data: Any, schema: Mapping[str, Any], what: str, *, allow_null_items: bool
) -> list[dict[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise APIError(f"Unmarshal {what} failed: cannot use {data!r} as a list")
    items = []
    for item in data:
        if item is None and not allow_null_items:
            raise APIError(f"Unmarshal {what} failed: null entry in list")
        items.append(_decode(item, schema, what))
    return items


class APIClient(API):
    """Talks to a ProxyPanel instance on behalf of one node."""

    def __init__(self, config: Config) -> None:
        self.api_host = config.api_host
        self.node_id = config.node_id
        self.key = config.key
        self.node_type = config.node_type
        self.enable_vless = config.enable_vless
        self.enable_xtls = config.enable_xtls
        self.speed_limit = config.speed_limit
        self.device_limit = config.device_limit
        self.timeout = config.timeout if config.timeout > 0 else _DEFAULT_TIMEOUT
        self.local_rule_list = read_local_rule_list(config.rule_list_path)
        self.debug_enabled = False
        self._session = requests.Session()

    def describe(self) -> ClientInfo:
        return ClientInfo(
            api_host=self.api_host,
            node_id=self.node_id,
            key=self.key,
            node_type=self.node_type,
        )

    def debug(self) -> None:
        """Log every request and response from now on."""
        self.debug_enabled = True

    def _path(self, endpoint: str) -> str:
        prefix = _PATH_PREFIXES.get(self.node_type)
        if prefix is None:
            raise APIError(f"Unsupported Node type: {self.node_type}")
        return f"{prefix}/{endpoint}/{self.node_id}"

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        last_error: Exception | None = None
        for _ in range(_RETRY_COUNT + 1):
            try:
                return self._session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:
                logger.warning("%s", exc)
                last_error = exc
        raise APIError(f"request {url} failed: {last_error}") from last_error

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        """Send a signed request and return the ``data`` member of a successful answer."""
        url = self.api_host + path
        headers = {"key": self.key, "timestamp": str(int(time.time()))}
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            headers["Content-Type"] = "application/json"
            kwargs["data"] = json.dumps(body)
        if self.debug_enabled:
            logger.info("%s %s body=%s", method, url, body)
        response = self._send(method, url, **kwargs)
        if self.debug_enabled:
            logger.info("%s %s -> %s %s", method, url, response.status_code, response.text)

        if response.status_code > 400:
            raise APIError(f"request {url} failed: {response.text}")
        payload: Any = None
        if 200 <= response.status_code < 300:
            try:
                payload = json.loads(response.content or b"null")
            except ValueError as exc:
                raise APIError(f"request {url} failed: {exc}") from exc
        try:
            envelope = _decode(
                payload, {"status": str, "code": int, "message": str}, "Response"
            )
        except APIError as exc:
            raise APIError(f"request {url} failed: {exc}") from exc
        data = _lookup(payload, "data") if isinstance(payload, Mapping) else None
        if envelope["status"] != "success":
            described = json.dumps(
                {
                    "status": envelope["status"],
                    "code": envelope["code"],
                    "data": data,
                    "message": envelope["message"],
                }
            )
            raise APIError(f"Ret {described} invalid")
        return data

    def get_node_info(self) -> NodeInfo:
        path = self._path("node")
        data = self._request("GET", path)
        parsers = {
            "V2ray": self.parse_v2ray_node_response,
            "Trojan": self.parse_trojan_node_response,
        }
        parser = parsers[self.node_type]
        try:
            return parser(data)
        except APIError as exc:
            raise APIError(f"Parse node info failed: {json.dumps(data)}") from exc

    def get_user_list(self) -> list[UserInfo]:
        path = self._path("userList")
        data = self._request("GET", path)
        parsers = {
            "V2ray": self.parse_v2ray_user_list_response,
            "Trojan": self.parse_trojan_user_list_response,
        }
        parser = parsers[self.node_type]
        try:
            return parser(data)
        except APIError as exc:
            raise APIError(f"Parse user list failed: {json.dumps(data)}") from exc

    def report_node_status(self, node_status: NodeStatus) -> None:
        path = self._path("nodeStatus")
        body = {
            "cpu": f"{int(node_status.cpu)}%",
            "mem": f"{int(node_status.mem)}%",
            "net": "",
            "disk": f"{int(node_status.disk)}%",
            "uptime": node_status.uptime,
        }
        self._request("POST", path, body=body)

    def report_node_online_users(self, online_users: list[OnlineUser]) -> None:
        path = self._path("nodeOnline")
        body = [{"uid": user.uid, "ip": user.ip} for user in online_users]
        self._request("POST", path, body=body)

    def report_user_traffic(self, user_traffic: list[UserTraffic]) -> None:
        path = self._path("userTraffic")
        body = [
            {"uid": t.uid, "upload": t.upload, "download": t.download}
            for t in user_traffic
        ]
        self._request("POST", path, body=body)

    def get_node_rule(self) -> list[DetectRule]:
        """Return the local rules, followed by the panel's regex rules in reject mode."""
        path = self._path("nodeRule")
        data = self._request("GET", path)
        node_rule = _decode(data, {"mode": str}, "NodeRule")
        raw_rules = _lookup(data, "rules") if isinstance(data, Mapping) else None
        items = _decode_list(raw_rules, _RULE_ITEM_SCHEMA, "NodeRule", allow_null_items=True)
        rules = list(self.local_rule_list)
        if node_rule["mode"] != "reject":
            return rules
        rules.extend(
            DetectRule(id=item["id"], pattern=item["pattern"])
            for item in items
            if item["type"] == "reg"
        )
        return rules

    def report_illegal(self, detect_results: list[DetectResult]) -> None:
        """Report each detection in its own request, stopping at the first failure."""
        path = self._path("trigger")
        for result in detect_results:
            body = {"uid": result.uid, "rule_id": result.rule_id, "reason": _ILLEGAL_REASON}
            self._request("POST", path, body=body)

    def _speed_limit(self, panel_limit: int) -> int:
        if self.speed_limit > 0:
            return speed_limit_to_bps(self.speed_limit)
        return panel_limit * 1000000 // 8

    def _tls_type(self) -> str:
        return "xtls" if self.enable_xtls else "tls"

    def parse_v2ray_node_response(self, data: Any) -> NodeInfo:
        node = _decode(data, _V2RAY_NODE_SCHEMA, "V2rayNodeInfo")
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=node["v2_port"],
            speed_limit=self._speed_limit(node["speed_limit"]),
            alter_id=node["v2_alter_id"],
            transport_protocol=node["v2_net"],
            fake_type=node["v2_type"],
            enable_tls=node["v2_tls"],
            tls_type=self._tls_type(),
            path=node["v2_path"],
            host=node["v2_host"],
            enable_vless=self.enable_vless,
        )

    def parse_ss_node_response(self, data: Any) -> NodeInfo:
        node = _decode(data, _SS_NODE_SCHEMA, "ShadowsocksNodeInfo")
        speed_limit = self._speed_limit(node["speed_limit"])
        if node["sinlge"] == 0:
            raise APIError("Only support single port")
        if node["port"] == "":
            raise APIError("Port cannot be none")
        try:
            port = int(node["port"])
        except ValueError as exc:
            raise APIError(f"invalid port {node['port']!r}") from exc
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=port,
            speed_limit=speed_limit,
            transport_protocol="tcp",
            cypher_method=node["method"],
        )

    def parse_trojan_node_response(self, data: Any) -> NodeInfo:
        node = _decode(data, _TROJAN_NODE_SCHEMA, "TrojanNodeInfo")
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=node["trojan_port"],
            speed_limit=self._speed_limit(node["speed_limit"]),
            transport_protocol="tcp",
            enable_tls=True,
            tls_type=self._tls_type(),
        )

    def parse_v2ray_user_list_response(self, data: Any) -> list[UserInfo]:
        users = _decode_list(data, _VMESS_USER_SCHEMA, "VMessUser", allow_null_items=False)
        return [
            UserInfo(
                uid=user["uid"],
                email="",
                uuid=user["vmess_uid"],
                speed_limit=self._speed_limit(user["speed_limit"]),
            )
            for user in users
        ]

    def parse_trojan_user_list_response(self, data: Any) -> list[UserInfo]:
        users = _decode_list(data, _TROJAN_USER_SCHEMA, "TrojanUser", allow_null_items=False)
        return [
            UserInfo(
                uid=user["uid"],
                email="",
                uuid=user["password"],
                speed_limit=self._speed_limit(user["speed_limit"]),
            )
            for user in users
        ]

    def parse_ss_user_list_response(self, data: Any) -> list[UserInfo]:
        users = _decode_list(data, _SS_USER_SCHEMA, "SSUser", allow_null_items=False)
        return [
            UserInfo(
                uid=user["uid"],
                email="",
                passwd=user["assword"],
                speed_limit=self._speed_limit(user["speed_limit"]),
            )
            for user in users
        ]