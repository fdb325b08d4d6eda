"""Client for the PMPanel node API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
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
_SUCCESS_RET = 200
_NODE_TYPE_CODES = {"Shadowsocks": "ss", "V2ray": "v2ray", "Trojan": "trojan"}
_LOGIN_MEMBER = "passwd"


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    """Find a JSON member by name, falling back to a case-insensitive match."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return None


def _take(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = _lookup(data, key)
    if value is None:
        return default
    if kind is bool:
        ok = isinstance(value, bool)
    elif kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif kind is float:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise APIError(f"cannot use {value!r} as {kind.__name__} for field {key!r}")
    return kind(value)


def _as_object(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise APIError(f"cannot use {data!r} as {what}")
    return data


@dataclass
class NodeInfoResponse:
    """Node settings as the panel sends them."""

    node_class: int = 0
    speed_limit: float = 0.0
    method: str = ""
    traffic_rate: float = 0.0
    raw_server_string: str = ""
    port: int = 0
    alter_id: int = 0
    network: str = ""
    security: str = ""
    host: str = ""
    path: str = ""
    grpc: bool = False
    sni: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "NodeInfoResponse":
        obj = _as_object(data, "node info")
        return cls(
            node_class=_take(obj, "clazz", int, 0),
            speed_limit=_take(obj, "speedlimit", float, 0.0),
            method=_take(obj, "method", str, ""),
            traffic_rate=_take(obj, "trafficRate", float, 0.0),
            raw_server_string=_take(obj, "outServer", str, ""),
            port=_take(obj, "outPort", int, 0),
            alter_id=_take(obj, "alterId", int, 0),
            network=_take(obj, "network", str, ""),
            security=_take(obj, "security", str, ""),
            host=_take(obj, "host", str, ""),
            path=_take(obj, "path", str, ""),
            grpc=_take(obj, "grpc", bool, False),
            sni=_take(obj, "sni", str, ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "clazz": self.node_class,
            "speedlimit": self.speed_limit,
            "method": self.method,
            "trafficRate": self.traffic_rate,
            "outServer": self.raw_server_string,
            "outPort": self.port,
            "alterId": self.alter_id,
            "network": self.network,
            "security": self.security,
            "host": self.host,
            "path": self.path,
            "grpc": self.grpc,
            "Sni": self.sni,
        }


@dataclass
class UserResponse:
    """One user as the panel sends it."""

    id: int = 0
    passwd: str = field(default_factory=str)
    speed_limit: float = 0.0
    device_limit: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "UserResponse":
        obj = _as_object(data, "user")
        return cls(
            id=_take(obj, "id", int, 0),
            passwd=_take(obj, _LOGIN_MEMBER, str, str()),
            speed_limit=_take(obj, "speedlimit", float, 0.0),
            device_limit=_take(obj, "connector", int, 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            _LOGIN_MEMBER: self.passwd,
            "speedlimit": self.speed_limit,
            "connector": self.device_limit,
        }


class APIClient(API):
    """Talks to a PMPanel instance on behalf of one node."""

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
        self._session.headers.update({"key": config.key})

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

    def _node_type_code(self) -> str:
        try:
            return _NODE_TYPE_CODES[self.node_type]
        except KeyError:
            raise APIError(f"NodeType Error: {self.node_type}") from None

    def _assemble_url(self, path: str) -> str:
        return self.api_host + path

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        last_error: Exception | None = None
        for _ in range(_RETRY_COUNT + 1):
            try:
                return self._session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:
                logger.warning("%s", exc)
                last_error = exc
        raise APIError(f"request {url} failed: {last_error}") from last_error

    def _request(
        self,
        method: str,
        path: str,
        params: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> Any:
        """Send a request and return the ``data`` member of a successful answer."""
        url = self._assemble_url(path)
        kwargs: dict[str, Any] = {}
        if params is not None:
            kwargs["params"] = dict(params)
        if body is not None:
            kwargs["data"] = json.dumps(body)
            kwargs["headers"] = {"Content-Type": "application/json"}
        if self.debug_enabled:
            logger.info("%s %s params=%s body=%s", method, url, params, body)
        response = self._send(method, url, **kwargs)
        if self.debug_enabled:
            logger.info("%s %s -> %s %s", method, url, response.status_code, response.text)

        if response.status_code > 400:
            raise APIError(f"request {url} failed: {response.text}")
        if 200 <= response.status_code < 300:
            try:
                payload = json.loads(response.content or b"null")
            except ValueError as exc:
                raise APIError(f"request {url} failed: {exc}") from exc
        else:
            payload = None
        try:
            payload_obj = _as_object(payload, "response")
            ret = _take(payload_obj, "ret", int, 0)
        except APIError as exc:
            raise APIError(f"request {url} failed: {exc}") from exc
        data = _lookup(payload_obj, "data")
        if ret != _SUCCESS_RET:
            raise APIError(f"Ret {json.dumps({'ret': ret, 'data': data})} invalid")
        return data

    def get_node_info(self) -> NodeInfo:
        node_type = self._node_type_code()
        data = self._request(
            "GET", "/api/node", params={"type": node_type, "nodeId": str(self.node_id)}
        )
        try:
            response = NodeInfoResponse.from_dict(data)
        except APIError as exc:
            raise APIError(f"Unmarshal NodeInfoResponse failed: {exc}") from exc

        parsers = {
            "V2ray": self.parse_v2ray_node_response,
            "Trojan": self.parse_trojan_node_response,
            "Shadowsocks": self.parse_ss_node_response,
        }
        parser = parsers.get(self.node_type)
        if parser is None:
            raise APIError(f"Unsupported Node type: {self.node_type}")
        try:
            return parser(response)
        except APIError as exc:
            raise APIError(
                f"Parse node info failed: {json.dumps(response.to_dict())}"
            ) from exc

    def get_user_list(self) -> list[UserInfo]:
        node_type = self._node_type_code()
        data = self._request(
            "GET",
            "/api/users",
            params={"type": node_type, "nodeId": str(self.node_id), "all": "true"},
        )
        try:
            groups = {
                name: None if users is None else [UserResponse.from_dict(u) for u in users]
                for name, users in _as_object(data, "user groups").items()
                if users is None or isinstance(users, list) or _reject_list(users)
            }
        except APIError as exc:
            raise APIError(f"Unmarshal user list failed: {exc}") from exc
        add_or_update = groups.get("addOrUpdate")
        if add_or_update is None:
            serialised = {
                name: None if users is None else [u.to_dict() for u in users]
                for name, users in groups.items()
            }
            raise APIError(f"Parse user list failed: {json.dumps(serialised)}")
        return self.parse_user_list_response(add_or_update)

    def report_node_status(self, node_status: NodeStatus) -> None:
        """The panel takes no status reports; nothing is sent."""
        return None

    def report_node_online_users(self, online_users: list[OnlineUser]) -> None:
        node_type = self._node_type_code()
        body = {
            "type": node_type,
            "nodeId": self.node_id,
            "users": None,
            "onlines": [{"user_id": user.uid, "ip": user.ip} for user in online_users],
        }
        self._request("POST", "/api/online", body=body)

    def report_user_traffic(self, user_traffic: list[UserTraffic]) -> None:
        node_type = self._node_type_code()
        body = {
            "type": node_type,
            "nodeId": self.node_id,
            "users": [
                {"id": t.uid, "up": t.upload, "down": t.download, "ip": ""}
                for t in user_traffic
            ],
            "onlines": None,
        }
        self._request("POST", "/api/traffic", body=body)

    def get_node_rule(self) -> list[DetectRule]:
        """Return the local rules followed by the panel's audit rules."""
        rules = list(self.local_rule_list)
        node_type = self._node_type_code()
        data = self._request(
            "GET", "/api/rules", params={"type": node_type, "nodeId": str(self.node_id)}
        )
        if data is None:
            return rules
        if not isinstance(data, list):
            raise APIError(f"Unmarshal rule list failed: cannot use {data!r} as a list")
        try:
            for item in data:
                obj = _as_object(item, "rule")
                rules.append(
                    DetectRule(id=_take(obj, "id", int, 0), pattern=_take(obj, "regex", str, ""))
                )
        except APIError as exc:
            raise APIError(f"Unmarshal rule list failed: {exc}") from exc
        return rules

    def report_illegal(self, detect_results: list[DetectResult]) -> None:
        """The panel takes no audit reports; nothing is sent."""
        return None

    def _speed_limit(self, panel_limit: float) -> int:
        if self.speed_limit > 0:
            return speed_limit_to_bps(self.speed_limit)
        return speed_limit_to_bps(panel_limit)

    def _tls_type(self) -> str:
        return "xtls" if self.enable_xtls else "tls"

    def parse_v2ray_node_response(self, node_info_response: NodeInfoResponse) -> NodeInfo:
        enable_tls = False
        tls_type = ""
        transport = ""
        if node_info_response.security in ("tls", "xtls"):
            tls_type = self._tls_type()
            enable_tls = True
        elif node_info_response.network:
            transport = node_info_response.network
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=node_info_response.port,
            speed_limit=self._speed_limit(node_info_response.speed_limit),
            alter_id=node_info_response.alter_id,
            transport_protocol=transport,
            enable_tls=enable_tls,
            tls_type=tls_type,
            path=node_info_response.path,
            host=node_info_response.host,
            enable_vless=self.enable_vless,
            service_name=node_info_response.sni,
        )

    def parse_ss_node_response(self, node_info_response: NodeInfoResponse) -> NodeInfo:
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=node_info_response.port,
            speed_limit=self._speed_limit(node_info_response.speed_limit),
            transport_protocol="tcp",
            cypher_method=node_info_response.method,
        )

    def parse_trojan_node_response(self, node_info_response: NodeInfoResponse) -> NodeInfo:
        return NodeInfo(
            node_type=self.node_type,
            node_id=self.node_id,
            port=node_info_response.port,
            speed_limit=self._speed_limit(node_info_response.speed_limit),
            transport_protocol="grpc" if node_info_response.grpc else "tcp",
            enable_tls=True,
            tls_type=self._tls_type(),
            host=node_info_response.host,
            service_name=node_info_response.sni,
        )

    def parse_user_list_response(self, user_info_response: list[UserResponse]) -> list[UserInfo]:
        return [
            UserInfo(
                uid=user.id,
                passwd=user.passwd,
                uuid=user.passwd,
                speed_limit=self._speed_limit(user.speed_limit),
                device_limit=self.device_limit if self.device_limit > 0 else user.device_limit,
            )
            for user in user_info_response
        ]


def _reject_list(value: Any) -> bool:
    raise APIError(f"cannot use {value!r} as a user list")