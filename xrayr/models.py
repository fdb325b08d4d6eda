"""Panel-independent data model and the interface every panel client implements."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Raised when a panel request fails or its answer cannot be used."""


_TRUE_WORDS = frozenset({"1", "t", "true", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"0", "f", "false", "no", "n", "off", ""})

# Configuration-file spelling, attribute name, value type.
_CONFIG_FIELDS = (
    ("ApiHost", "api_host", str),
    ("NodeID", "node_id", int),
    ("ApiKey", "key", str),
    ("NodeType", "node_type", str),
    ("EnableVless", "enable_vless", bool),
    ("EnableXTLS", "enable_xtls", bool),
    ("Timeout", "timeout", int),
    ("SpeedLimit", "speed_limit", float),
    ("DeviceLimit", "device_limit", int),
    ("RuleListPath", "rule_list_path", str),
)

_CONFIG_KEYS = {alias.lower(): (name, kind) for alias, name, kind in _CONFIG_FIELDS}


def _coerce(kind: type, value: Any) -> Any:
    if kind is bool:
        if isinstance(value, str):
            word = value.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            raise ValueError(f"cannot read {value!r} as a boolean")
        return bool(value)
    if kind is int and isinstance(value, str):
        return int(value.strip())
    return kind(value)


@dataclass
class Config:
    """Settings for one panel client."""

    api_host: str = ""
    node_id: int = 0
    key: str = field(default_factory=str)
    node_type: str = ""
    enable_vless: bool = False
    enable_xtls: bool = False
    timeout: int = 0
    speed_limit: float = 0.0
    device_limit: int = 0
    rule_list_path: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        """Build a config from configuration-file keys such as ``ApiHost`` or ``NodeID``.

        Keys are matched without regard to case; unknown keys are ignored.
        """
        values: dict[str, Any] = {}
        for raw_key, value in data.items():
            entry = _CONFIG_KEYS.get(str(raw_key).lower())
            if entry is None or value is None:
                continue
            name, kind = entry
            try:
                values[name] = _coerce(kind, value)
            except (TypeError, ValueError) as exc:
                raise APIError(f"invalid value for {raw_key}: {value!r}") from exc
        return cls(**values)


@dataclass
class NodeStatus:
    cpu: float = 0.0
    mem: float = 0.0
    disk: float = 0.0
    uptime: int = 0


@dataclass
class NodeInfo:
    node_type: str = ""  # V2ray, Trojan, Shadowsocks or Shadowsocks-Plugin
    node_id: int = 0
    port: int = 0
    speed_limit: int = 0  # bytes per second
    alter_id: int = 0
    transport_protocol: str = ""
    fake_type: str = ""
    host: str = ""
    path: str = ""
    enable_tls: bool = False
    tls_type: str = ""
    enable_vless: bool = False
    cypher_method: str = ""
    service_name: str = ""
    header: Any = None  # decoded JSON header settings, if any


@dataclass
class UserInfo:
    uid: int = 0
    email: str = ""
    passwd: str = field(default_factory=str)
    port: int = 0
    method: str = ""
    speed_limit: int = 0  # bytes per second
    device_limit: int = 0
    protocol: str = ""
    protocol_param: str = ""
    obfs: str = ""
    obfs_param: str = ""
    uuid: str = ""
    alter_id: int = 0


@dataclass
class OnlineUser:
    uid: int = 0
    ip: str = ""


@dataclass
class UserTraffic:
    uid: int = 0
    email: str = ""
    upload: int = 0
    download: int = 0


@dataclass(frozen=True)
class ClientInfo:
    api_host: str = ""
    node_id: int = 0
    key: str = field(default_factory=str)
    node_type: str = ""


@dataclass
class DetectRule:
    id: int = 0
    pattern: str = ""


@dataclass
class DetectResult:
    uid: int = 0
    rule_id: int = 0


class API(abc.ABC):
    """The operations a panel client offers to the node."""

    @abc.abstractmethod
    def get_node_info(self) -> NodeInfo: ...

    @abc.abstractmethod
    def get_user_list(self) -> list[UserInfo]: ...

    @abc.abstractmethod
    def report_node_status(self, node_status: NodeStatus) -> None: ...

    @abc.abstractmethod
    def report_node_online_users(self, online_users: list[OnlineUser]) -> None: ...

    @abc.abstractmethod
    def report_user_traffic(self, user_traffic: list[UserTraffic]) -> None: ...

    @abc.abstractmethod
    def describe(self) -> ClientInfo: ...

    @abc.abstractmethod
    def get_node_rule(self) -> list[DetectRule]: ...

    @abc.abstractmethod
    def report_illegal(self, detect_results: list[DetectResult]) -> None: ...

    @abc.abstractmethod
    def debug(self) -> None: ...


def read_local_rule_list(path: str | None) -> list[DetectRule]:
    """Read one detection pattern per line; every rule gets the id -1.

    An empty path gives no rules; a file that cannot be opened is logged and
    gives no rules; a failure while reading raises :class:`APIError`.
    """
    if not path:
        return []
    try:
        handle = open(path, encoding="utf-8", errors="replace", newline="")
    except OSError as exc:
        logger.error("Error when opening file: %s", exc)
        return []
    rules: list[DetectRule] = []
    with handle:
        try:
            for line in handle:
                line = line.removesuffix("\n").removesuffix("\r")
                rules.append(DetectRule(id=-1, pattern=line))
        except OSError as exc:
            raise APIError(f"Error while reading file: {exc}") from exc
    return rules


def speed_limit_to_bps(mbps: float) -> int:
    """Convert a limit in megabits per second to whole bytes per second."""
    if mbps <= 0:
        return 0
    return int((mbps * 1000000) / 8)