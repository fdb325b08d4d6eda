import json

import pytest
import responses
from responses import matchers

from xrayr.models import (
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
)
from xrayr.pmpanel import APIClient, NodeInfoResponse, UserResponse

HOST = "http://webapi.example.com"


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def make_client(node_type="V2ray", node_id=4, **extra):
    return APIClient(
        Config(api_host=HOST, key="placeholder", node_id=node_id, node_type=node_type, **extra)
    )


def ok(data):
    return {"ret": 200, "data": data}


def test_get_v2ray_node_info(rsps):
    rsps.get(
        f"{HOST}/api/node",
        json=ok(
            {
                "clazz": 1,
                "speedlimit": 8,
                "outPort": 443,
                "alterId": 2,
                "network": "ws",
                "security": "",
                "host": "a.example.com",
                "path": "/ws",
                "sni": "svc",
            }
        ),
        match=[matchers.query_param_matcher({"type": "v2ray", "nodeId": "4"})],
    )
    client = make_client()
    client.debug()
    info = client.get_node_info()
    assert info == NodeInfo(
        node_type="V2ray",
        node_id=4,
        port=443,
        speed_limit=1000000,
        alter_id=2,
        transport_protocol="ws",
        host="a.example.com",
        path="/ws",
        service_name="svc",
    )
    assert rsps.calls[0].request.headers["key"] == "placeholder"


def test_v2ray_tls_uses_xtls_when_enabled(rsps):
    rsps.get(
        f"{HOST}/api/node",
        json=ok({"outPort": 8443, "network": "ws", "security": "tls"}),
    )
    info = make_client(enable_xtls=True, enable_vless=True).get_node_info()
    assert info.enable_tls is True
    assert info.tls_type == "xtls"
    assert info.transport_protocol == ""
    assert info.enable_vless is True


def test_get_ss_node_info(rsps):
    rsps.get(
        f"{HOST}/api/node",
        json=ok({"outPort": 1234, "method": "aes-128-gcm", "speedlimit": 0}),
        match=[matchers.query_param_matcher({"type": "ss", "nodeId": "1"})],
    )
    info = make_client("Shadowsocks", 1).get_node_info()
    assert info == NodeInfo(
        node_type="Shadowsocks",
        node_id=1,
        port=1234,
        transport_protocol="tcp",
        cypher_method="aes-128-gcm",
    )


def test_get_trojan_node_info(rsps):
    rsps.get(
        f"{HOST}/api/node",
        json=ok({"outPort": 443, "host": "t.example.com", "grpc": True, "sni": "name"}),
        match=[matchers.query_param_matcher({"type": "trojan", "nodeId": "1"})],
    )
    info = make_client("Trojan", 1).get_node_info()
    assert info.transport_protocol == "grpc"
    assert info.enable_tls is True
    assert info.tls_type == "tls"
    assert info.host == "t.example.com"
    assert info.service_name == "name"
    assert info.port == 443


def test_config_speed_limit_overrides_panel(rsps):
    rsps.get(f"{HOST}/api/node", json=ok({"outPort": 1, "speedlimit": 80}))
    info = make_client("Trojan", speed_limit=16).get_node_info()
    assert info.speed_limit == 2000000


def test_unknown_node_type_raises_without_request(rsps):
    with pytest.raises(APIError, match="NodeType Error: Foo"):
        make_client("Foo").get_node_info()
    assert len(rsps.calls) == 0


def test_bad_ret_raises(rsps):
    rsps.get(f"{HOST}/api/node", json={"ret": 0, "data": None})
    with pytest.raises(APIError, match="Ret .* invalid"):
        make_client().get_node_info()


def test_server_error_raises_with_body(rsps):
    rsps.get(f"{HOST}/api/node", body="boom", status=500)
    with pytest.raises(APIError, match="boom"):
        make_client().get_node_info()


def test_unreachable_host_raises():
    with responses.RequestsMock(assert_all_requests_are_fired=False):
        with pytest.raises(APIError, match="request http://webapi.example.com/api/node failed"):
            make_client().get_node_info()


def test_wrong_field_type_raises(rsps):
    rsps.get(f"{HOST}/api/node", json=ok({"outPort": "443"}))
    with pytest.raises(APIError, match="Unmarshal"):
        make_client().get_node_info()


def test_get_user_list(rsps):
    password = "password"
    rsps.get(
        f"{HOST}/api/users",
        json=ok(
            {
                "addOrUpdate": [
                    {"id": 1, "passwd": password, "speedlimit": 8, "connector": 3},
                    {"id": 2, "passwd": password, "speedlimit": 0, "connector": 0},
                ],
                "delete": [],
            }
        ),
        match=[
            matchers.query_param_matcher({"type": "v2ray", "nodeId": "4", "all": "true"})
        ],
    )
    users = make_client().get_user_list()
    assert users == [
        UserInfo(uid=1, passwd=password, uuid=password, speed_limit=1000000, device_limit=3),
        UserInfo(uid=2, passwd=password, uuid=password, speed_limit=0, device_limit=0),
    ]


def test_device_limit_from_config(rsps):
    rsps.get(
        f"{HOST}/api/users",
        json=ok({"addOrUpdate": [{"id": 5, "passwd": "password", "connector": 3}]}),
    )
    users = make_client(device_limit=9).get_user_list()
    assert [u.device_limit for u in users] == [9]


def test_user_list_without_add_or_update_raises(rsps):
    rsps.get(f"{HOST}/api/users", json=ok({"delete": []}))
    with pytest.raises(APIError, match="Parse user list failed"):
        make_client().get_user_list()


def test_report_node_status_sends_nothing(rsps):
    assert make_client().report_node_status(NodeStatus(1, 1, 1, 256)) is None
    assert len(rsps.calls) == 0


def test_report_node_online_users(rsps):
    rsps.post(f"{HOST}/api/online", json=ok(None))
    online = [OnlineUser(uid=1, ip="1.1.1.0"), OnlineUser(uid=2, ip="1.1.1.1")]
    result = make_client().report_node_online_users(online)
    assert result is None
    assert len(rsps.calls) == 1
    body = json.loads(rsps.calls[0].request.body)
    assert body == {
        "type": "v2ray",
        "nodeId": 4,
        "users": None,
        "onlines": [{"user_id": 1, "ip": "1.1.1.0"}, {"user_id": 2, "ip": "1.1.1.1"}],
    }
    assert rsps.calls[0].request.headers["Content-Type"] == "application/json"


def test_report_user_traffic(rsps):
    rsps.post(f"{HOST}/api/traffic", json=ok(None))
    traffic = [UserTraffic(uid=1, upload=114514, download=114514)]
    result = make_client().report_user_traffic(traffic)
    assert result is None
    assert len(rsps.calls) == 1
    body = json.loads(rsps.calls[0].request.body)
    assert body == {
        "type": "v2ray",
        "nodeId": 4,
        "users": [{"id": 1, "up": 114514, "down": 114514, "ip": ""}],
        "onlines": None,
    }


def test_report_user_traffic_failure_raises(rsps):
    rsps.post(f"{HOST}/api/traffic", json={"ret": 500, "data": None})
    with pytest.raises(APIError, match="invalid"):
        make_client().report_user_traffic([UserTraffic(uid=1)])


def test_get_node_rule_appends_panel_rules_to_local(rsps, tmp_path):
    rule_file = tmp_path / "rules.txt"
    rule_file.write_text("bad\\.example\nworse\n", encoding="utf-8")
    rsps.get(
        f"{HOST}/api/rules",
        json=ok([{"id": 7, "regex": "(.*\\.|)torrent"}]),
        match=[matchers.query_param_matcher({"type": "v2ray", "nodeId": "4"})],
    )
    client = make_client(rule_list_path=str(rule_file))
    rules = client.get_node_rule()
    assert rules == [
        DetectRule(id=-1, pattern="bad\\.example"),
        DetectRule(id=-1, pattern="worse"),
        DetectRule(id=7, pattern="(.*\\.|)torrent"),
    ]
    assert len(client.local_rule_list) == 2


def test_report_illegal_sends_nothing(rsps):
    results = [DetectResult(1, 2), DetectResult(1, 3)]
    assert make_client().report_illegal(results) is None
    assert len(rsps.calls) == 0


def test_describe():
    assert make_client().describe() == ClientInfo(
        api_host=HOST, node_id=4, key="placeholder", node_type="V2ray"
    )


def test_node_info_response_from_dict():
    response = NodeInfoResponse.from_dict(
        {"clazz": 2, "outServer": "a.example.com", "Sni": "x", "trafficRate": 1.5}
    )
    assert response.node_class == 2
    assert response.raw_server_string == "a.example.com"
    assert response.sni == "x"
    assert response.traffic_rate == 1.5
    assert NodeInfoResponse.from_dict(None) == NodeInfoResponse()


def test_user_response_from_dict_rejects_bad_type():
    assert UserResponse.from_dict({"id": 3, "connector": 2}) == UserResponse(id=3, device_limit=2)
    with pytest.raises(APIError):
        UserResponse.from_dict({"id": "3"})