import json
import time
from http.client import HTTPConnection
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import pytest

from starledger.rpc import NotFound, RpcServer, handle_rpc


def _submit(registry, wallet, story):
    message = handle_rpc(registry, "request_validation", {"address": wallet.address})["message"]
    return handle_rpc(
        registry,
        "submit_star",
        {
            "address": wallet.address,
            "message": message,
            "signature": wallet.sign_message(message),
            "star": {"story": story},
        },
    )


def test_dispatch_flow(registry, wallet):
    block = _submit(registry, wallet, "one")
    assert block["height"] == 1
    assert handle_rpc(registry, "get_height", {}) == {"height": 1}
    assert handle_rpc(registry, "get_block", {"hash": block["hash"]}) == [block]
    assert handle_rpc(registry, "get_block_by_height", {"height": "1"}) == block
    assert handle_rpc(registry, "get_stars", {"address": wallet.address}) == [
        {"address": wallet.address, "star": {"story": "one"}}
    ]
    assert handle_rpc(registry, "validate_chain", {}) == {"errors": []}
    assert handle_rpc(registry, "get_info", {})["tip"] == block["hash"]


def test_dispatch_errors(registry):
    with pytest.raises(NotFound):
        handle_rpc(registry, "get_block", {"hash": "f" * 64})
    with pytest.raises(NotFound):
        handle_rpc(registry, "get_block_by_height", {"height": 7})
    with pytest.raises(ValueError):
        handle_rpc(registry, "get_block_by_height", {"height": "x"})
    with pytest.raises(ValueError):
        handle_rpc(registry, "submit_star", {"address": "a"})
    with pytest.raises(ValueError):
        handle_rpc(registry, "nope", {})


@pytest.fixture
def server(registry, monkeypatch):
    monkeypatch.delenv("STARLEDGER_SECURITY_LEVEL", raising=False)
    monkeypatch.delenv("STARLEDGER_RPC_LOCAL_ONLY", raising=False)
    srv = RpcServer(registry, "127.0.0.1", 0, token="secret", rate_limit=1000)
    srv.start()
    yield srv
    srv.stop()


def _call(server, method, params=None, token="secret"):
    host, port = server.address
    headers = {"Content-Type": "application/json"}
    if token:
        headers["X-Auth-Token"] = token
    body = json.dumps({"method": method, "params": params or {}}).encode()
    req = Request(f"http://{host}:{port}/rpc", data=body, headers=headers)
    try:
        with urlopen(req, timeout=5) as resp:
            return resp.status, json.loads(resp.read().decode())
    except HTTPError as exc:
        return exc.code, json.loads(exc.read().decode())


def test_server_round_trip(server, wallet):
    status, reply = _call(server, "request_validation", {"address": wallet.address})
    assert status == 200
    message = reply["result"]["message"]

    status, reply = _call(
        server,
        "submit_star",
        {
            "address": wallet.address,
            "message": message,
            "signature": wallet.sign_message(message),
            "star": {"story": "over http"},
        },
    )
    assert status == 200
    assert reply["ok"] is True
    assert reply["result"]["height"] == 1


def test_server_error_mapping(server, wallet):
    assert _call(server, "get_height", token="wrong")[0] == 401

    status, reply = _call(server, "get_block_by_height", {"height": 99})
    assert status == 404
    assert reply == {"ok": False, "error": "block not found"}

    status, reply = _call(
        server,
        "submit_star",
        {"address": wallet.address, "message": "junk", "signature": "x", "star": {}},
    )
    assert status == 400
    assert reply["kind"] == "MalformedMessage"


def test_internal_errors_are_not_client_errors(server, registry, monkeypatch):
    def broken():
        raise KeyError("height")

    monkeypatch.setattr(registry, "get_height", broken)
    status, reply = _call(server, "get_height")
    assert status == 500
    assert reply == {"ok": False, "error": "internal_error"}


@pytest.fixture
def tight_server(registry, monkeypatch):
    monkeypatch.delenv("STARLEDGER_SECURITY_LEVEL", raising=False)
    monkeypatch.delenv("STARLEDGER_RPC_LOCAL_ONLY", raising=False)
    srv = RpcServer(registry, "127.0.0.1", 0, token="secret", max_size=256, rate_limit=2)
    srv.start()
    yield srv
    srv.stop()


def test_oversized_request_is_rejected(tight_server):
    host, port = tight_server.address
    conn = HTTPConnection(host, port, timeout=5)
    conn.putrequest("POST", "/rpc")
    conn.putheader("X-Auth-Token", "secret")
    conn.putheader("Content-Length", "4096")
    conn.endheaders()
    resp = conn.getresponse()
    assert resp.status == 413
    assert json.loads(resp.read().decode()) == {"ok": False, "error": "payload_too_large"}
    conn.close()


def test_rate_limit(tight_server):
    assert _call(tight_server, "get_height")[0] == 200
    assert _call(tight_server, "get_height")[0] == 200
    status, reply = _call(tight_server, "get_height")
    assert status == 429
    assert reply == {"ok": False, "error": "rate_limited"}


def test_rate_table_forgets_expired_clients(registry):
    srv = RpcServer(registry, "127.0.0.1", 0, rate_limit=1)
    srv.rate = {
        "10.0.0.1": {"count": 9, "ts": 0.0},
        "10.0.0.2": {"count": 1, "ts": time.time()},
    }
    assert srv._allow("10.0.0.3") is True
    assert set(srv.rate) == {"10.0.0.2", "10.0.0.3"}
    assert srv._allow("10.0.0.2") is False
