import json
import os
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Iterator, Tuple

import pytest

from parish_bridge.bridge.client import BridgeClient, BridgeClientError
from parish_bridge.bridge.server import BridgeHTTPServer, create_bridge_server
from tests.stubs import FAIL_WITH_MESSAGE, WRITE_PID_AND_HANG


@pytest.fixture
def serve(stub_config) -> Iterator:
    servers = []

    def _serve(body=None) -> BridgeClient:
        config = stub_config(body) if body is not None else stub_config()
        server: BridgeHTTPServer = create_bridge_server("127.0.0.1", 0, config)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return BridgeClient(f"http://127.0.0.1:{server.server_address[1]}")

    yield _serve
    for server in servers:
        server.shutdown()
        server.server_close()


def test_health(serve) -> None:
    health = serve().health()
    assert health["ok"] is True
    assert health["status"] == "ok"


def test_rpc_forwards_named_params(serve) -> None:
    client = serve()
    result = client.call(
        "create_baptism_record",
        {
            "child_name": "Maria",
            "mother_name": "Elena",
            "birth_date": "2020-01-01",
            "birth_place": "Manila",
            "baptism_date": "2020-02-02",
            "priest_name": "Fr. Cruz",
            "created_by": 7,
        },
    )
    assert json.loads(result) == ["Maria", "", "Elena", "2020-01-01", "Manila", "2020-02-02", "Fr. Cruz", "7"]


def test_rpc_failure_keeps_error_code(serve) -> None:
    client = serve(FAIL_WITH_MESSAGE)
    with pytest.raises(BridgeClientError) as exc:
        client.call("login", {"username": "admin", "password": "wrong"})
    assert exc.value.code == "EXEC_FAILED"
    assert exc.value.message == "Authentication failed: boom from validateUser.js"


def test_rpc_rejects_unknown_method(serve) -> None:
    with pytest.raises(BridgeClientError) as exc:
        serve().call("drop_tables", {})
    assert exc.value.code == "INVALID_INPUT"


def test_rpc_concurrent_requests(serve) -> None:
    client = serve()
    results = {}

    def call(record_id: int) -> None:
        results[record_id] = client.call("delete_record", {"record_id": record_id, "deleted_by": 1})

    threads = [threading.Thread(target=call, args=(i,)) for i in range(1, 7)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert {k: json.loads(v) for k, v in results.items()} == {i: [str(i), "1"] for i in range(1, 7)}


def test_unknown_route_is_not_found(serve) -> None:
    client = serve()
    request = urllib.request.Request(f"{client.url}/nope", method="GET")
    with pytest.raises(urllib.error.HTTPError) as exc:
        urllib.request.urlopen(request, timeout=5)
    assert exc.value.code == 404


def test_unreachable_bridge() -> None:
    with pytest.raises(BridgeClientError) as exc:
        BridgeClient("http://127.0.0.1:9").health()
    assert exc.value.code == "BRIDGE_UNAVAILABLE"


def _post_rpc(url: str, body: Any) -> Tuple[int, dict]:
    request = urllib.request.Request(
        f"{url}/rpc",
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read())


@pytest.mark.parametrize("params", [5, True, "admin"])
def test_rpc_scalar_params_are_invalid_input(serve, params: Any) -> None:
    status, body = _post_rpc(serve().url, {"id": 1, "method": "login", "params": params})
    assert status == 400
    assert body["ok"] is False
    assert body["error"]["code"] == "INVALID_INPUT"


def test_client_validates_before_sending() -> None:
    client = BridgeClient("http://127.0.0.1:9")
    with pytest.raises(BridgeClientError) as exc:
        client.call("login", ["only-one"])
    assert exc.value.code == "INVALID_INPUT"
    assert exc.value.retryable is False
    with pytest.raises(BridgeClientError) as exc:
        client.call("login", 5)  # type: ignore[arg-type]
    assert exc.value.code == "INVALID_INPUT"


def test_client_sends_aliases_under_canonical_name(serve) -> None:
    client = serve()
    assert json.loads(client.call("get_all_users")) == []
    assert json.loads(client.call("get_baptism_records", {})) == []


@pytest.mark.skipif(os.name == "nt", reason="relies on POSIX process signalling")
def test_server_close_kills_running_scripts(stub_config, tmp_path: Path) -> None:
    server = create_bridge_server("127.0.0.1", 0, stub_config(WRITE_PID_AND_HANG))
    threading.Thread(target=server.serve_forever, daemon=True).start()
    client = BridgeClient(f"http://127.0.0.1:{server.server_address[1]}")
    pid_file = tmp_path / "child.pid"
    outcome = {}

    def call() -> None:
        try:
            client.call("login", [str(pid_file), "x"], timeout_seconds=30)
        except BridgeClientError as exc:
            outcome["code"] = exc.code

    caller = threading.Thread(target=call, daemon=True)
    caller.start()
    for _ in range(200):
        if pid_file.exists():
            break
        caller.join(0.05)
    pid = int(pid_file.read_text(encoding="utf-8"))

    server.shutdown()
    server.server_close()

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    caller.join(5)
    assert outcome.get("code") in ("BRIDGE_UNAVAILABLE", "ERROR")
