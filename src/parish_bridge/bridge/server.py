import asyncio
import concurrent.futures
import json
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from parish_bridge.bridge.config import BridgeConfig
from parish_bridge.bridge.operations import BridgeOperationError, CommandBridge
from parish_bridge.bridge.protocol import PROTOCOL_VERSION

logger = logging.getLogger(__name__)


class BridgeRuntime:
    """Owns one event loop thread so every request shares the worker bound."""

    def __init__(self, bridge: CommandBridge):
        self.bridge = bridge
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="parish-bridge-loop", daemon=True)
        self._thread.start()

    def call(self, method: str, params: Any) -> str:
        future = asyncio.run_coroutine_threadsafe(self.bridge.invoke(method, params), self._loop)
        try:
            return future.result()
        except concurrent.futures.CancelledError as exc:
            raise BridgeOperationError("BRIDGE_UNAVAILABLE", f"{method}: bridge is shutting down") from exc

    async def _cancel_pending(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        for task in pending:
            task.cancel()
        # Cancelled invocations kill and reap their child process before finishing.
        await asyncio.gather(*pending, return_exceptions=True)

    def close(self, timeout_seconds: float = 10) -> None:
        if self._loop.is_closed():
            return
        if self._thread.is_alive():
            cancelled = asyncio.run_coroutine_threadsafe(self._cancel_pending(), self._loop)
            try:
                cancelled.result(timeout=timeout_seconds)
            except concurrent.futures.TimeoutError:
                logger.warning("Scripts still running after %ss; closing the bridge anyway", timeout_seconds)
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)
        self._loop.close()


class BridgeHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Any, runtime: BridgeRuntime):
        super().__init__(address, BridgeRequestHandler)
        self.runtime = runtime

    def server_close(self) -> None:
        super().server_close()
        self.runtime.close()


class BridgeRequestHandler(BaseHTTPRequestHandler):
    server_version = "ParishBridge/1.0"
    server: BridgeHTTPServer

    def do_POST(self) -> None:  # noqa: N802
        if self.path != "/rpc":
            self._send(404, {"ok": False, "error": {"code": "NOT_FOUND", "message": "Route not found"}})
            return
        try:
            content_length = int(self.headers.get("Content-Length", "0"))
            raw_body = self.rfile.read(content_length).decode("utf-8")
            try:
                payload = json.loads(raw_body)
            except json.JSONDecodeError as exc:
                raise BridgeOperationError("INVALID_INPUT", f"Invalid JSON body: {exc}") from exc
            if not isinstance(payload, dict):
                raise BridgeOperationError("INVALID_INPUT", "Request body must be a JSON object")
            method = payload.get("method")
            if not isinstance(method, str):
                raise BridgeOperationError("INVALID_INPUT", "Request is missing 'method'")
            params = payload.get("params") or {}
            request_id = payload.get("id")
            result = self.server.runtime.call(method, params)
            self._send(
                200,
                {
                    "ok": True,
                    "protocolVersion": PROTOCOL_VERSION,
                    "id": request_id,
                    "result": result,
                },
            )
        except BridgeOperationError as exc:
            self._send(
                400,
                {
                    "ok": False,
                    "protocolVersion": PROTOCOL_VERSION,
                    "error": {"code": exc.code, "message": exc.message},
                },
            )
        except Exception as exc:
            logger.exception("Unhandled error while serving %s", self.path)
            self._send(
                500,
                {
                    "ok": False,
                    "protocolVersion": PROTOCOL_VERSION,
                    "error": {"code": "ERROR", "message": str(exc)},
                },
            )

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/health":
            self._send(200, {"ok": True, "protocolVersion": PROTOCOL_VERSION, "status": "ok"})
            return
        self._send(404, {"ok": False, "error": {"code": "NOT_FOUND", "message": "Route not found"}})

    def log_message(self, format: str, *args: object) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send(self, status: int, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


def create_bridge_server(host: str, port: int, config: Optional[BridgeConfig] = None) -> BridgeHTTPServer:
    runtime = BridgeRuntime(CommandBridge(config))
    return BridgeHTTPServer((host, port), runtime)


def run_bridge_server(host: str, port: int, config: Optional[BridgeConfig] = None) -> None:
    server = create_bridge_server(host, port, config)
    logger.info("Bridge listening on http://%s:%s", host, server.server_address[1])

    def _on_sigterm(signum: int, frame: Any) -> None:
        logger.info("Received signal %s, shutting the bridge down", signum)
        # shutdown() blocks until serve_forever returns, so it cannot run on the serving thread.
        threading.Thread(target=server.shutdown, name="parish-bridge-shutdown", daemon=True).start()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _on_sigterm)
    try:
        server.serve_forever()
    finally:
        server.server_close()
