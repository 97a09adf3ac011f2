import json
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Mapping, Optional

from parish_bridge.bridge.config import BridgeConfig
from parish_bridge.bridge.operations import Arguments, BridgeOperationError, encode_arguments, lookup
from parish_bridge.bridge.protocol import PROTOCOL_VERSION


class BridgeClientError(BridgeOperationError):
    """A failure reported by a running bridge, or met on the way to it.

    Carries the same codes as ``CommandBridge`` so callers handle local and
    remote invocations alike; ``BRIDGE_UNAVAILABLE`` means nothing answered.
    """

    @property
    def retryable(self) -> bool:
        return self.code == "BRIDGE_UNAVAILABLE"


class BridgeClient:
    def __init__(self, url: Optional[str] = None):
        self.url = (url or BridgeConfig.from_env().url).rstrip("/")

    def _exchange(self, request: urllib.request.Request, timeout_seconds: Optional[float]) -> Dict[str, Any]:
        try:
            with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            # 4xx/5xx still carry the JSON error envelope.
            raw = exc.read()
        except OSError as exc:
            raise BridgeClientError("BRIDGE_UNAVAILABLE", f"Bridge at {self.url} is unreachable: {exc}") from exc
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BridgeClientError("ERROR", f"Bridge returned a non-JSON response: {exc}") from exc
        if not isinstance(body, dict):
            raise BridgeClientError("ERROR", "Bridge response must be a JSON object")
        if not body.get("ok", False):
            error = body.get("error") or {}
            raise BridgeClientError(error.get("code", "ERROR"), error.get("message", "Bridge call failed"))
        if body.get("protocolVersion") != PROTOCOL_VERSION:
            raise BridgeClientError(
                "ERROR", f"Protocol mismatch: expected {PROTOCOL_VERSION}, got {body.get('protocolVersion')}"
            )
        return body

    def call(self, operation: str, args: Optional[Arguments] = None, timeout_seconds: Optional[float] = None) -> str:
        """Run ``operation`` on the bridge and return the script's trimmed stdout.

        Unknown operations and malformed arguments fail here with
        ``INVALID_INPUT`` before any request is sent. Aliases are sent under
        their canonical name.
        """
        op = lookup(operation)
        encode_arguments(op, args)
        params: Any = dict(args) if isinstance(args, Mapping) else list(args or ())
        payload = json.dumps({"id": op.name, "method": op.name, "params": params}).encode("utf-8")
        request = urllib.request.Request(
            f"{self.url}/rpc",
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        return self._exchange(request, timeout_seconds)["result"]

    def health(self) -> Dict[str, Any]:
        return self._exchange(urllib.request.Request(f"{self.url}/health", method="GET"), 5)

    def wait_until_healthy(self, attempts: int = 30, interval_seconds: float = 0.1) -> Dict[str, Any]:
        last_error = BridgeClientError("BRIDGE_UNAVAILABLE", f"Bridge at {self.url} did not answer")
        for _ in range(attempts):
            time.sleep(interval_seconds)
            try:
                return self.health()
            except BridgeClientError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
        raise last_error
