import json
import logging
import os
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional, Tuple

from .chain import ChainIntegrityError
from .registry import StarRegistry, VerificationError
from .security import enforce_security_requirements

logger = logging.getLogger(__name__)

RPC_TOKEN = os.getenv("STARLEDGER_RPC_TOKEN")
MAX_RPC_SIZE = int(os.getenv("STARLEDGER_RPC_MAX", "1048576"))
RPC_RATE_LIMIT = int(os.getenv("STARLEDGER_RPC_RATE", "120"))


class NotFound(LookupError):
    pass


def _require(params: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if params.get(name) in (None, "")]
    if missing:
        raise ValueError(f"{', '.join(missing)} required")


def handle_rpc(registry: StarRegistry, method: str, params: Dict[str, Any]) -> Any:
    if not isinstance(params, dict):
        raise ValueError("params must be an object")
    if method == "get_info":
        return registry.chain.metrics()
    if method == "get_height":
        return {"height": registry.get_height()}
    if method == "get_block":
        _require(params, "hash")
        blocks = registry.get_blocks_by_hash(str(params["hash"]))
        if not blocks:
            raise NotFound("block not found")
        return [block.to_dict() for block in blocks]
    if method == "get_block_by_height":
        _require(params, "height")
        try:
            height = int(params["height"])
        except (TypeError, ValueError) as exc:
            raise ValueError("height must be an integer") from exc
        block = registry.get_block_by_height(height)
        if not block:
            raise NotFound("block not found")
        return block.to_dict()
    if method == "get_stars":
        _require(params, "address")
        return registry.get_stars_by_owner(str(params["address"]))
    if method == "request_validation":
        _require(params, "address")
        return {"message": registry.issue_challenge(str(params["address"]))}
    if method == "submit_star":
        _require(params, "address", "message", "signature", "star")
        block = registry.verify_and_submit(
            str(params["address"]),
            str(params["message"]),
            str(params["signature"]),
            params["star"],
        )
        return block.to_dict()
    if method == "validate_chain":
        return {"errors": registry.validate_chain()}
    raise ValueError(f"unknown method {method!r}")


def _error_payload(exc: Exception) -> Tuple[int, Dict[str, Any]]:
    if isinstance(exc, NotFound):
        return 404, {"ok": False, "error": str(exc)}
    if isinstance(exc, VerificationError):
        return 400, {"ok": False, "error": str(exc), "kind": type(exc).__name__}
    if isinstance(exc, ChainIntegrityError):
        return 409, {
            "ok": False,
            "error": str(exc),
            "kind": type(exc).__name__,
            "issues": [issue.to_dict() for issue in exc.issues],
        }
    return 400, {"ok": False, "error": str(exc)}


class RpcServer:
    def __init__(
        self,
        registry: StarRegistry,
        host: str,
        port: int,
        token: Optional[str] = RPC_TOKEN,
        max_size: int = MAX_RPC_SIZE,
        rate_limit: int = RPC_RATE_LIMIT,
    ) -> None:
        self.registry = registry
        self.host = host
        self.port = port
        self.token = token
        self.max_size = max_size
        self.rate_limit = rate_limit
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self.rate: Dict[str, Dict[str, float]] = {}
        self._rate_lock = threading.Lock()

    @property
    def address(self) -> Tuple[str, int]:
        if self._server:
            host, port = self._server.server_address[:2]
            return str(host), int(port)
        return self.host, self.port

    def _allow(self, ip: str) -> bool:
        now = time.time()
        with self._rate_lock:
            rec = self.rate.get(ip)
            if rec is None or now - rec["ts"] > 60:
                # new window for this client; forget clients whose window expired
                self.rate = {k: v for k, v in self.rate.items() if now - v["ts"] <= 60}
                rec = {"count": 0, "ts": now}
            rec["count"] += 1
            self.rate[ip] = rec
            return rec["count"] <= self.rate_limit

    def start(self) -> None:
        if self._thread:
            return
        enforce_security_requirements(self.host)
        rpc = self

        class Handler(BaseHTTPRequestHandler):
            def _send(self, code: int, payload: Dict[str, Any]) -> None:
                data = json.dumps(payload).encode()
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def do_POST(self) -> None:
                if self.path != "/rpc":
                    self._send(404, {"ok": False, "error": "not_found"})
                    return
                try:
                    length = int(self.headers.get("Content-Length", "0"))
                except ValueError:
                    self._send(400, {"ok": False, "error": "invalid_length"})
                    return
                if length > rpc.max_size:
                    self._send(413, {"ok": False, "error": "payload_too_large"})
                    return
                if rpc.token:
                    token = self.headers.get("X-Auth-Token", "")
                    if token != rpc.token:
                        self._send(401, {"ok": False, "error": "unauthorized"})
                        return
                if not rpc._allow(self.client_address[0]):
                    self._send(429, {"ok": False, "error": "rate_limited"})
                    return
                raw = self.rfile.read(length)
                try:
                    req = json.loads(raw.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    self._send(400, {"ok": False, "error": "invalid_json"})
                    return
                if not isinstance(req, dict):
                    self._send(400, {"ok": False, "error": "invalid_request"})
                    return

                method = req.get("method")
                params = req.get("params", {})
                try:
                    result = handle_rpc(rpc.registry, method, params)
                except (NotFound, ValueError, VerificationError, ChainIntegrityError) as exc:
                    code, payload = _error_payload(exc)
                    self._send(code, payload)
                    return
                except Exception:
                    logger.exception("rpc method %r failed", method)
                    self._send(500, {"ok": False, "error": "internal_error"})
                    return
                self._send(200, {"ok": True, "result": result})

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("%s - %s", self.client_address[0], format % args)

        self._server = ThreadingHTTPServer((self.host, self.port), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("rpc listening on %s:%d", *self.address)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._thread = None
