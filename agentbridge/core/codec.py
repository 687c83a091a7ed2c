"""Line-delimited JSON framing and a JSON-RPC 2.0 peer.

Every backend speaks one JSON value per ``\\n``-terminated line. Two of them
layer JSON-RPC 2.0 on top, including requests that flow from the backend
to us (reverse RPC), so the peer here handles both directions.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RpcError(Exception):
    """Error object returned by the remote side of a JSON-RPC call."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class RpcTimeoutError(RpcError):
    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(INTERNAL_ERROR, f"{method} timed out after {timeout:g}s")
        self.method = method


class RpcCancelledError(RpcError):
    """Raised into every outstanding call when the peer shuts down."""

    def __init__(self, reason: str = "Driver stopped") -> None:
        super().__init__(INTERNAL_ERROR, reason)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class LineBuffer:
    """Accumulates chunks and yields complete lines, carrying the remainder.

    Byte chunks go through an incremental decoder so a UTF-8 sequence split
    across two reads is joined before decoding.
    """

    def __init__(self) -> None:
        self._buf = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buf += chunk
        *lines, self._buf = self._buf.split("\n")
        return [line for line in (ln.strip() for ln in lines) if line]

    def flush(self) -> list[str]:
        """Return the trailing incomplete line (at EOF) and reset."""
        rest = (self._buf + self._decoder.decode(b"", final=True)).strip()
        self._buf = ""
        self._decoder.reset()
        return [rest] if rest else []


def decode_line(line: str, source: str = "backend") -> dict | None:
    """Parse one framed line. Malformed input is logged and dropped."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Non-JSON output from %s: %s", source, line[:200])
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring non-object frame from %s: %s", source, line[:200])
        return None
    return data


def encode_line(obj: dict) -> bytes:
    return (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


# ---------------------------------------------------------------------------
# JSON-RPC message kinds
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RpcRequest:
    """Backend calling back into us. Must be answered with the same id."""
    id: Any
    method: str
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RpcResponse:
    id: Any
    result: Any = None
    error: dict | None = None


@dataclass(frozen=True)
class RpcNotification:
    method: str
    params: dict = field(default_factory=dict)


RpcMessage = RpcRequest | RpcResponse | RpcNotification


def classify(msg: dict) -> RpcMessage | None:
    has_id = msg.get("id") is not None
    method = msg.get("method")
    has_result = "result" in msg
    has_error = "error" in msg

    if has_id and method and not has_result and not has_error:
        return RpcRequest(id=msg["id"], method=method, params=msg.get("params") or {})
    if has_id and has_result != has_error:
        return RpcResponse(id=msg["id"], result=msg.get("result"), error=msg.get("error"))
    if method and not has_id:
        return RpcNotification(method=method, params=msg.get("params") or {})

    logger.warning("Unclassifiable JSON-RPC message: %s", str(msg)[:200])
    return None


# ---------------------------------------------------------------------------
# Peer
# ---------------------------------------------------------------------------

@dataclass
class _PendingCall:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None


WriteFn = Callable[[bytes], Awaitable[None]]


class JsonRpcPeer:
    """Client side of a JSON-RPC 2.0 conversation over a line stream.

    Outgoing requests get monotonically increasing integer ids and wait in a
    pending table until the matching response, the per-call timeout or
    ``reject_all()``. Each entry leaves the table exactly once.
    """

    def __init__(self, write: WriteFn, timeout: float = 30.0) -> None:
        self._write = write
        self._timeout = timeout
        self._next_id = 0
        self._pending: dict[int, _PendingCall] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(
        self, method: str, params: dict | None = None, timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        *timeout* defaults to the peer's timeout; ``0`` waits without a timer
        (for calls that span a whole agent turn).
        """
        if self._closed:
            raise RpcCancelledError()

        loop = asyncio.get_running_loop()
        self._next_id += 1
        call_id = self._next_id
        future: asyncio.Future = loop.create_future()
        limit = self._timeout if timeout is None else timeout
        timer = loop.call_later(limit, self._expire, call_id, limit) if limit > 0 else None
        self._pending[call_id] = _PendingCall(method, future, timer)

        msg: dict = {"jsonrpc": "2.0", "id": call_id, "method": method}
        if params is not None:
            msg["params"] = params
        try:
            await self._write(encode_line(msg))
        except Exception:
            self._discard(call_id)
            raise
        logger.debug("-> %s (id=%d)", method, call_id)
        return await future

    async def notify(self, method: str, params: dict | None = None) -> None:
        msg: dict = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self._write(encode_line(msg))

    async def respond(self, request_id: Any, result: Any) -> None:
        await self._write(encode_line({"jsonrpc": "2.0", "id": request_id, "result": result}))

    async def respond_error(
        self, request_id: Any, code: int, message: str, data: Any = None,
    ) -> None:
        error: dict = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        await self._write(encode_line({"jsonrpc": "2.0", "id": request_id, "error": error}))

    def handle_response(self, resp: RpcResponse) -> bool:
        """Settle the matching pending call. Returns False for unknown ids."""
        entry = self._pending.pop(resp.id, None) if isinstance(resp.id, int) else None
        if entry is None:
            logger.debug("Response for unknown or expired id %r", resp.id)
            return False
        if entry.timer:
            entry.timer.cancel()
        if entry.future.done():
            return True
        if resp.error is not None:
            err = resp.error if isinstance(resp.error, dict) else {"message": str(resp.error)}
            entry.future.set_exception(RpcError(
                err.get("code", INTERNAL_ERROR),
                err.get("message", "Unknown error"),
                err.get("data"),
            ))
        else:
            entry.future.set_result(resp.result)
        return True

    def reject_all(self, reason: str = "Driver stopped") -> int:
        """Reject every outstanding call once and close the peer."""
        self._closed = True
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if entry.timer:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(RpcCancelledError(reason))
        if pending:
            logger.info("Rejected %d pending RPC call(s): %s", len(pending), reason)
        return len(pending)

    def _expire(self, call_id: int, timeout: float) -> None:
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return
        logger.warning("RPC %s (id=%d) timed out", entry.method, call_id)
        if not entry.future.done():
            entry.future.set_exception(RpcTimeoutError(entry.method, timeout))

    def _discard(self, call_id: int) -> None:
        entry = self._pending.pop(call_id, None)
        if entry and entry.timer:
            entry.timer.cancel()
