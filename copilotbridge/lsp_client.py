"""Authorization collaborator backed by the Copilot language server.

The language server speaks Content-Length framed JSON-RPC over stdio. Only the
sign-in related methods are used here; completions are not.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .config import BridgeConfig
from .errors import BridgeError

LOG = logging.getLogger(__name__)

_SERVER_SCRIPT = Path("copilot") / "dist" / "language-server.js"


class LSPError(BridgeError):
    """Raised for language server protocol and transport errors."""


class AuthorizationClient(ABC):
    """Capability set the credential manager needs from an authorizer."""

    async def start(self) -> None:
        """Open the channel to the authorizer."""

    async def close(self) -> None:
        """Release the channel to the authorizer."""

    @abstractmethod
    async def check_status(self, *, local_checks_only: bool = False) -> dict[str, Any]:
        """Return `{"status": ..., "user": ...}` for the current sign-in."""

    @abstractmethod
    async def sign_in_initiate(self) -> dict[str, Any]:
        """Start device-code sign-in, returning `userCode` and `verificationUri`."""

    @abstractmethod
    async def sign_in_confirm(self, user_code: str) -> dict[str, Any]:
        """Wait for out-of-band confirmation of `user_code`."""

    @abstractmethod
    async def sign_out(self) -> dict[str, Any]:
        """Revoke the sign-in held by the authorizer."""


def find_server_path(configured: str | None = None, cwd: Path | None = None) -> Path:
    """Locate `language-server.js`, preferring an explicitly configured path."""
    if configured:
        path = Path(configured).expanduser()
        if not path.exists():
            raise LSPError(f"language server not found at {path}")
        return path

    base = cwd or Path.cwd()
    for candidate in (base.parent / _SERVER_SCRIPT, base / _SERVER_SCRIPT):
        if candidate.exists():
            return candidate
    raise LSPError(f"language server ({_SERVER_SCRIPT.as_posix()}) not found")


class LSPClient(AuthorizationClient):
    """JSON-RPC client for a language server child process."""

    def __init__(self, cfg: BridgeConfig) -> None:
        """Initialize stdio transport state."""
        self.cfg = cfg
        self._proc: asyncio.subprocess.Process | None = None
        self._write_lock = asyncio.Lock()
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        """Return whether the initialize handshake completed."""
        return self._initialized

    async def start(self) -> None:
        """Spawn the language server and run the initialize handshake."""
        if self._proc is not None:
            return

        server_path = find_server_path(self.cfg.language_server_path)
        LOG.info("starting language server command=%s path=%s", self.cfg.language_server_command, server_path)
        self._proc = await asyncio.create_subprocess_exec(
            self.cfg.language_server_command,
            str(server_path),
            *self.cfg.language_server_args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._reader_task = asyncio.create_task(self._reader_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())
        await self._initialize()

    async def close(self) -> None:
        """Stop reader loops and terminate the language server."""
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None
        if self._proc:
            if self._proc.returncode is None:
                self._proc.terminate()
            await self._proc.wait()
            self._proc = None
        self._initialized = False

    async def _initialize(self) -> None:
        """Send `initialize`, `initialized` and `setEditorInfo`."""
        editor = self.cfg.editor
        params = {
            "processId": os.getpid(),
            "rootPath": str(Path.cwd()),
            "capabilities": {
                "textDocument": {"synchronization": {"didSave": True, "didChange": True}},
                "workspace": {"workspaceFolders": True},
                "copilot": {"openURL": True},
            },
            "initializationOptions": {
                "copilotIntegrationId": editor.integration_id,
                **editor.editor_info_params(),
            },
        }
        await self._rpc("initialize", params)
        await self._notify("initialized", {})
        await self._rpc("setEditorInfo", editor.editor_info_params())
        self._initialized = True
        LOG.info("language server initialized")

    async def _read_frame(self) -> dict[str, Any]:
        """Read one framed JSON-RPC message from stdout."""
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        content_length = None

        while True:
            line = await stdout.readline()
            if not line:
                raise LSPError("language server stdio stream ended")
            if line in {b"\r\n", b"\n"}:
                break
            key, _, value = line.decode("utf-8").partition(":")
            if key.lower().strip() == "content-length":
                content_length = int(value.strip())

        if content_length is None:
            raise LSPError("Missing Content-Length in language server frame")

        raw = await stdout.readexactly(content_length)
        return json.loads(raw.decode("utf-8"))

    async def _send_frame(self, payload: dict[str, Any]) -> None:
        """Write one framed JSON-RPC message to stdin."""
        assert self._proc is not None and self._proc.stdin is not None
        data = json.dumps(payload).encode("utf-8")
        frame = f"Content-Length: {len(data)}\r\n\r\n".encode("utf-8") + data
        self._proc.stdin.write(frame)
        await self._proc.stdin.drain()

    async def _reader_loop(self) -> None:
        """Route responses to waiting futures; answer and log server messages."""
        try:
            while True:
                msg = await self._read_frame()
                if "method" in msg:
                    await self._handle_server_message(msg)
                elif "id" in msg:
                    future = self._pending.pop(int(msg["id"]), None)
                    if future and not future.done():
                        future.set_result(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(exc)
            self._pending.clear()
            self._initialized = False
            LOG.exception("language server reader loop stopped")

    async def _handle_server_message(self, msg: dict[str, Any]) -> None:
        """Handle notifications and server-to-client requests."""
        method = str(msg["method"])
        params = msg.get("params") or {}
        if method == "statusNotification" and isinstance(params, dict):
            if params.get("status") == "Error":
                LOG.error("copilot status error: %s", params.get("message"))
            else:
                LOG.debug("copilot status: %s", params.get("status"))
        if "id" in msg:
            # Server requests (window/showDocument etc.) get an empty result.
            async with self._write_lock:
                await self._send_frame({"jsonrpc": "2.0", "id": msg["id"], "result": None})

    async def _stderr_loop(self) -> None:
        """Forward language server stderr to the log."""
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            LOG.warning("language server stderr: %s", line.decode("utf-8", errors="replace").rstrip())

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send one JSON-RPC notification."""
        if self._proc is None:
            raise LSPError("language server not started")
        async with self._write_lock:
            await self._send_frame({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def _rpc(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute one JSON-RPC request and return its result object."""
        if self._proc is None:
            raise LSPError("language server not started")

        async with self._write_lock:
            self._next_id += 1
            req_id = self._next_id
            future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
            self._pending[req_id] = future
            await self._send_frame(
                {
                    "jsonrpc": "2.0",
                    "id": req_id,
                    "method": method,
                    "params": params or {},
                }
            )

        try:
            msg = await asyncio.wait_for(future, timeout=timeout or self.cfg.rpc_timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._pending.pop(req_id, None)
            raise LSPError(f"language server request {method} timed out") from exc
        if "error" in msg:
            raise LSPError(f"{method} failed: {json.dumps(msg['error'], ensure_ascii=False)}")
        result = msg.get("result")
        return result if isinstance(result, dict) else {}

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a request after the handshake completed."""
        if not self._initialized:
            raise LSPError("language server client not initialized")
        return await self._rpc(method, params, timeout=timeout)

    async def check_status(self, *, local_checks_only: bool = False) -> dict[str, Any]:
        """Query sign-in status."""
        params: dict[str, Any] = {}
        if local_checks_only:
            params["options"] = {"localChecksOnly": True}
        return await self.request("checkStatus", params)

    async def sign_in_initiate(self) -> dict[str, Any]:
        """Start the device-code flow."""
        return await self.request("signInInitiate", {})

    async def sign_in_confirm(self, user_code: str) -> dict[str, Any]:
        """Confirm the device code once the user approved it."""
        return await self.request(
            "signInConfirm",
            {"userCode": user_code},
            timeout=self.cfg.sign_in_timeout_seconds,
        )

    async def sign_out(self) -> dict[str, Any]:
        """Sign out from the language server."""
        return await self.request("signOut", {})
