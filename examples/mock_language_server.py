"""Stdio stand-in for the Copilot language server's sign-in methods.

Run as `language_server_command: python` with
`language_server_path: examples/mock_language_server.py`. Sign-in state lives in
memory for the lifetime of the process.
"""

from __future__ import annotations

import json
import sys
from typing import Any

STATE: dict[str, Any] = {"user": None}


def read_message() -> dict[str, Any] | None:
    length = None
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        if line in {b"\r\n", b"\n"}:
            break
        key, _, value = line.decode("utf-8").partition(":")
        if key.strip().lower() == "content-length":
            length = int(value.strip())
    if length is None:
        return None
    return json.loads(sys.stdin.buffer.read(length).decode("utf-8"))


def write_message(payload: dict[str, Any]) -> None:
    data = json.dumps(payload).encode("utf-8")
    sys.stdout.buffer.write(f"Content-Length: {len(data)}\r\n\r\n".encode("utf-8") + data)
    sys.stdout.buffer.flush()


def handle(method: str, params: dict[str, Any]) -> dict[str, Any]:
    if method == "initialize":
        return {"capabilities": {}, "serverInfo": {"name": "mock-copilot", "version": "0.0.0"}}
    if method == "setEditorInfo":
        return {}
    if method == "checkStatus":
        if STATE["user"]:
            return {"status": "OK", "user": STATE["user"]}
        return {"status": "NotSignedIn"}
    if method == "signInInitiate":
        # Server-to-client request the client must answer.
        write_message({"jsonrpc": "2.0", "id": "srv-1", "method": "window/showDocument", "params": {"uri": "x"}})
        return {"status": "PromptUserDeviceFlow", "userCode": "ABCD-1234", "verificationUri": "https://github.com/login/device"}
    if method == "signInConfirm":
        STATE["user"] = "octocat"
        return {"status": "OK", "user": "octocat"}
    if method == "signOut":
        STATE["user"] = None
        return {"status": "NotSignedIn"}
    raise KeyError(method)


def main() -> None:
    while True:
        msg = read_message()
        if msg is None:
            return
        if "method" not in msg:
            continue
        method = msg["method"]
        write_message({"jsonrpc": "2.0", "method": "statusNotification", "params": {"status": "Normal", "message": ""}})
        if "id" not in msg:
            continue
        try:
            result = handle(method, msg.get("params") or {})
        except KeyError:
            write_message({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32601, "message": "method not found"}})
            continue
        write_message({"jsonrpc": "2.0", "id": msg["id"], "result": result})


if __name__ == "__main__":
    main()
