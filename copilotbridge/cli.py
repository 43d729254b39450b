"""Command line entry point for copilotbridge."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable

import uvicorn
from pydantic import ValidationError

from .app import create_app, service_bind_addr
from .bridge_service import BridgeService
from .config import BridgeConfig, load_config
from .errors import BridgeError
from .logging_utils import setup_logging
from .stream_chunks import NormalizedMessage

Handler = Callable[[BridgeService, argparse.Namespace], Awaitable[None]]


def fail(message: str, exit_code: int = 2) -> None:
    """Print error and terminate process."""
    print(f"ERROR: {message}", file=sys.stderr)
    raise SystemExit(exit_code)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def cmd_status(service: BridgeService, _args: argparse.Namespace) -> None:
    """Print sign-in and token status, fetching a token when signed in."""
    status = await service.credentials.status()
    if status.authenticated:
        try:
            await service.credentials.ensure_valid()
        except BridgeError as exc:
            print(f"token exchange failed: {exc}", file=sys.stderr)
        status = await service.credentials.status()
    _print_json(status.to_dict())


async def cmd_signin(service: BridgeService, args: argparse.Namespace) -> None:
    """Run device-code sign-in."""
    status = await service.credentials.sign_in(force=args.force)
    _print_json(status.to_dict())


async def cmd_signout(service: BridgeService, _args: argparse.Namespace) -> None:
    """Sign out and drop the local token."""
    if await service.credentials.sign_out():
        print("signed out")
    else:
        print("not signed in")


async def cmd_models(service: BridgeService, _args: argparse.Namespace) -> None:
    """List the available chat models."""
    for model in await service.catalog.list_models():
        vendor = f" ({model.vendor})" if model.vendor else ""
        print(f"{model.id}\t{model.name}{vendor}")


async def cmd_setmodel(service: BridgeService, args: argparse.Namespace) -> None:
    """Validate a model id and save it as the default for chat requests."""
    model = await service.catalog.select_model(args.model, service.cfg.resolved_copilot_config_dir())
    print(f"default model set to {model.id}")


async def cmd_chat(service: BridgeService, args: argparse.Namespace) -> None:
    """Stream one prompt's answer to stdout as it arrives."""

    def sink(batch: list[NormalizedMessage], _marker: str) -> None:
        for message in batch:
            if message.content:
                print(message.content, end="", flush=True)
            for tc in message.tool_calls:
                print(f"\n[tool call] {tc.name} {json.dumps(tc.arguments)}")
            if message.error:
                print(f"\n[error] {message.error}", file=sys.stderr)

    messages = [{"role": "user", "content": args.message}]
    kwargs = BridgeService.chat_arguments({"model": args.model})
    await service.chat.send_streaming_request(messages, sink, **kwargs)
    print()


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(description="copilotbridge: GitHub Copilot chat behind an Ollama API")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.set_defaults(handler=None)
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the HTTP service (default)")
    sub.add_parser("status", help="Show sign-in and token status").set_defaults(handler=cmd_status)
    signin = sub.add_parser("signin", help="Sign in with the GitHub device-code flow")
    signin.add_argument("--force", action="store_true", help="Fetch a new token even when one is valid")
    signin.set_defaults(handler=cmd_signin)
    sub.add_parser("signout", help="Sign out and drop the local token").set_defaults(handler=cmd_signout)
    sub.add_parser("models", help="List available chat models").set_defaults(handler=cmd_models)
    setmodel = sub.add_parser("setmodel", help="Save the default chat model")
    setmodel.add_argument("--model", required=True, help="Model id from `models`")
    setmodel.set_defaults(handler=cmd_setmodel)
    chat = sub.add_parser("chat", help="Send one prompt and stream the answer")
    chat.add_argument("-m", "--message", required=True, help="Message to send")
    chat.add_argument("--model", default=None, help="Model id (defaults to the saved or configured model)")
    chat.set_defaults(handler=cmd_chat)
    return parser


def _load(config_path: str | None) -> BridgeConfig:
    """Load configuration or exit with a readable message."""
    try:
        return load_config(config_path)
    except ValidationError as exc:
        missing = sorted(
            {".".join(str(x) for x in err.get("loc", [])) for err in exc.errors() if err.get("type") == "missing"}
        )
        if missing:
            fail("Configuration incomplete. Missing required fields: " + ", ".join(missing))
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")
    raise AssertionError("unreachable")


def _serve(cfg: BridgeConfig, config_path: str | None) -> None:
    """Create the app and run uvicorn on the configured address."""
    try:
        app = create_app(config_path, cfg=cfg)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


async def run_command(cfg: BridgeConfig, handler: Handler, args: argparse.Namespace) -> None:
    """Run one command handler against a short-lived service."""
    service = BridgeService(cfg)
    try:
        await service.authorizer.start()
        await handler(service, args)
    finally:
        await service.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    cfg = _load(args.config)

    if args.handler is None:
        _serve(cfg, args.config)
        return

    setup_logging(cfg.logging)
    try:
        asyncio.run(run_command(cfg, args.handler, args))
    except BridgeError as exc:
        fail(str(exc), exit_code=1)
    except KeyboardInterrupt:
        fail("interrupted", exit_code=130)


if __name__ == "__main__":
    main()
