from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from .app_logging import log_with_fields, setup_logger
from .commands import handle_text
from .config import AppConfig, ensure_worker_paths, load_config
from .control import ControlPlane
from .models import build_kind_from_name
from .notify import LogNotifier, Notifier, TelegramNotifier
from .registry import JobRegistry, RegistryUnavailable, open_registry
from .server import create_app
from .worker import build_worker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipit", description="Per-architecture build coordinator")
    parser.add_argument("--config", required=True, help="Path to shipit YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the control plane HTTP service")

    worker_parser = subparsers.add_parser("worker", help="Run the build worker loop")
    worker_parser.add_argument("--once", action="store_true", help="Poll once, build if assigned, then exit")

    enqueue = subparsers.add_parser("enqueue", help="Claim build slots for architectures")
    enqueue.add_argument("kind", choices=["release", "livekit"], help="Build kind")
    enqueue.add_argument("archs", nargs="*", help="Target architectures (default: all known)")
    enqueue.add_argument("--variants", default="", help="Comma-separated release variants")
    enqueue.add_argument("--requester", default="cli", help="Requester id to notify on completion")

    subparsers.add_parser("status", help="Show which architectures are building")

    clear = subparsers.add_parser("clear", help="Manually release a stuck architecture slot")
    clear.add_argument("--arch", required=True, help="Architecture to clear")

    command = subparsers.add_parser("command", help="Run an operator chat command, e.g. '/status'")
    command.add_argument("text", help="Command text")
    command.add_argument("--requester", default="cli", help="Requester id to notify on completion")
    return parser


def _notifier(config: AppConfig) -> Notifier:
    if config.notify.kind == "telegram" and config.notify.token:
        return TelegramNotifier(config.notify.token)
    return LogNotifier()


def _open_control(config: AppConfig) -> tuple[JobRegistry, ControlPlane]:
    registry = open_registry(config.registry.url, prefix=config.registry.prefix)
    control = ControlPlane(
        registry=registry,
        notifier=_notifier(config),
        secret=config.secret,
        architectures=config.server.architectures,
    )
    return registry, control


def cmd_serve(config: AppConfig) -> int:
    registry, control = _open_control(config)
    try:
        log_with_fields(
            logging.getLogger("shipit"),
            logging.INFO,
            "server_listening",
            host=config.server.host,
            port=config.server.port,
        )
        uvicorn.run(create_app(control), host=config.server.host, port=config.server.port, log_config=None)
        return 0
    finally:
        registry.close()


def cmd_worker(config: AppConfig, *, once: bool = False) -> int:
    ensure_worker_paths(config)
    try:
        agent = build_worker(config)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    try:
        if once:
            agent.run_once()
            return 0
        agent.run_forever()
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger("shipit"), logging.INFO, "shutdown", reason="keyboard_interrupt")
    return 0


def cmd_enqueue(config: AppConfig, kind_name: str, archs: list[str], variants: str, requester: str) -> int:
    try:
        kind = build_kind_from_name(kind_name, [item for item in variants.split(",") if item.strip()])
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    registry, control = _open_control(config)
    try:
        outcomes = control.enqueue(archs, kind, requester)
    finally:
        registry.close()
    for outcome in outcomes:
        print(outcome.describe(kind))
    if any(outcome.status == "already_building" for outcome in outcomes):
        return 1
    return 0


def cmd_status(config: AppConfig) -> int:
    registry, control = _open_control(config)
    try:
        for status in control.query_status():
            print(status.describe())
        return 0
    finally:
        registry.close()


def cmd_clear(config: AppConfig, arch: str) -> int:
    registry, control = _open_control(config)
    try:
        existed = control.clear(arch)
    finally:
        registry.close()
    print(f"cleared {arch}" if existed else f"{arch} was already idle")
    return 0


def cmd_command(config: AppConfig, text: str, requester: str) -> int:
    registry, control = _open_control(config)
    try:
        print(handle_text(text, control, requester))
        return 0
    finally:
        registry.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"invalid config: {exc}", file=sys.stderr)
        return 2
    setup_logger(config.paths.log)

    try:
        if args.command == "serve":
            return cmd_serve(config)
        if args.command == "worker":
            return cmd_worker(config, once=bool(args.once))
        if args.command == "enqueue":
            return cmd_enqueue(config, args.kind, args.archs, args.variants, args.requester)
        if args.command == "status":
            return cmd_status(config)
        if args.command == "clear":
            return cmd_clear(config, args.arch)
        if args.command == "command":
            return cmd_command(config, args.text, args.requester)
    except RegistryUnavailable as exc:
        print(f"Failed to access job registry: {exc}", file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
