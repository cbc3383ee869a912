"""
Operator commands, parsed from chat text into typed values.

Parsing never touches the registry; ``execute_command`` is the only place a
parsed command reaches the control plane.

    /help
    /status
    /build <livekit|release> [ARCHS] [VARIANTS]
    /livekit [ARCHS]
    /release [ARCHS] VARIANTS

ARCHS and VARIANTS are comma-separated; ARCHS may be ``all``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .control import ControlPlane
from .models import DEFAULT_ARCHITECTURES, BuildKind, build_kind_from_name
from .registry import RegistryUnavailable
from .utils import truncate

HELP_TEXT = "\n".join(
    [
        "shipit supports the following commands:",
        "/help - display this message",
        "/status - show which architectures are building",
        "/build <livekit|release> [archs] [variants] - start a build job, e.g. /build livekit amd64,arm64",
        "/livekit [archs] - shorthand for /build livekit",
        "/release [archs] <variants> - shorthand for /build release, e.g. /release amd64 base,desktop",
    ]
)


ARCHITECTURE_WORDS = frozenset((*DEFAULT_ARCHITECTURES, "all"))


class CommandError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class HelpCommand:
    pass


@dataclass(frozen=True, slots=True)
class StatusCommand:
    pass


@dataclass(frozen=True, slots=True)
class BuildCommand:
    kind: BuildKind
    architectures: tuple[str, ...] = ()


Command = Union[HelpCommand, StatusCommand, BuildCommand]


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _looks_like_architectures(items: list[str]) -> bool:
    return bool(items) and all(item.lower() in ARCHITECTURE_WORDS for item in items)


def _parse_build(kind_name: str, args: list[str]) -> BuildCommand:
    kind_name = kind_name.lower()
    if kind_name == "livekit":
        if len(args) > 1:
            raise CommandError("livekit builds take no variants")
        variants: list[str] = []
    elif kind_name == "release":
        if not args:
            raise CommandError("release builds need variants, e.g. /release amd64 base,desktop")
        variants = _split_list(args[-1])
        if len(args) == 1 and _looks_like_architectures(variants):
            raise CommandError(f"release builds need variants, e.g. /release {args[0]} base,desktop")
        args = args[:-1]
        if len(args) > 1:
            raise CommandError("too many arguments")
    else:
        raise CommandError(f"unknown build type: {kind_name}")

    architectures: tuple[str, ...] = ()
    if args and args[0].lower() != "all":
        architectures = tuple(_split_list(args[0]))

    try:
        kind = build_kind_from_name(kind_name, variants)
    except ValueError as exc:
        raise CommandError(str(exc)) from exc
    return BuildCommand(kind=kind, architectures=architectures)


def parse_command(text: str) -> Command:
    parts = text.split()
    if not parts or not parts[0].startswith("/"):
        raise CommandError("commands start with /")
    # strip a trailing @botname mention
    name = parts[0][1:].split("@", 1)[0].lower()
    args = parts[1:]

    if name in {"help", "start"}:
        return HelpCommand()
    if name == "status":
        return StatusCommand()
    if name == "build":
        if not args:
            raise CommandError("usage: /build <livekit|release> [archs] [variants]")
        return _parse_build(args[0], args[1:])
    if name in {"livekit", "release"}:
        return _parse_build(name, args)
    raise CommandError(f"unknown command: /{name}")


def execute_command(command: Command, control: ControlPlane, requester_id: str) -> str:
    if isinstance(command, HelpCommand):
        return HELP_TEXT
    try:
        if isinstance(command, StatusCommand):
            return "\n".join(status.describe() for status in control.query_status())
        outcomes = control.enqueue(command.architectures, command.kind, requester_id)
    except RegistryUnavailable as exc:
        return truncate(f"Failed to access job registry: {exc}")
    return "\n".join(outcome.describe(command.kind) for outcome in outcomes)


def handle_text(text: str, control: ControlPlane, requester_id: str) -> str:
    try:
        command = parse_command(text)
    except CommandError as exc:
        return f"{exc}\n\n{HELP_TEXT}"
    return execute_command(command, control, requester_id)
