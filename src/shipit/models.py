from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from .utils import utc_now_iso

DEFAULT_ARCHITECTURES = (
    "amd64",
    "arm64",
    "loongarch64",
    "ppc64el",
    "loongson3",
    "riscv64",
)


@dataclass(frozen=True, slots=True)
class Livekit:
    name: Literal["livekit"] = field(default="livekit", init=False)

    def describe(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class Release:
    variants: tuple[str, ...]
    name: Literal["release"] = field(default="release", init=False)

    def __post_init__(self) -> None:
        variants = tuple(str(item).strip() for item in self.variants)
        if not variants or any(not item for item in variants):
            raise ValueError("release builds need at least one non-empty variant")
        object.__setattr__(self, "variants", variants)

    def describe(self) -> str:
        return f"{self.name} ({', '.join(self.variants)})"


BuildKind = Union[Livekit, Release]


def build_kind_from_name(name: str, variants: list[str] | tuple[str, ...] | None = None) -> BuildKind:
    lowered = name.strip().lower()
    if lowered == "livekit":
        return Livekit()
    if lowered == "release":
        return Release(tuple(variants or ()))
    raise ValueError(f"unknown build kind: {name!r}")


def encode_build_kind(kind: BuildKind) -> Any:
    """Externally tagged form used in the registry and in poll responses."""
    if isinstance(kind, Livekit):
        return "Livekit"
    return {"Release": list(kind.variants)}


def decode_build_kind(raw: Any) -> BuildKind:
    if raw == "Livekit":
        return Livekit()
    if isinstance(raw, dict) and len(raw) == 1:
        tag, value = next(iter(raw.items()))
        if tag == "Livekit" and value is None:
            return Livekit()
        if tag == "Release" and isinstance(value, list):
            return Release(tuple(value))
    raise ValueError(f"unrecognised build_type: {raw!r}")


def encode_report_kind(kind: BuildKind) -> dict[str, Any]:
    if isinstance(kind, Livekit):
        return {"name": kind.name}
    return {"name": kind.name, "variants": list(kind.variants)}


@dataclass(frozen=True, slots=True)
class JobRecord:
    requester_id: str
    architecture: str
    build_kind: BuildKind

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.requester_id,
            "arch": self.architecture,
            "build_type": encode_build_kind(self.build_kind),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        try:
            requester_id = data["id"]
            arch = data["arch"]
            build_type = data["build_type"]
        except KeyError as exc:
            raise ValueError(f"job record missing field {exc.args[0]!r}") from exc
        if not isinstance(arch, str) or not arch:
            raise ValueError("job record arch must be a non-empty string")
        return cls(
            requester_id=str(requester_id),
            architecture=arch,
            build_kind=decode_build_kind(build_type),
        )

    @classmethod
    def from_json(cls, payload: str | bytes) -> JobRecord:
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("job record must be a JSON object")
        return cls.from_dict(data)


@dataclass(frozen=True, slots=True)
class Working:
    record: JobRecord


@dataclass(frozen=True, slots=True)
class Pending:
    pass


PollResult = Union[Working, Pending]


def encode_poll_result(result: PollResult) -> dict[str, Any]:
    if isinstance(result, Working):
        return {"Working": result.record.to_dict()}
    return {"Pending": None}


def decode_poll_result(raw: Any) -> PollResult:
    if raw == "Pending" or raw == {"Pending": None}:
        return Pending()
    if isinstance(raw, dict) and isinstance(raw.get("Working"), dict):
        return Working(JobRecord.from_dict(raw["Working"]))
    raise ValueError(f"unrecognised poll response: {raw!r}")


@dataclass(frozen=True, slots=True)
class BuildReport:
    requester_id: str
    architecture: str
    build_kind: BuildKind
    success: bool
    push_success: bool
    log_url: str | None = None
    date: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.requester_id,
            "arch": self.architecture,
            "build_type": encode_report_kind(self.build_kind),
            "has_error": not self.success,
            "push_success": self.push_success,
            "date": self.date,
        }
        if self.log_url is not None:
            payload["log_url"] = self.log_url
        return payload


@dataclass(frozen=True, slots=True)
class ArchStatus:
    architecture: str
    record: JobRecord | None

    def describe(self) -> str:
        if self.record is None:
            return f"{self.architecture}: idle"
        return f"{self.architecture}: building {self.record.build_kind.describe()}"


EnqueueStatus = Literal["created", "already_building", "unknown_architecture"]


@dataclass(frozen=True, slots=True)
class EnqueueOutcome:
    architecture: str
    status: EnqueueStatus

    def describe(self, kind: BuildKind) -> str:
        if self.status == "created":
            return f"Building {kind.name} for {self.architecture}"
        if self.status == "already_building":
            return f"Another build task is already running on {self.architecture}."
        return f"Unknown architecture: {self.architecture}"
