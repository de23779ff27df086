"""Core data models used across codec, session, service, and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum


class CommandIntent(Enum):
    WAKE_UP = "wake"
    LOCK = "lock"
    UNLOCK = "unlock"

    @property
    def requires_secret(self) -> bool:
        return self is not CommandIntent.WAKE_UP

    @property
    def label(self) -> str:
        return {
            CommandIntent.WAKE_UP: "Wake Up",
            CommandIntent.LOCK: "Lock",
            CommandIntent.UNLOCK: "Unlock",
        }[self]


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCOVERING = "discovering"
    RESOLVING = "resolving"
    NOTIFY_ENABLING = "notify_enabling"
    WRITING_1 = "writing_1"
    AWAITING_GAP = "awaiting_gap"
    WRITING_2 = "writing_2"
    AWAITING_REPLY = "awaiting_reply"
    DISCONNECTING = "disconnecting"


class SessionOutcome(Enum):
    REPLIED = "replied"
    REMOTE_DISCONNECTED = "remote_disconnected"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    TIMED_OUT = "timed_out"

    @property
    def succeeded(self) -> bool:
        return self in (SessionOutcome.REPLIED, SessionOutcome.REMOTE_DISCONNECTED)


@dataclass(frozen=True)
class DeviceHandle:
    address: str


@dataclass(frozen=True)
class Frame:
    payload: bytes
    position: int


@dataclass(frozen=True)
class DiscoveredService:
    uuid: str
    characteristics: tuple[str, ...]


Topology = tuple[DiscoveredService, ...]


@dataclass(frozen=True)
class AttributeSet:
    service_uuid: str
    write_char_uuid: str
    notify_char_uuid: str


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    level: int = logging.INFO


@dataclass(frozen=True)
class ScannedDevice:
    address: str
    name: str
    rssi: int | None = None


@dataclass(frozen=True)
class Settings:
    address: str | None = None
    password: str | None = None
    connect_timeout_s: float = 10.0
    reply_timeout_s: float = 10.0
    scan_timeout_s: float = 5.0
