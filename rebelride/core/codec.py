"""AT command framing for the scooter lock protocol."""

from __future__ import annotations

from rebelride.core.model import CommandIntent, Frame

ENCODING = "utf-8"
WAKE_UP_COMMAND = "AT+OKSCT=OKAIYLBT,0,2,2,2,2,0000$"
LOCK_STATE_PREFIX = "AT+BKSCT="
LOCK_SUFFIX = ",1$"
UNLOCK_SUFFIX = ",0$"
TERMINATOR = "\r\n"
SECRET_MASK = "****"


def _command_text(intent: CommandIntent, secret: str) -> str:
    if intent is CommandIntent.WAKE_UP:
        return WAKE_UP_COMMAND
    if intent is CommandIntent.LOCK:
        return f"{LOCK_STATE_PREFIX}{secret}{LOCK_SUFFIX}"
    if intent is CommandIntent.UNLOCK:
        return f"{LOCK_STATE_PREFIX}{secret}{UNLOCK_SUFFIX}"
    raise ValueError(f"No encoding defined for command intent {intent!r}")


def encode(intent: CommandIntent, secret: str = "") -> tuple[Frame, Frame]:
    """Return the two frames for ``intent`` in transmission order.

    The caller is responsible for supplying a non-empty secret for lock/unlock.
    """
    first = Frame(payload=_command_text(intent, secret).encode(ENCODING), position=1)
    second = Frame(payload=TERMINATOR.encode(ENCODING), position=2)
    return first, second


def render_payload(payload: bytes) -> str:
    """Decode payload as UTF-8, falling back to an upper-case hex dump."""
    try:
        return payload.decode(ENCODING)
    except UnicodeDecodeError:
        return " ".join(f"{byte:02X}" for byte in payload)


def describe_payload(payload: bytes) -> str:
    """Render an outgoing payload for progress output with any lock secret masked."""
    text = render_payload(payload)
    if text.startswith(LOCK_STATE_PREFIX):
        secret, sep, tail = text[len(LOCK_STATE_PREFIX):].rpartition(",")
        if sep and secret:
            text = f"{LOCK_STATE_PREFIX}{SECRET_MASK}{sep}{tail}"
    return text.replace("\r", "\\r").replace("\n", "\\n")
