"""Connection/command state machine for a single scooter link.

Every transport callback, timer expiry and caller request is turned into an event
and queued; one worker task drains the queue, so state transitions never
interleave even when the transport delivers callbacks from another thread.

Each start request opens a new *attempt* with its own generation number. Events
carry the generation they were produced for and are dropped once the session has
moved on to a newer attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from rebelride.core.address import resolve_device
from rebelride.core.attributes import describe_topology, resolve_attributes
from rebelride.core.codec import describe_payload, encode, render_payload
from rebelride.core.errors import (
    AttributeResolutionError,
    DiscoveryFailedError,
    InvalidAddressError,
    PermissionDeniedError,
    TransportDisabledError,
    TransportError,
    TransportUnavailableError,
    WriteFailedError,
)
from rebelride.core.model import (
    AttributeSet,
    CommandIntent,
    DeviceHandle,
    Frame,
    SessionOutcome,
    SessionState,
    Topology,
)
from rebelride.core.progress import ProgressLog
from rebelride.transports.base import (
    GATT_SUCCESS,
    PermissionGate,
    Scheduler,
    TimerHandle,
    Transport,
    TransportConnection,
    always_permitted,
)
from rebelride.transports.scheduler import LoopScheduler

LOGGER = logging.getLogger(__name__)

FRAME_GAP_S = 0.1
DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_REPLY_TIMEOUT_S = 10.0
DEFAULT_DISCONNECT_TIMEOUT_S = 5.0
DEFAULT_SETUP_TIMEOUT_S = 10.0

_TIMER_CONNECT = "connect"
_TIMER_DISCOVERY = "discovery"
_TIMER_NOTIFY = "notify"
_TIMER_GAP = "gap"
_TIMER_REPLY = "reply"
_TIMER_DISCONNECT = "disconnect"

_PREFLIGHT_ERRORS = (
    InvalidAddressError,
    TransportUnavailableError,
    TransportDisabledError,
    PermissionDeniedError,
)

_TIMER_STATES = {
    _TIMER_CONNECT: SessionState.CONNECTING,
    _TIMER_DISCOVERY: SessionState.DISCOVERING,
    _TIMER_NOTIFY: SessionState.NOTIFY_ENABLING,
    _TIMER_GAP: SessionState.AWAITING_GAP,
    _TIMER_REPLY: SessionState.AWAITING_REPLY,
    _TIMER_DISCONNECT: SessionState.DISCONNECTING,
}


@dataclass(frozen=True)
class _StartRequested:
    address: str
    intent: CommandIntent
    secret: str


@dataclass(frozen=True)
class _DisconnectRequested:
    pass


@dataclass(frozen=True)
class _ConnectionStateChanged:
    generation: int
    connected: bool
    status: int


@dataclass(frozen=True)
class _DiscoveryCompleted:
    generation: int
    status: int
    topology: Topology


@dataclass(frozen=True)
class _NotifySubscribed:
    generation: int
    uuid: str
    result: bool


@dataclass(frozen=True)
class _WriteCompleted:
    generation: int
    uuid: str
    payload: bytes
    status: int


@dataclass(frozen=True)
class _CharacteristicChanged:
    generation: int
    uuid: str
    payload: bytes


@dataclass(frozen=True)
class _TimerElapsed:
    generation: int
    kind: str


class _AttemptListener:
    """Transport listener bound to one attempt."""

    def __init__(self, session: ConnectionSession, generation: int) -> None:
        self._session = session
        self._generation = generation

    def on_connection_state_changed(self, connected: bool, status: int) -> None:
        self._session._post(_ConnectionStateChanged(self._generation, connected, status))

    def on_discovery_complete(self, status: int, topology: Topology) -> None:
        self._session._post(_DiscoveryCompleted(self._generation, status, tuple(topology)))

    def on_notify_subscribed(self, uuid: str, result: bool) -> None:
        self._session._post(_NotifySubscribed(self._generation, uuid, result))

    def on_write_complete(self, uuid: str, payload: bytes, status: int) -> None:
        self._session._post(_WriteCompleted(self._generation, uuid, bytes(payload), status))

    def on_characteristic_changed(self, uuid: str, payload: bytes) -> None:
        self._session._post(_CharacteristicChanged(self._generation, uuid, bytes(payload)))


class ConnectionSession:
    """Drives one command at a time from connect to disconnect.

    `start()` and `request_disconnect()` are fire-and-forget; outcomes are only
    reported through the progress log and `outcome`. Both must be called from
    the thread running the event loop. Transport listeners may call back from
    any thread.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        progress: ProgressLog | None = None,
        scheduler: Scheduler | None = None,
        permission_gate: PermissionGate | None = None,
        frame_gap_s: float = FRAME_GAP_S,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        reply_timeout_s: float = DEFAULT_REPLY_TIMEOUT_S,
        disconnect_timeout_s: float = DEFAULT_DISCONNECT_TIMEOUT_S,
        setup_timeout_s: float = DEFAULT_SETUP_TIMEOUT_S,
    ) -> None:
        self.progress = progress or ProgressLog()
        self._transport = transport
        self._scheduler = scheduler or LoopScheduler()
        self._permission_gate = permission_gate or always_permitted
        self._timeouts = {
            _TIMER_CONNECT: connect_timeout_s,
            _TIMER_DISCOVERY: setup_timeout_s,
            _TIMER_NOTIFY: setup_timeout_s,
            _TIMER_GAP: frame_gap_s,
            _TIMER_REPLY: reply_timeout_s,
            _TIMER_DISCONNECT: disconnect_timeout_s,
        }

        self._state = SessionState.IDLE
        self._transitions: list[SessionState] = [SessionState.IDLE]
        self._generation = 0
        self._connection: TransportConnection | None = None
        self._attributes: AttributeSet | None = None
        self._intent: CommandIntent | None = None
        self._secret = ""
        self._frames: tuple[Frame, Frame] | None = None
        self._timers: dict[str, TimerHandle] = {}
        self._pending_outcome = SessionOutcome.FAILED
        self._outcome: SessionOutcome | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[object] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._idle: asyncio.Event | None = None

        self._handlers: dict[type, Callable[[object], None]] = {
            _StartRequested: self._on_start,
            _DisconnectRequested: self._on_disconnect_requested,
            _ConnectionStateChanged: self._on_connection_state_changed,
            _DiscoveryCompleted: self._on_discovery_completed,
            _NotifySubscribed: self._on_notify_subscribed,
            _WriteCompleted: self._on_write_completed,
            _CharacteristicChanged: self._on_characteristic_changed,
            _TimerElapsed: self._on_timer_elapsed,
        }

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def outcome(self) -> SessionOutcome | None:
        """Outcome of the most recently finished attempt."""
        return self._outcome

    @property
    def transitions(self) -> tuple[SessionState, ...]:
        return tuple(self._transitions)

    def start(self, address: str, intent: CommandIntent, secret: str = "") -> None:
        self._ensure_worker()
        assert self._idle is not None
        self._idle.clear()
        self._post(_StartRequested(address=address, intent=intent, secret=secret))

    def request_disconnect(self) -> None:
        self._ensure_worker()
        self._post(_DisconnectRequested())

    async def wait_idle(self, timeout: float | None = None) -> SessionOutcome | None:
        if self._idle is None:
            return self._outcome
        await asyncio.wait_for(self._until_idle(), timeout)
        return self._outcome

    async def _until_idle(self) -> None:
        assert self._idle is not None
        # A superseded attempt passes through IDLE on its way to the next one.
        while True:
            await self._idle.wait()
            if self._state is SessionState.IDLE:
                return

    async def aclose(self) -> None:
        """Stop the worker and release any live connection."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        if self._state is not SessionState.IDLE:
            self._release()
            self._enter_idle(SessionOutcome.CANCELLED)
        await self._transport.aclose()

    # Event plumbing

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._queue = asyncio.Queue()
            self._idle = asyncio.Event()
            if self._state is SessionState.IDLE:
                self._idle.set()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(), name="rebelride-session")

    def _post(self, event: object) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            LOGGER.debug("Dropping %s; session is not running", event)
            return
        loop.call_soon_threadsafe(queue.put_nowait, event)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                self._dispatch(event)
            except Exception as exc:
                LOGGER.exception("Unhandled error while processing %s", event)
                self.progress.error(f"Unexpected error: {exc}")
                self._abort(SessionOutcome.FAILED)

    def _dispatch(self, event: object) -> None:
        generation = getattr(event, "generation", None)
        if generation is not None and generation != self._generation:
            LOGGER.debug("Dropping %s from superseded attempt %s", event, generation)
            return
        self._handlers[type(event)](event)

    # State helpers

    def _set_state(self, state: SessionState) -> None:
        LOGGER.debug("Session %s -> %s", self._state.value, state.value)
        self._state = state
        self._transitions.append(state)
        if self._idle is not None:
            if state is SessionState.IDLE:
                self._idle.set()
            else:
                self._idle.clear()

    def _enter_idle(self, outcome: SessionOutcome) -> None:
        self._cancel_timers()
        self._attributes = None
        self._intent = None
        self._secret = ""
        self._frames = None
        self._outcome = outcome
        if self._state is not SessionState.IDLE:
            self._set_state(SessionState.IDLE)
        elif self._idle is not None:
            self._idle.set()

    def _arm(self, kind: str) -> None:
        generation = self._generation
        self._cancel(kind)
        self._timers[kind] = self._scheduler.after(
            self._timeouts[kind],
            lambda: self._post(_TimerElapsed(generation, kind)),
        )

    def _cancel(self, kind: str) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _cancel_timers(self) -> None:
        for kind in list(self._timers):
            self._cancel(kind)

    def _release(self) -> None:
        self._cancel_timers()
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        except TransportError as exc:
            LOGGER.warning("Closing connection failed: %s", exc)

    def _abort(self, outcome: SessionOutcome) -> None:
        """Close a link that is already gone or unusable, passing through DISCONNECTING."""
        if self._state not in (SessionState.IDLE, SessionState.DISCONNECTING):
            self._set_state(SessionState.DISCONNECTING)
        self._release()
        self._enter_idle(outcome)

    def _begin_disconnect(self, outcome: SessionOutcome) -> None:
        self._cancel_timers()
        self._pending_outcome = outcome
        self._set_state(SessionState.DISCONNECTING)
        if self._connection is None:
            self._enter_idle(outcome)
            return
        try:
            self._connection.disconnect()
        except TransportError as exc:
            self.progress.warning(f"Disconnect failed: {exc}")
            self._release()
            self._enter_idle(outcome)
            return
        self._arm(_TIMER_DISCONNECT)

    # Handlers

    def _on_start(self, event: _StartRequested) -> None:
        self.progress.append(f"Performing {event.intent.label} operation on {event.address}...")

        try:
            handle = self._preflight(event.address)
        except _PREFLIGHT_ERRORS as exc:
            self.progress.error(str(exc))
            self._finish_rejected()
            return

        if self._state is not SessionState.IDLE:
            self.progress.warning(f"Superseding in-flight operation ({self._state.value}).")
            self._release()
            self._enter_idle(SessionOutcome.SUPERSEDED)

        self._generation += 1
        self._intent = event.intent
        self._secret = event.secret
        self._set_state(SessionState.CONNECTING)
        try:
            self._connection = self._transport.open(handle, _AttemptListener(self, self._generation))
        except TransportError as exc:
            self.progress.error(f"Connection failed: {exc}")
            self._enter_idle(SessionOutcome.FAILED)
            return
        self._arm(_TIMER_CONNECT)

    def _preflight(self, address: str) -> DeviceHandle:
        handle = resolve_device(address)
        if not self._transport.is_available():
            raise TransportUnavailableError("Bluetooth adapter not available!")
        if not self._transport.is_enabled():
            raise TransportDisabledError("Bluetooth is disabled!")
        if not self._permission_gate():
            raise PermissionDeniedError("Bluetooth permission not granted; cannot connect.")
        return handle

    def _finish_rejected(self) -> None:
        # A rejected request leaves any in-flight attempt untouched.
        if self._state is SessionState.IDLE:
            self._enter_idle(SessionOutcome.FAILED)

    def _on_disconnect_requested(self, event: _DisconnectRequested) -> None:
        if self._state is SessionState.IDLE:
            LOGGER.debug("Disconnect requested while idle; nothing to do")
            return
        if self._state is SessionState.DISCONNECTING:
            return
        self.progress.append("Disconnect requested.")
        self._begin_disconnect(SessionOutcome.CANCELLED)

    def _on_connection_state_changed(self, event: _ConnectionStateChanged) -> None:
        state = self._state
        if event.connected:
            if state is not SessionState.CONNECTING:
                LOGGER.debug("Ignoring connected callback in state %s", state.value)
                return
            self._cancel(_TIMER_CONNECT)
            self._set_state(SessionState.CONNECTED)
            self.progress.append("Connected, discovering services...")
            self._request_discovery()
            return

        if state is SessionState.IDLE:
            LOGGER.debug("Ignoring disconnected callback while idle")
            return
        if state is SessionState.CONNECTING:
            self.progress.error(f"Connection failed with status: {event.status}")
            outcome = SessionOutcome.FAILED
        elif state is SessionState.DISCONNECTING:
            self.progress.append("Disconnected.")
            outcome = self._pending_outcome
        elif state is SessionState.AWAITING_REPLY:
            self.progress.append("Device closed the connection.")
            outcome = SessionOutcome.REMOTE_DISCONNECTED
        else:
            self.progress.error(
                f"Device disconnected during {state.value} (status: {event.status})."
            )
            self._abort(SessionOutcome.FAILED)
            return
        self._release()
        self._enter_idle(outcome)

    def _request_discovery(self) -> None:
        assert self._connection is not None
        try:
            requested = self._connection.discover_attributes()
        except TransportError as exc:
            self.progress.error(f"Service discovery could not be started: {exc}")
            self._begin_disconnect(SessionOutcome.FAILED)
            return
        if not requested:
            self.progress.error("Service discovery could not be started.")
            self._begin_disconnect(SessionOutcome.FAILED)
            return
        self._set_state(SessionState.DISCOVERING)
        self._arm(_TIMER_DISCOVERY)

    def _on_discovery_completed(self, event: _DiscoveryCompleted) -> None:
        if self._state is not SessionState.DISCOVERING:
            LOGGER.debug("Ignoring discovery result in state %s", self._state.value)
            return
        self._cancel(_TIMER_DISCOVERY)
        if event.status != GATT_SUCCESS:
            self.progress.error(str(DiscoveryFailedError(event.status)))
            self._begin_disconnect(SessionOutcome.FAILED)
            return

        self.progress.append("Services discovered successfully.")
        for line in describe_topology(event.topology):
            self.progress.append(line, logging.DEBUG)

        self._set_state(SessionState.RESOLVING)
        try:
            attributes = resolve_attributes(event.topology)
        except AttributeResolutionError as exc:
            self.progress.error(str(exc))
            self._begin_disconnect(SessionOutcome.FAILED)
            return
        self._attributes = attributes
        self.progress.append("All required characteristics found. Setting up notification...")

        self._set_state(SessionState.NOTIFY_ENABLING)
        assert self._connection is not None
        try:
            self._connection.set_notify(attributes.notify_char_uuid, True)
        except TransportError as exc:
            self.progress.warning(f"Set notification failed: {exc}")
            self._write_first()
            return
        self._arm(_TIMER_NOTIFY)

    def _on_notify_subscribed(self, event: _NotifySubscribed) -> None:
        if self._state is not SessionState.NOTIFY_ENABLING:
            LOGGER.debug("Ignoring notify result in state %s", self._state.value)
            return
        self._cancel(_TIMER_NOTIFY)
        level = logging.INFO if event.result else logging.WARNING
        self.progress.append(f"Set notification result: {event.result}", level)
        self._write_first()

    def _write_first(self) -> None:
        if self._attributes is None or self._intent is None:
            raise RuntimeError("Write attempted before attributes were resolved")
        self._set_state(SessionState.WRITING_1)
        self._frames = encode(self._intent, self._secret)
        self.progress.append("Attempting to write first part...")
        if not self._submit(self._frames[0]):
            return
        self._set_state(SessionState.AWAITING_GAP)
        self._arm(_TIMER_GAP)

    def _write_second(self) -> None:
        assert self._frames is not None
        self._set_state(SessionState.WRITING_2)
        self.progress.append("Attempting to write second part...")
        if not self._submit(self._frames[1]):
            return
        self._set_state(SessionState.AWAITING_REPLY)
        self._arm(_TIMER_REPLY)

    def _submit(self, frame: Frame) -> bool:
        assert self._connection is not None and self._attributes is not None
        try:
            submitted = self._connection.write(self._attributes.write_char_uuid, frame.payload)
        except TransportError as exc:
            self.progress.error(f"Write of part {frame.position} failed: {exc}")
            self._begin_disconnect(SessionOutcome.FAILED)
            return False
        level = logging.INFO if submitted else logging.WARNING
        self.progress.append(f"Write request result: {submitted}", level)
        self.progress.append(f"Sending chunk {frame.position}: {describe_payload(frame.payload)}")
        return True

    def _on_write_completed(self, event: _WriteCompleted) -> None:
        if self._state is SessionState.IDLE:
            LOGGER.debug("Dropping write confirmation received while idle")
            return
        if event.status == GATT_SUCCESS:
            self.progress.append(f"Write successful: {describe_payload(event.payload)}")
        else:
            self.progress.error(str(WriteFailedError(event.status)))

    def _on_characteristic_changed(self, event: _CharacteristicChanged) -> None:
        text = render_payload(event.payload)
        if self._state is not SessionState.AWAITING_REPLY:
            self.progress.append(
                f"Ignoring notification during {self._state.value}: {text}", logging.DEBUG
            )
            return
        assert self._attributes is not None
        if event.uuid.lower() != self._attributes.notify_char_uuid:
            self.progress.append(f"Ignoring notification from {event.uuid}: {text}", logging.DEBUG)
            return
        self.progress.append(f"Notification received: {text}")
        self._begin_disconnect(SessionOutcome.REPLIED)

    def _on_timer_elapsed(self, event: _TimerElapsed) -> None:
        self._timers.pop(event.kind, None)
        if self._state is not _TIMER_STATES[event.kind]:
            LOGGER.debug("Ignoring %s timer in state %s", event.kind, self._state.value)
            return

        timeout = self._timeouts[event.kind]
        if event.kind == _TIMER_GAP:
            self._write_second()
        elif event.kind == _TIMER_CONNECT:
            self.progress.error(f"Connection timed out after {timeout:g} seconds.")
            self._release()
            self._enter_idle(SessionOutcome.TIMED_OUT)
        elif event.kind == _TIMER_DISCOVERY:
            self.progress.error(f"Service discovery timed out after {timeout:g} seconds.")
            self._begin_disconnect(SessionOutcome.TIMED_OUT)
        elif event.kind == _TIMER_NOTIFY:
            self.progress.warning(f"Set notification got no answer within {timeout:g} seconds.")
            self._write_first()
        elif event.kind == _TIMER_REPLY:
            self.progress.warning(f"No reply from device within {timeout:g} seconds.")
            self._begin_disconnect(SessionOutcome.TIMED_OUT)
        elif event.kind == _TIMER_DISCONNECT:
            self.progress.warning("Disconnect did not complete; closing connection.")
            self._release()
            self._enter_idle(self._pending_outcome)
