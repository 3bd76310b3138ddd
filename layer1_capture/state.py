"""
Layer 1 — Capture lifecycle
Pure state machine: (state, event) -> (new state, effects). The manager
executes the effects; nothing here touches a device.

    IDLE --START--> STARTING --STARTED--> ACTIVE
    ACTIVE --START / SWITCH_DEVICE--> STARTING   (old stream released first)
    ACTIVE --STOP / DEVICE_LOST--> IDLE
    any --ERROR--> FALLBACK --START--> STARTING
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class CaptureState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    FALLBACK = "fallback"


class CaptureEvent(str, Enum):
    START = "start"
    STARTED = "started"
    SWITCH_DEVICE = "switch_device"
    STOP = "stop"
    DEVICE_LOST = "device_lost"
    ERROR = "error"
    DEVICES_CHANGED = "devices_changed"
    NO_DEVICES = "no_devices"
    DEVICES_FOUND = "devices_found"


class Effect(str, Enum):
    RELEASE_STREAM = "release_stream"
    OPEN_STREAM = "open_stream"
    ENUMERATE_DEVICES = "enumerate_devices"
    OFFER_MANUAL_UPLOAD = "offer_manual_upload"


class InvalidTransitionError(ValueError):
    def __init__(self, state, event):
        self.state = state
        self.event = event
        super().__init__(f"No transition from {state.value} on {event.value}")


@dataclass(frozen=True)
class Transition:
    state: CaptureState
    effects: Tuple[Effect, ...] = ()


S = CaptureState
E = CaptureEvent

_OPEN = (Effect.OPEN_STREAM,)
_REOPEN = (Effect.RELEASE_STREAM, Effect.OPEN_STREAM)
_RELEASE = (Effect.RELEASE_STREAM,)
_FALL_BACK = (Effect.RELEASE_STREAM, Effect.OFFER_MANUAL_UPLOAD)

_TRANSITIONS = {
    (S.IDLE, E.START): Transition(S.STARTING, _OPEN),
    (S.IDLE, E.STOP): Transition(S.IDLE),
    (S.IDLE, E.NO_DEVICES): Transition(S.FALLBACK, (Effect.OFFER_MANUAL_UPLOAD,)),
    (S.IDLE, E.DEVICES_FOUND): Transition(S.IDLE),

    (S.STARTING, E.STARTED): Transition(S.ACTIVE, (Effect.ENUMERATE_DEVICES,)),
    (S.STARTING, E.STOP): Transition(S.IDLE, _RELEASE),
    (S.STARTING, E.NO_DEVICES): Transition(S.STARTING),
    (S.STARTING, E.DEVICES_FOUND): Transition(S.STARTING),

    (S.ACTIVE, E.START): Transition(S.STARTING, _REOPEN),
    (S.ACTIVE, E.SWITCH_DEVICE): Transition(S.STARTING, _REOPEN),
    (S.ACTIVE, E.STOP): Transition(S.IDLE, _RELEASE),
    (S.ACTIVE, E.DEVICE_LOST): Transition(S.IDLE, _RELEASE),
    # Hot-plug never stops a running stream
    (S.ACTIVE, E.NO_DEVICES): Transition(S.ACTIVE),
    (S.ACTIVE, E.DEVICES_FOUND): Transition(S.ACTIVE),

    (S.FALLBACK, E.START): Transition(S.STARTING, _OPEN),
    (S.FALLBACK, E.STOP): Transition(S.FALLBACK),
    (S.FALLBACK, E.NO_DEVICES): Transition(S.FALLBACK),
    (S.FALLBACK, E.DEVICES_FOUND): Transition(S.IDLE),
}


def transition(state: CaptureState, event: CaptureEvent) -> Transition:
    """
    Next state and the effects to run, in order

    Raises:
        InvalidTransitionError: Event not accepted in this state
    """
    if event is CaptureEvent.ERROR:
        return Transition(CaptureState.FALLBACK, _FALL_BACK)
    if event is CaptureEvent.DEVICES_CHANGED:
        return Transition(state, (Effect.ENUMERATE_DEVICES,))

    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None
