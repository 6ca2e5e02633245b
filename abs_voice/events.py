"""
Inbound platform events. Slot values and device state are resolved into
explicit optional fields here, once, so the rest of the skill never digs
through raw envelopes.
"""
from datetime import timedelta
from enum import Enum
from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, Literal, Optional, Union

class IntentName(str, Enum):
    PLAY = "play"
    RESUME = "resume"
    PLAY_LAST = "play_last"
    PLAY_BOOK = "play_book"
    PAUSE = "pause"
    NEXT = "next"
    PREVIOUS = "previous"
    SEEK_FORWARD = "seek_forward"
    SEEK_BACK = "seek_back"
    HELP = "help"
    CANCEL = "cancel"
    STOP = "stop"
    FALLBACK = "fallback"
    LOOP_ON = "loop_on"
    LOOP_OFF = "loop_off"
    REPEAT = "repeat"
    SHUFFLE_ON = "shuffle_on"
    SHUFFLE_OFF = "shuffle_off"
    START_OVER = "start_over"

UNSUPPORTED_INTENTS = {
    IntentName.LOOP_ON,
    IntentName.LOOP_OFF,
    IntentName.REPEAT,
    IntentName.SHUFFLE_ON,
    IntentName.SHUFFLE_OFF,
    IntentName.START_OVER,
}

class AudioPlayerSignal(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    FINISHED = "finished"
    NEARLY_FINISHED = "nearly_finished"
    FAILED = "failed"

class PlaybackCommand(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    NEXT = "next"
    PREVIOUS = "previous"

class AudioPlayerState(BaseModel):
    """What the device last reported about its stream; either field may be missing."""
    offset_ms: Optional[int] = None
    token: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.offset_ms is not None and self.token is not None

class LaunchRequest(BaseModel):
    type: Literal["launch"] = "launch"

class IntentRequest(BaseModel):
    type: Literal["intent"] = "intent"
    name: IntentName
    item_id: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    resolved_title: Optional[str] = None  # platform entity resolution, when available
    resolved_author: Optional[str] = None
    duration: Optional[timedelta] = None  # ISO-8601, e.g. "PT30S"

class AudioPlayerEvent(BaseModel):
    type: Literal["audio_player"] = "audio_player"
    signal: AudioPlayerSignal
    offset_ms: Optional[int] = None
    token: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def player_state(self) -> AudioPlayerState:
        return AudioPlayerState(offset_ms=self.offset_ms, token=self.token)

class PlaybackControllerEvent(BaseModel):
    type: Literal["playback_controller"] = "playback_controller"
    command: PlaybackCommand

class SystemExceptionEvent(BaseModel):
    type: Literal["system_exception"] = "system_exception"
    error: Dict[str, Any] = Field(default_factory=dict)
    cause: Dict[str, Any] = Field(default_factory=dict)

class SessionEndedEvent(BaseModel):
    type: Literal["session_ended"] = "session_ended"
    reason: str = ""
    error: Optional[Dict[str, Any]] = None

PlatformEvent = Annotated[
    Union[
        LaunchRequest,
        IntentRequest,
        AudioPlayerEvent,
        PlaybackControllerEvent,
        SystemExceptionEvent,
        SessionEndedEvent,
    ],
    Field(discriminator="type"),
]

class SkillRequest(BaseModel):
    device_id: str
    request: PlatformEvent
    audio_player: Optional[AudioPlayerState] = None
