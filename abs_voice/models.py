from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

class Track(BaseModel):
    index: int  # 1-based, assigned by the server; doubles as the device token
    start_offset_s: float
    duration_s: float
    content_url: str
    title: str = ""
    mime_type: str = ""

    @property
    def end_s(self) -> float:
        return self.start_offset_s + self.duration_s

    @property
    def token(self) -> str:
        return str(self.index)

    @classmethod
    def from_server(cls, data: Dict[str, Any]) -> "Track":
        return cls(
            index=int(data.get("index", 1)),
            start_offset_s=float(data.get("startOffset", 0.0)),
            duration_s=float(data.get("duration", 0.0)),
            content_url=data.get("contentUrl", ""),
            title=data.get("title") or "",
            mime_type=data.get("mimeType") or "",
        )

class Chapter(BaseModel):
    id: int
    start_s: float
    end_s: float
    title: str = ""

    @classmethod
    def from_server(cls, data: Dict[str, Any]) -> "Chapter":
        return cls(
            id=int(data.get("id", 0)),
            start_s=float(data.get("start", 0.0)),
            end_s=float(data.get("end", 0.0)),
            title=data.get("title") or "",
        )

class PlaySession(BaseModel):
    """
    Book-level playback state for one device.
    Tracks are contiguous on the book-time axis and chapters partition
    [0, duration_s]; both are taken as-is from the server.
    """
    session_id: str
    item_id: str
    title: str = ""
    author: str = ""
    tracks: List[Track] = Field(default_factory=list)
    chapters: List[Chapter] = Field(default_factory=list)
    current_time_s: float = 0.0
    duration_s: float = 0.0
    last_synced_at_ms: float = 0.0  # wall clock of last successful sync

    @classmethod
    def from_server(cls, data: Dict[str, Any], synced_at_ms: Optional[float] = None) -> "PlaySession":
        """Build from a POST /items/:id/play response (PlaybackSessionExpanded)."""
        tracks = sorted(
            (Track.from_server(t) for t in data.get("audioTracks", [])),
            key=lambda t: t.index,
        )
        duration = sum(t.duration_s for t in tracks)
        title = data.get("displayTitle") or ""
        chapters = [Chapter.from_server(c) for c in data.get("chapters", [])]
        if not chapters:
            # Books without chapter markers get one chapter covering the whole book
            chapters = [Chapter(id=0, start_s=0.0, end_s=duration, title=title)]

        return cls(
            session_id=data.get("id", ""),
            item_id=data.get("libraryItemId", ""),
            title=title,
            author=data.get("displayAuthor") or "",
            tracks=tracks,
            chapters=chapters,
            current_time_s=float(data.get("currentTime", 0.0)),
            duration_s=duration,
            last_synced_at_ms=synced_at_ms if synced_at_ms is not None else float(data.get("updatedAt", 0)),
        )

class PlaybackState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    AWAITING_PREFETCH = "awaiting_prefetch"

class DeviceAttributes(BaseModel):
    """Everything persisted per device between invocations."""
    current_play_session: Optional[PlaySession] = None
    next_track_prefetched: bool = False

    @property
    def state(self) -> PlaybackState:
        if self.current_play_session is None or not self.current_play_session.session_id:
            return PlaybackState.IDLE
        if self.next_track_prefetched:
            return PlaybackState.AWAITING_PREFETCH
        return PlaybackState.ACTIVE

    def clear(self):
        self.current_play_session = None
        self.next_track_prefetched = False

class DeviceInfo(BaseModel):
    """Device descriptor sent when negotiating a play session."""
    deviceId: Optional[str] = None
    clientName: str = "Alexa Device"
    clientVersion: str = "1.0"
    manufacturer: str = "Amazon"
    model: str = "Echo"
    sdkVersion: int = 1

class LibraryItemRef(BaseModel):
    """The slice of a library item the skill cares about."""
    id: str
    title: str = ""
    author: str = ""
    duration_s: float = 0.0
    progress_s: Optional[float] = None

    @classmethod
    def from_server(cls, data: Dict[str, Any]) -> "LibraryItemRef":
        media = data.get("media") or {}
        metadata = media.get("metadata") or {}
        progress = data.get("userMediaProgress") or {}
        return cls(
            id=data.get("id", ""),
            title=metadata.get("title") or "",
            author=metadata.get("authorName") or "",
            duration_s=float(media.get("duration") or 0.0),
            progress_s=progress.get("currentTime"),
        )
