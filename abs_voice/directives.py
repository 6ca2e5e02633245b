import logging
import re
from enum import Enum
from pydantic import BaseModel
from typing import List, Literal, Optional, Union
from .config import settings
from .models import PlaySession, Track

logger = logging.getLogger(__name__)

_DISALLOWED_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")
_XML_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    "&": "&amp;",
    "'": "&apos;",
    '"': "&quot;",
}

def sanitize_for_speech(text: Optional[str]) -> str:
    """Strip control characters and entity-escape XML specials."""
    if not text:
        return ""
    text = _DISALLOWED_CHARS.sub("", text)
    return re.sub(r"[<>&'\"]", lambda m: _XML_ESCAPES[m.group(0)], text)

class PlayBehavior(str, Enum):
    REPLACE_ALL = "REPLACE_ALL"
    ENQUEUE = "ENQUEUE"

class ImageSource(BaseModel):
    url: str
    width_pixels: int
    height_pixels: int

class PlaybackMetadata(BaseModel):
    title: str
    subtitle: str
    art: List[ImageSource]
    background_image: List[ImageSource]

class PlayDirective(BaseModel):
    type: Literal["play"] = "play"
    behavior: PlayBehavior
    url: str
    token: str
    offset_ms: int
    expected_previous_token: Optional[str] = None
    metadata: PlaybackMetadata

class StopDirective(BaseModel):
    type: Literal["stop"] = "stop"

class SkillResponse(BaseModel):
    speech: Optional[str] = None
    reprompt: Optional[str] = None
    directive: Optional[Union[PlayDirective, StopDirective]] = None
    should_end_session: Optional[bool] = None

def respond(
    speech: Optional[str] = None,
    reprompt: Optional[str] = None,
    directive: Optional[Union[PlayDirective, StopDirective]] = None,
    end_session: Optional[bool] = None,
) -> SkillResponse:
    """Builds a response; all spoken text goes through sanitize_for_speech here."""
    return SkillResponse(
        speech=sanitize_for_speech(speech) if speech is not None else None,
        reprompt=sanitize_for_speech(reprompt) if reprompt is not None else None,
        directive=directive,
        should_end_session=end_session,
    )

class DirectiveBuilder:
    """Turns a target track/offset into a play directive. Performs no I/O."""

    def __init__(self, stream_url, cover_url):
        # Callables supplied by the ABS client, so URLs carry its base and token
        self.stream_url = stream_url
        self.cover_url = cover_url

    def metadata(self, session: PlaySession, chapter_title: str) -> PlaybackMetadata:
        return PlaybackMetadata(
            title=chapter_title,
            subtitle=session.title,
            art=[ImageSource(
                url=self.cover_url(session.item_id),
                width_pixels=settings.COVER_SIZE_PIXELS,
                height_pixels=settings.COVER_SIZE_PIXELS,
            )],
            background_image=[ImageSource(
                url=settings.BACKGROUND_IMAGE_URL,
                width_pixels=settings.BACKGROUND_WIDTH_PIXELS,
                height_pixels=settings.BACKGROUND_HEIGHT_PIXELS,
            )],
        )

    def play(
        self,
        session: PlaySession,
        track: Track,
        offset_s: float,
        chapter_title: str,
        behavior: PlayBehavior = PlayBehavior.REPLACE_ALL,
        expected_previous_token: Optional[str] = None,
    ) -> PlayDirective:
        if behavior == PlayBehavior.REPLACE_ALL:
            # The platform rejects expectedPreviousToken on REPLACE_ALL
            expected_previous_token = None
        url = self.stream_url(track.content_url)
        logger.debug(f"{behavior.value} track {track.index} of {session.title!r} at {offset_s:.1f}s")
        return PlayDirective(
            behavior=behavior,
            url=url,
            token=track.token,
            offset_ms=int(round(offset_s * 1000)),
            expected_previous_token=expected_previous_token,
            metadata=self.metadata(session, chapter_title),
        )

    @staticmethod
    def speech(session: PlaySession, book_time_s: float) -> str:
        if book_time_s > 0:
            return f"Resuming {session.title} by {session.author}"
        return f"Playing {session.title} by {session.author}"
