import asyncio
import logging
import time
from typing import Callable, Optional, Tuple
from .clients.abs_client import ABSClient, ErrorKind, RemoteError
from .config import settings
from .directives import DirectiveBuilder, PlayBehavior, SkillResponse, StopDirective, respond
from .events import AudioPlayerEvent, AudioPlayerState
from .models import DeviceAttributes, LibraryItemRef, PlaySession
from .timeline import (
    book_time_from_track_offset,
    chapter_at_book_time,
    chapter_index_at_book_time,
    find_track,
    next_track,
    parse_track_token,
    track_and_offset_from_book_time,
)

logger = logging.getLogger(__name__)

NOT_PLAYING = "I'm not playing anything at the moment"
NOT_PLAYING_NOW = "I'm not playing anything right now."
SOMETHING_WRONG = "Something went wrong"
WHAT_TO_PLAY = "What would you like to play?"
NO_TRACKS = "Sorry, that book doesn't have any audio I can play."
LAST_CHAPTER = "This is the last chapter."
GOODBYE = "Goodbye!"
SERVER_APOLOGY = "Sorry, I couldn't reach your audiobook server. Please try again later."

Outcome = Tuple[DeviceAttributes, SkillResponse]

def clamp_seek_target(target_s: float, duration_s: float) -> float:
    """Keeps a seek inside [0, duration); overshooting lands a margin before the end."""
    if target_s < 0:
        return 0.0
    if target_s >= duration_s:
        return max(0.0, duration_s - settings.SEEK_END_MARGIN_SECONDS)
    return target_s

def seed_start_time(progress_s: Optional[float], duration_s: float) -> float:
    """Stored progress outside [0, duration] restarts the book."""
    if progress_s is None or progress_s < 0 or progress_s > duration_s:
        return 0.0
    return float(progress_s)

class SessionController:
    """
    Drives the per-device play session: Idle -> Active -> AwaitingPrefetch -> Idle.

    Every operation takes the device's attributes and returns an updated copy
    together with the response; the caller owns persistence.
    """

    def __init__(self, client: ABSClient, builder: Optional[DirectiveBuilder] = None, clock: Callable[[], float] = time.time):
        self.client = client
        self.builder = builder or DirectiveBuilder(client.stream_url, client.cover_url)
        self.clock = clock

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    def _time_listened(self, session: PlaySession, now_ms: float) -> float:
        # Wall-clock listening since the last sync, not playhead movement
        return max(0.0, (now_ms - session.last_synced_at_ms) / 1000.0)

    @staticmethod
    def _device_book_time(session: PlaySession, player: Optional[AudioPlayerState]) -> Optional[float]:
        if player is None or not player.is_complete:
            return None
        # A token from another book or a garbled one is an unknown position, not 0
        if find_track(session, parse_track_token(player.token)) is None:
            logger.warning(f"Device token {player.token!r} matches no track of {session.title!r}")
            return None
        return book_time_from_track_offset(session, player.token, player.offset_ms)

    async def _sync(self, attrs: DeviceAttributes, book_time_s: float, event: str) -> bool:
        """
        Reports progress. On success the session's position and sync clock move
        forward. A session the server no longer knows is dropped locally.
        """
        session = attrs.current_play_session
        now_ms = self._now_ms()
        try:
            await self.client.sync_session(session.session_id, book_time_s, self._time_listened(session, now_ms))
        except RemoteError as e:
            logger.error(f"[{event}] sync failed for session {session.session_id} ({session.title!r}): {e.kind.value} {e}")
            if e.is_session_gone:
                logger.warning(f"[{event}] session {session.session_id} is gone server-side, clearing local state")
                attrs.clear()
            return False

        session.current_time_s = book_time_s
        session.last_synced_at_ms = now_ms
        return True

    async def _close(self, session: PlaySession, book_time_s: float, event: str) -> bool:
        closed = await self.client.close_session(
            session.session_id, book_time_s, self._time_listened(session, self._now_ms())
        )
        if not closed:
            logger.warning(f"[{event}] could not close session {session.session_id} ({session.title!r})")
        return closed

    def _play_response(self, session: PlaySession, book_time_s: float, speak: bool) -> SkillResponse:
        track, offset_s = track_and_offset_from_book_time(book_time_s, session)
        chapter = chapter_at_book_time(book_time_s, session)
        directive = self.builder.play(session, track, offset_s, chapter.title)
        speech = self.builder.speech(session, book_time_s) if speak else None
        return respond(speech, directive=directive)

    # Intents

    async def play(self, attrs: DeviceAttributes, device_id: Optional[str], item_id: Optional[str] = None, speak: bool = True) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session

        if session is not None and item_id and item_id != session.item_id:
            logger.info(f"Switching from {session.title!r} to item {item_id}")
            await self._close(session, session.current_time_s, "play")
            attrs.clear()
            session = None

        if session is None and not item_id:
            last = await self.client.get_last_in_progress()
            item_id = last.id if last else None

        if session is None and not item_id:
            return attrs, respond(WHAT_TO_PLAY, reprompt=WHAT_TO_PLAY)

        if session is None:
            item_data, started = await asyncio.gather(
                self.client.get_item(item_id, include_progress=True, expanded=True),
                self.client.start_session(item_id, device_id, self._now_ms()),
                return_exceptions=True,
            )
            if isinstance(started, RemoteError) and started.kind == ErrorKind.NOT_FOUND:
                logger.warning(f"Item {item_id} has no playable tracks")
                return attrs, respond(NO_TRACKS)
            if isinstance(started, PlaySession) and isinstance(item_data, BaseException):
                await self._close(started, 0.0, "play")
            for result in (started, item_data):
                if isinstance(result, BaseException):
                    raise result

            session = started
            book_time_s = seed_start_time(LibraryItemRef.from_server(item_data).progress_s, session.duration_s)
        else:
            book_time_s = session.current_time_s

        attrs.current_play_session = session
        # A REPLACE_ALL clears anything the device had queued
        attrs.next_track_prefetched = False

        await self._sync(attrs, book_time_s, "play")
        if attrs.current_play_session is None:
            return attrs, respond(SERVER_APOLOGY)

        session.current_time_s = book_time_s
        return attrs, self._play_response(session, book_time_s, speak)

    def _check_player(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState], speak: bool) -> Optional[SkillResponse]:
        if attrs.current_play_session is None or player is None:
            return respond(NOT_PLAYING if speak else "")
        if not player.is_complete:
            logger.warning("Audio player state is missing offset or token")
            return respond(SOMETHING_WRONG)
        if self._device_book_time(attrs.current_play_session, player) is None:
            return respond(SOMETHING_WRONG)
        return None

    async def _seek_to(self, attrs: DeviceAttributes, target_s: float, speak: bool, event: str) -> Outcome:
        session = attrs.current_play_session
        await self._sync(attrs, target_s, event)
        if attrs.current_play_session is None:
            return attrs, respond(SERVER_APOLOGY)
        session.current_time_s = target_s
        return attrs, self._play_response(session, target_s, speak)

    async def next_chapter(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState], speak: bool = False) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        guard = self._check_player(attrs, player, speak)
        if guard is not None:
            return attrs, guard

        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, player)
        index = chapter_index_at_book_time(book_time_s, session)
        if index == len(session.chapters) - 1:
            return attrs, respond(LAST_CHAPTER)

        return await self._seek_to(attrs, session.chapters[index + 1].start_s, speak, "next")

    async def previous_chapter(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState], speak: bool = True) -> Outcome:
        """Restart the current chapter, or go to the previous one when near its start."""
        attrs = attrs.model_copy(deep=True)
        guard = self._check_player(attrs, player, speak)
        if guard is not None:
            return attrs, guard

        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, player)
        index = chapter_index_at_book_time(book_time_s, session)
        chapter = session.chapters[index]
        if book_time_s - chapter.start_s > settings.PREVIOUS_CHAPTER_THRESHOLD_SECONDS:
            target_s = chapter.start_s
        else:
            target_s = session.chapters[max(index - 1, 0)].start_s

        return await self._seek_to(attrs, target_s, speak, "previous")

    async def seek(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState], delta_s: float, speak: bool = False) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        guard = self._check_player(attrs, player, True)
        if guard is not None:
            return attrs, guard

        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, player)
        target_s = clamp_seek_target(book_time_s + delta_s, session.duration_s)
        return await self._seek_to(attrs, target_s, speak, "seek")

    async def pause(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState], speak: bool = True) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        if player is None:
            return attrs, respond(NOT_PLAYING_NOW if speak else "")

        speech = None
        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, player) if session is not None else None
        if book_time_s is not None:
            if not await self._sync(attrs, book_time_s, "pause"):
                speech = SERVER_APOLOGY
        return attrs, respond(speech, directive=StopDirective())

    async def stop(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState]) -> Outcome:
        """Cancel/stop: local state is only dropped once the server has closed the session."""
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, player) if session is not None else None
        if book_time_s is not None:
            if await self._close(session, book_time_s, "stop"):
                attrs.clear()
        else:
            logger.info("Stop without a session or device position; nothing to close")
        return attrs, respond(GOODBYE, directive=StopDirective(), end_session=True)

    async def end_session(self, attrs: DeviceAttributes, player: Optional[AudioPlayerState]) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        if session is not None:
            book_time_s = self._device_book_time(session, player)
            if book_time_s is None:
                book_time_s = session.current_time_s
            await self._close(session, book_time_s, "session_ended")
        # No later invocation will retry, so state goes regardless
        attrs.clear()
        return attrs, respond()

    # Audio player lifecycle

    async def on_progress(self, attrs: DeviceAttributes, event: AudioPlayerEvent) -> Outcome:
        """Started/stopped: record where the device is."""
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, event.player_state) if session is not None else None
        if book_time_s is not None:
            await self._sync(attrs, book_time_s, event.signal.value)
        return attrs, respond()

    async def on_nearly_finished(self, attrs: DeviceAttributes, event: AudioPlayerEvent) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        book_time_s = self._device_book_time(session, event.player_state) if session is not None else None
        if book_time_s is None:
            return attrs, respond()

        await self._sync(attrs, book_time_s, "nearly_finished")
        if attrs.current_play_session is None:
            return attrs, respond()

        current = find_track(session, parse_track_token(event.token))
        following = next_track(session, current) if current is not None else None
        if following is None:
            attrs.next_track_prefetched = False
            return attrs, respond()

        chapter = chapter_at_book_time(following.start_offset_s, session)
        directive = self.builder.play(
            session,
            following,
            0.0,
            chapter.title,
            behavior=PlayBehavior.ENQUEUE,
            expected_previous_token=current.token,
        )
        attrs.next_track_prefetched = True
        logger.info(f"Enqueued track {following.index} of {session.title!r}")
        return attrs, respond(directive=directive)

    async def on_finished(self, attrs: DeviceAttributes, event: AudioPlayerEvent) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        if session is None:
            attrs.next_track_prefetched = False
            return attrs, respond()

        book_time_s = self._device_book_time(session, event.player_state)
        if attrs.next_track_prefetched:
            # Ordinary track change; the enqueued track is now playing
            attrs.next_track_prefetched = False
            if book_time_s is not None:
                await self._sync(attrs, book_time_s, "finished")
            return attrs, respond()

        if book_time_s is not None:
            await self._close(session, book_time_s, "finished")
        logger.info(f"Finished {session.title!r}, clearing session {session.session_id}")
        attrs.clear()
        return attrs, respond()

    async def on_failed(self, attrs: DeviceAttributes, event: AudioPlayerEvent) -> Outcome:
        attrs = attrs.model_copy(deep=True)
        session = attrs.current_play_session
        logger.error(f"Playback failed: {event.error}")
        if session is not None:
            book_time_s = self._device_book_time(session, event.player_state)
            if book_time_s is None:
                book_time_s = session.current_time_s
            await self._close(session, book_time_s, "failed")
        attrs.clear()
        return attrs, respond()
