"""
Conversions between book time (seconds from the start of the audiobook),
the per-track offsets the playback device reports, and chapter ranges.

Everything here is pure. Lookups that miss return a defined fallback
instead of raising.
"""
import logging
from typing import Optional, Tuple
from .models import Chapter, PlaySession, Track

logger = logging.getLogger(__name__)

def parse_track_token(token: Optional[str]) -> Optional[int]:
    """Device tokens are the 1-based track index as a string."""
    if token is None:
        return None
    try:
        return int(token.strip())
    except ValueError:
        logger.warning(f"Unparseable track token {token!r}")
        return None

def find_track(session: PlaySession, index: Optional[int]) -> Optional[Track]:
    if index is None:
        return None
    for track in session.tracks:
        if track.index == index:
            return track
    return None

def next_track(session: PlaySession, track: Track) -> Optional[Track]:
    return find_track(session, track.index + 1)

def book_time_from_track_offset(session: PlaySession, token: Optional[str], offset_ms: float) -> float:
    """
    Returns the track's start offset plus offset_ms in seconds.
    An unknown token yields 0.0, which callers cannot tell apart from the
    start of the book.
    """
    track = find_track(session, parse_track_token(token))
    if track is None:
        return 0.0
    return track.start_offset_s + offset_ms / 1000.0

def track_and_offset_from_book_time(book_time_s: float, session: PlaySession) -> Tuple[Track, float]:
    # Half-open: a time exactly on a boundary belongs to the following track
    for track in session.tracks:
        if track.start_offset_s <= book_time_s < track.end_s:
            return track, book_time_s - track.start_offset_s

    logger.info(f"Book time {book_time_s:.1f}s is outside every track of {session.title!r}, defaulting to first track")
    return session.tracks[0], 0.0

def chapter_index_at_book_time(book_time_s: float, session: PlaySession) -> int:
    # Closed on both ends, so a boundary matches two chapters; the earlier one wins.
    for i, chapter in enumerate(session.chapters):
        if chapter.start_s <= book_time_s <= chapter.end_s:
            return i
    return 0

def chapter_at_book_time(book_time_s: float, session: PlaySession) -> Chapter:
    return session.chapters[chapter_index_at_book_time(book_time_s, session)]
