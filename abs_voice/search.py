import asyncio
import logging
import unicodedata
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional
from .clients.abs_client import ABSClient
from .config import settings

logger = logging.getLogger(__name__)

def normalize(text: str) -> str:
    """Lowercase and strip diacritics so spoken and catalog spellings compare."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold().strip()

def partial_ratio(query: str, text: str) -> float:
    """
    Best similarity of query against any same-length window of text, so a
    spoken title still matches a catalog title with a subtitle or series suffix.
    """
    if not query or not text:
        return 0.0
    if len(text) <= len(query):
        return SequenceMatcher(None, query, text).ratio()
    if query in text:
        return 1.0

    best = 0.0
    width = len(query)
    for q_start, t_start, _ in SequenceMatcher(None, query, text, autojunk=False).get_matching_blocks():
        start = max(0, min(t_start - q_start, len(text) - width))
        best = max(best, SequenceMatcher(None, query, text[start:start + width]).ratio())
    return best

def fuzzy_pick(query: str, candidates: Dict[str, str]) -> Optional[str]:
    """
    candidates maps key -> display text. Returns the key whose text best
    matches query, or None below the configured cutoff. Ties on the partial
    score go to the closest whole-string match.
    """
    query = normalize(query)
    best_key, best_score = None, (settings.FUZZY_MATCH_CUTOFF, -1.0)
    for key, text in candidates.items():
        text = normalize(text)
        score = (partial_ratio(query, text), SequenceMatcher(None, query, text).ratio())
        if score[0] >= settings.FUZZY_MATCH_CUTOFF and score > best_score:
            best_key, best_score = key, score
    return best_key

def _item_title(item: Dict[str, Any]) -> str:
    metadata = (item.get("media") or {}).get("metadata") or {}
    return metadata.get("title") or ""

class ItemResolver:
    """Resolves a spoken title (and optional author) to a library item id."""

    def __init__(self, client: ABSClient):
        self.client = client

    async def book_library_ids(self) -> List[str]:
        libraries = await self.client.get_libraries()
        return [
            lib["id"] for lib in libraries
            if lib.get("mediaType") == "book" and (lib.get("settings") or {}).get("audiobooksOnly")
        ]

    async def _author_items(self, library_ids: List[str], author: str) -> Optional[List[Dict[str, Any]]]:
        filter_data = await asyncio.gather(*[self.client.get_library_filter_data(lid) for lid in library_ids])
        authors: Dict[str, str] = {}
        for data in filter_data:
            for entry in data.get("authors", []):
                authors[entry["id"]] = entry.get("name", "")

        author_id = fuzzy_pick(author, authors)
        if author_id is None:
            logger.info(f"No author matching {author!r}")
            return None
        logger.debug(f"Author {author!r} matched {authors[author_id]!r}")
        data = await self.client.get_author(author_id)
        return data.get("libraryItems", [])

    async def _search_items(self, library_ids: List[str], title: str) -> List[Dict[str, Any]]:
        results = await asyncio.gather(*[self.client.search(lid, title) for lid in library_ids])
        items: Dict[str, Dict[str, Any]] = {}
        for result in results:
            books = result.get("book", [])
            if books:
                first = books[0].get("libraryItem", books[0])
                items[first["id"]] = first
        return list(items.values())

    async def _match(self, library_ids: List[str], title: str, author: Optional[str]) -> Optional[str]:
        items = None
        if author:
            items = await self._author_items(library_ids, author)
        if items is None:
            items = await self._search_items(library_ids, title)

        item_id = fuzzy_pick(title, {item["id"]: _item_title(item) for item in items})
        if item_id is not None:
            logger.info(f"Resolved {title!r} to item {item_id}")
        return item_id

    async def resolve(
        self,
        title: str,
        author: Optional[str] = None,
        resolved_title: Optional[str] = None,
        resolved_author: Optional[str] = None,
    ) -> Optional[str]:
        library_ids = await self.book_library_ids()
        if not library_ids:
            logger.warning("No audiobook libraries available to search")
            return None

        if not resolved_title:
            return await self._match(library_ids, title, author)

        # Platform-resolved values usually match the catalog better; run both, prefer it
        resolved, raw = await asyncio.gather(
            self._match(library_ids, resolved_title, resolved_author or author),
            self._match(library_ids, title, author),
        )
        return resolved or raw
