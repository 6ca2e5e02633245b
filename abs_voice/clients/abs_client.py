import logging
import httpx
from enum import Enum
from typing import Any, Dict, List, Optional
from ..config import settings
from ..models import DeviceInfo, LibraryItemRef, PlaySession

logger = logging.getLogger(__name__)

class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CLIENT = "client"
    SERVER = "server"
    TRANSPORT = "transport"

class RemoteError(Exception):
    """A failed call against the Audiobookshelf API, classified by status."""

    def __init__(self, status: Optional[int], path: str, message: str = ""):
        self.status = status
        self.path = path
        self.message = message
        super().__init__(f"{path} failed with status {status}: {message}".rstrip(": "))

    @property
    def kind(self) -> ErrorKind:
        if self.status is None:
            return ErrorKind.TRANSPORT
        if self.status == 404:
            return ErrorKind.NOT_FOUND
        if self.status >= 500:
            return ErrorKind.SERVER
        return ErrorKind.CLIENT

    @property
    def is_session_gone(self) -> bool:
        return self.kind == ErrorKind.NOT_FOUND

class ABSClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ABS_BASE_URL).rstrip('/')
        self.token = token if token is not None else settings.ABS_TOKEN
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.token}",
                "User-Agent": settings.ABS_USER_AGENT,
            },
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, f"/api{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise RemoteError(None, path, str(e)) from e

        if resp.is_success:
            return resp

        error = RemoteError(resp.status_code, path, resp.reason_phrase)
        if error.kind == ErrorKind.SERVER:
            logger.error(f"{method} {path}: server error {resp.status_code}")
        else:
            logger.warning(f"{method} {path}: {error.kind.value} ({resp.status_code})")
        raise error

    # Playback

    async def get_last_in_progress(self) -> Optional[LibraryItemRef]:
        resp = await self._request("GET", "/me/items-in-progress")
        items = resp.json().get("libraryItems", [])
        if not items:
            return None
        return LibraryItemRef.from_server(items[0])

    async def get_item(
        self,
        item_id: str,
        include_progress: bool = False,
        expanded: bool = False,
        episode: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {}
        if include_progress:
            params["include"] = "progress"
        if expanded:
            params["expanded"] = 1
        if episode:
            params["episode"] = episode
        resp = await self._request("GET", f"/items/{item_id}", params=params)
        return resp.json()

    async def start_session(self, item_id: str, device_id: Optional[str], now_ms: float) -> PlaySession:
        """
        Opens a play session for the item. The server answers with the
        authoritative track and chapter lists.
        """
        device = DeviceInfo(
            deviceId=device_id,
            clientName=settings.DEVICE_CLIENT_NAME,
            clientVersion=settings.DEVICE_CLIENT_VERSION,
            manufacturer=settings.DEVICE_MANUFACTURER,
            model=settings.DEVICE_MODEL,
        )
        payload = {
            "deviceInfo": device.model_dump(),
            "forceDirectPlay": False,
            "forceTranscode": False,
            "supportedMimeTypes": settings.SUPPORTED_MIME_TYPES,
            "mediaPlayer": "unknown",
        }
        path = f"/items/{item_id}/play"
        resp = await self._request("POST", path, json=payload)
        data = resp.json()
        if not data.get("audioTracks"):
            raise RemoteError(404, path, "item has no playable audio tracks")

        session = PlaySession.from_server(data, synced_at_ms=now_ms)
        logger.info(f"Started play session {session.session_id} for {session.title!r} ({len(session.tracks)} tracks)")
        return session

    async def sync_session(self, session_id: str, current_time_s: float, time_listened_s: float):
        """Raises RemoteError; a 404 means the session is gone server-side."""
        payload = {"currentTime": current_time_s, "timeListened": time_listened_s}
        await self._request("POST", f"/session/{session_id}/sync", json=payload)
        logger.debug(f"Synced session {session_id} at {current_time_s:.1f}s (+{time_listened_s:.1f}s listened)")

    async def close_session(self, session_id: str, current_time_s: float, time_listened_s: float) -> bool:
        payload = {"currentTime": current_time_s, "timeListened": time_listened_s}
        try:
            await self._request("POST", f"/session/{session_id}/close", json=payload)
        except RemoteError as e:
            logger.error(f"Failed to close play session {session_id}: {e}")
            return False
        logger.info(f"Closed play session {session_id} at {current_time_s:.1f}s")
        return True

    # Catalog

    async def get_libraries(self) -> List[Dict[str, Any]]:
        resp = await self._request("GET", "/libraries")
        return resp.json().get("libraries", [])

    async def get_library_filter_data(self, library_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/libraries/{library_id}/filterdata")
        return resp.json()

    async def get_author(self, author_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/authors/{author_id}", params={"include": "items"})
        return resp.json()

    async def search(self, library_id: str, query: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/libraries/{library_id}/search", params={"q": query})
        return resp.json()

    # URLs handed to the device

    def cover_url(self, item_id: str) -> str:
        # Covers are served without authentication
        return f"{self.base_url}/api/items/{item_id}/cover"

    def stream_url(self, content_url: str) -> str:
        return f"{self.base_url}{content_url}?token={self.token}"
