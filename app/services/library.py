"""Media-server library access (Plex) used for matching and collection sync."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..errors import LibraryErrorKind, LibraryServiceError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LibraryItem:
    """A show entry in the media-server library."""

    key: str
    title: str
    year: int | None = None


@dataclass(slots=True, frozen=True)
class LibraryEpisode:
    """An episode known to the media server, numbered sequentially per show."""

    key: str
    number: int
    season: int
    index: int
    title: str = ""


class LibraryService(Protocol):
    async def list_library_items(self, query: str | None = None) -> list[LibraryItem]: ...

    async def list_episodes(self, show_key: str) -> list[LibraryEpisode]: ...

    async def find_collection(self, show_key: str, name: str) -> str | None: ...

    async def get_collection_members(self, collection_id: str) -> list[str]: ...

    async def create_collection(self, show_key: str, name: str) -> str: ...

    async def add_to_collection(self, collection_id: str, episode_key: str) -> None: ...

    async def remove_from_collection(self, collection_id: str, episode_key: str) -> None: ...


def sequence_episodes(rows: list[dict[str, Any]]) -> list[LibraryEpisode]:
    """Number regular-season episodes 1..N in (season, index) order.

    Specials (season 0) and rows without an index are left out so numbering
    lines up with absolute episode numbers of the listing source.
    """

    regular: list[tuple[int, int, str, str]] = []
    for row in rows:
        season = _as_int(row.get("parentIndex"))
        index = _as_int(row.get("index"))
        key = str(row.get("ratingKey") or "").strip()
        if not key or season is None or index is None or season < 1:
            continue
        regular.append((season, index, key, str(row.get("title") or "")))
    regular.sort(key=lambda entry: (entry[0], entry[1]))
    return [
        LibraryEpisode(key=key, number=number, season=season, index=index, title=title)
        for number, (season, index, key, title) in enumerate(regular, start=1)
    ]


def _as_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


class PlexLibraryClient:
    """Thin wrapper around the Plex Media Server HTTP API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        token: str,
        section_id: str,
        max_connections: int = 4,
    ) -> None:
        self._client = http_client
        self._token = token
        self._section_id = section_id
        self._semaphore = asyncio.Semaphore(max_connections)
        self._machine_identifier: str | None = None
        self._identity_lock = asyncio.Lock()

    def _headers(self) -> dict[str, str]:
        return {"X-Plex-Token": self._token, "Accept": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            async with self._semaphore:
                response = await self._client.request(
                    method, path, params=params, headers=self._headers()
                )
        except httpx.TimeoutException as exc:
            raise LibraryServiceError(
                LibraryErrorKind.TRANSIENT, f"{method} {path} timed out"
            ) from exc
        except httpx.TransportError as exc:
            raise LibraryServiceError(
                LibraryErrorKind.TRANSIENT,
                f"{method} {path} failed: {exc.__class__.__name__}",
            ) from exc

        status = response.status_code
        if status in (401, 403):
            raise LibraryServiceError(
                LibraryErrorKind.UNAUTHORIZED,
                f"Plex rejected credentials for {method} {path}",
                status_code=status,
            )
        if status == 404:
            raise LibraryServiceError(
                LibraryErrorKind.NOT_FOUND, f"{method} {path} not found", status_code=status
            )
        if status == 429 or 500 <= status < 600:
            raise LibraryServiceError(
                LibraryErrorKind.TRANSIENT,
                f"Plex returned HTTP {status} for {method} {path}",
                status_code=status,
            )
        if status >= 400:
            raise LibraryServiceError(
                LibraryErrorKind.UNKNOWN,
                f"Plex returned HTTP {status} for {method} {path}",
                status_code=status,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            return {}
        container = payload.get("MediaContainer") if isinstance(payload, dict) else None
        return container if isinstance(container, dict) else {}

    @staticmethod
    def _metadata(container: dict[str, Any]) -> list[dict[str, Any]]:
        rows = container.get("Metadata") or []
        return [row for row in rows if isinstance(row, dict)]

    async def _machine_id(self) -> str:
        async with self._identity_lock:
            if self._machine_identifier is None:
                container = await self._request("GET", "/identity")
                identifier = str(container.get("machineIdentifier") or "").strip()
                if not identifier:
                    raise LibraryServiceError(
                        LibraryErrorKind.UNKNOWN, "Plex did not report a machine identifier"
                    )
                self._machine_identifier = identifier
            return self._machine_identifier

    async def list_library_items(self, query: str | None = None) -> list[LibraryItem]:
        params: dict[str, Any] = {"type": 2}
        if query:
            params["title"] = query
        container = await self._request(
            "GET", f"/library/sections/{self._section_id}/all", params=params
        )
        items: list[LibraryItem] = []
        for row in self._metadata(container):
            key = str(row.get("ratingKey") or "").strip()
            title = str(row.get("title") or "").strip()
            if key and title:
                items.append(LibraryItem(key=key, title=title, year=_as_int(row.get("year"))))
        return items

    async def list_episodes(self, show_key: str) -> list[LibraryEpisode]:
        container = await self._request("GET", f"/library/metadata/{show_key}/allLeaves")
        return sequence_episodes(self._metadata(container))

    async def find_collection(self, show_key: str, name: str) -> str | None:
        container = await self._request(
            "GET",
            f"/library/sections/{self._section_id}/collections",
            params={"title": name},
        )
        wanted = name.casefold()
        for row in self._metadata(container):
            if str(row.get("title") or "").casefold() != wanted:
                continue
            collection_id = str(row.get("ratingKey") or "").strip()
            if collection_id and await self._holds_only(collection_id, show_key):
                return collection_id
        return None

    async def _holds_only(self, collection_id: str, show_key: str) -> bool:
        """Whether a collection is non-empty and holds only episodes of ``show_key``.

        Collection titles are not unique in Plex: two library items with the
        same title (remakes, reboots) produce the same collection name. An
        empty collection cannot be attributed to either of them.
        """

        container = await self._request(
            "GET", f"/library/collections/{collection_id}/children"
        )
        rows = self._metadata(container)
        return bool(rows) and all(
            str(row.get("grandparentRatingKey") or "") == show_key for row in rows
        )

    async def get_collection_members(self, collection_id: str) -> list[str]:
        container = await self._request(
            "GET", f"/library/collections/{collection_id}/children"
        )
        return [
            str(row["ratingKey"]) for row in self._metadata(container) if row.get("ratingKey")
        ]

    async def create_collection(self, show_key: str, name: str) -> str:
        container = await self._request(
            "POST",
            "/library/collections",
            params={
                "type": 4,
                "title": name,
                "smart": 0,
                "sectionId": self._section_id,
            },
        )
        rows = self._metadata(container)
        collection_id = str(rows[0].get("ratingKey") or "") if rows else ""
        if not collection_id:
            raise LibraryServiceError(
                LibraryErrorKind.UNKNOWN, f"Plex did not return an id for collection {name!r}"
            )
        logger.info("Created collection %r (%s) for show %s", name, collection_id, show_key)
        return collection_id

    async def add_to_collection(self, collection_id: str, episode_key: str) -> None:
        machine_id = await self._machine_id()
        uri = f"server://{machine_id}/com.plexapp.plugins.library/library/metadata/{episode_key}"
        await self._request(
            "PUT", f"/library/collections/{collection_id}/items", params={"uri": uri}
        )

    async def remove_from_collection(self, collection_id: str, episode_key: str) -> None:
        await self._request(
            "DELETE", f"/library/collections/{collection_id}/items/{episode_key}"
        )
