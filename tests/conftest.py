"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from app.errors import FetchError, FetchErrorKind, LibraryErrorKind, LibraryServiceError  # noqa: E402
from app.services.library import LibraryEpisode, LibraryItem  # noqa: E402
from app.services.listing_fetcher import FetchedListing, RawListingRow  # noqa: E402


MARKERS = {
    "C": "Manga Canon",
    "M": "Mixed Canon/Filler",
    "A": "Anime Canon",
    "F": "Filler",
}


def build_listing(slug: str, title: str, pattern: str) -> FetchedListing:
    """Build a listing numbered 1..N from a marker pattern such as ``"CCF"``."""

    rows = [
        RawListingRow(number=str(number), title=f"Episode {number}", marker=MARKERS[code])
        for number, code in enumerate(pattern, start=1)
    ]
    return FetchedListing(slug=slug, title=title, rows=rows)


class FakeFetcher:
    """In-memory listing source."""

    def __init__(self) -> None:
        self.listings: dict[str, FetchedListing] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def add(self, slug: str, title: str, pattern: str) -> FetchedListing:
        listing = build_listing(slug, title, pattern)
        self.listings[slug] = listing
        return listing

    async def fetch(self, slug: str) -> FetchedListing:
        self.calls.append(slug)
        if slug in self.errors:
            raise self.errors[slug]
        listing = self.listings.get(slug)
        if listing is None:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"No listing found for {slug}")
        return listing


class FakeLibraryService:
    """In-memory media server with scripted failures."""

    def __init__(self) -> None:
        self.items: list[LibraryItem] = []
        self.episodes: dict[str, list[LibraryEpisode]] = {}
        self.collections: dict[str, dict[str, object]] = {}
        self.calls: list[tuple[str, str]] = []
        self._rules: list[list[object]] = []
        self._next_id = 1000

    def add_show(self, key: str, title: str, episode_count: int) -> list[LibraryEpisode]:
        self.items.append(LibraryItem(key=key, title=title))
        episodes = [
            LibraryEpisode(
                key=f"{key}-e{number}",
                number=number,
                season=1,
                index=number,
                title=f"Episode {number}",
            )
            for number in range(1, episode_count + 1)
        ]
        self.episodes[key] = episodes
        return episodes

    def add_collection(self, show_key: str, name: str, members: list[str]) -> str:
        collection_id = self._new_id()
        self.collections[collection_id] = {
            "show_key": show_key,
            "name": name,
            "members": list(members),
        }
        return collection_id

    def members(self, collection_id: str) -> list[str]:
        return list(self.collections[collection_id]["members"])  # type: ignore[arg-type]

    def fail(
        self,
        method: str,
        error: Exception,
        *,
        key: str | None = None,
        times: int | None = None,
    ) -> None:
        """Raise ``error`` from ``method`` (optionally only for ``key``) ``times`` times."""

        self._rules.append([method, key, error, times])

    def transient(self, message: str = "timed out") -> LibraryServiceError:
        return LibraryServiceError(LibraryErrorKind.TRANSIENT, message)

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _check(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        for rule in self._rules:
            rule_method, rule_key, error, times = rule
            if rule_method != method or (rule_key is not None and rule_key != key):
                continue
            if times is not None:
                if times <= 0:
                    continue
                rule[3] = times - 1
            raise error  # type: ignore[misc]

    async def list_library_items(self, query: str | None = None) -> list[LibraryItem]:
        self._check("list_library_items", query or "")
        return list(self.items)

    async def list_episodes(self, show_key: str) -> list[LibraryEpisode]:
        self._check("list_episodes", show_key)
        if show_key not in self.episodes:
            raise LibraryServiceError(LibraryErrorKind.NOT_FOUND, f"{show_key} not found")
        return list(self.episodes[show_key])

    async def find_collection(self, show_key: str, name: str) -> str | None:
        self._check("find_collection", show_key)
        # Like Plex: titles are not unique, so ownership is judged by members.
        for collection_id, collection in self.collections.items():
            if collection["name"] != name:
                continue
            owners = {self._owner(member) for member in self.members(collection_id)}
            if owners == {show_key}:
                return collection_id
        return None

    def _owner(self, episode_key: str) -> str | None:
        for show_key, episodes in self.episodes.items():
            if any(episode.key == episode_key for episode in episodes):
                return show_key
        return None

    async def get_collection_members(self, collection_id: str) -> list[str]:
        self._check("get_collection_members", collection_id)
        if collection_id not in self.collections:
            raise LibraryServiceError(
                LibraryErrorKind.NOT_FOUND, f"collection {collection_id} not found"
            )
        return self.members(collection_id)

    async def create_collection(self, show_key: str, name: str) -> str:
        self._check("create_collection", show_key)
        return self.add_collection(show_key, name, [])

    async def add_to_collection(self, collection_id: str, episode_key: str) -> None:
        self._check("add_to_collection", episode_key)
        members = self.collections[collection_id]["members"]
        if episode_key not in members:  # type: ignore[operator]
            members.append(episode_key)  # type: ignore[union-attr]

    async def remove_from_collection(self, collection_id: str, episode_key: str) -> None:
        self._check("remove_from_collection", episode_key)
        members = self.collections[collection_id]["members"]
        if episode_key in members:  # type: ignore[operator]
            members.remove(episode_key)  # type: ignore[union-attr]


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def library() -> FakeLibraryService:
    return FakeLibraryService()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'canonsync.db'}"
