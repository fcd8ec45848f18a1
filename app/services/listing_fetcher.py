"""Retrieval of raw episode listings from the filler-list website."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import quote, urlparse

import httpx
from bs4 import BeautifulSoup

from ..errors import FetchError, FetchErrorKind
from ..utils import collapse_whitespace, title_from_slug

logger = logging.getLogger(__name__)

EPISODE_ROW_SELECTOR = "table.EpisodeList tbody tr"
TITLE_SUFFIX_RE = re.compile(r"\s*filler\s+list\s*$", re.IGNORECASE)


@dataclass(slots=True)
class RawListingRow:
    """One unvalidated row of an episode listing, in page order."""

    number: str
    title: str
    marker: str


@dataclass(slots=True)
class FetchedListing:
    """The raw listing for a show together with its display title."""

    slug: str
    title: str
    rows: list[RawListingRow] = field(default_factory=list)


class ListingFetcher(Protocol):
    async def fetch(self, slug: str) -> FetchedListing: ...


def parse_show_slug(value: str) -> str:
    """Return the show slug from a bare slug or a full listing URL."""

    candidate = (value or "").strip()
    if not candidate:
        raise ValueError("A show slug or listing URL is required")
    if "://" in candidate:
        path = urlparse(candidate).path
    else:
        path = candidate
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        raise ValueError(f"Could not determine a show slug from {value!r}")
    return segments[-1].lower()


def parse_listing_html(slug: str, body: str) -> FetchedListing:
    """Extract the episode table and page title from a listing page."""

    soup = BeautifulSoup(body, "lxml")
    rows = soup.select(EPISODE_ROW_SELECTOR)
    if not rows:
        raise FetchError(
            FetchErrorKind.PARSE_FAILURE,
            f"No episode table found on listing page for {slug}",
        )

    parsed: list[RawListingRow] = []
    for row in rows:
        number_cell = row.select_one("td.Number")
        title_cell = row.select_one("td.Title")
        type_cell = row.select_one("td.Type")
        parsed.append(
            RawListingRow(
                number=_cell_text(number_cell),
                title=_cell_text(title_cell),
                marker=_cell_text(type_cell),
            )
        )

    heading = soup.select_one("h1")
    title = ""
    if heading is not None:
        title = TITLE_SUFFIX_RE.sub("", collapse_whitespace(heading.get_text(" ")))
    return FetchedListing(slug=slug, title=title or title_from_slug(slug), rows=parsed)


def _cell_text(cell) -> str:
    if cell is None:
        return ""
    return collapse_whitespace(cell.get_text(" "))


class AnimeFillerListFetcher:
    """Fetches show pages from an AnimeFillerList-style website."""

    _SHOW_PATH = "/shows/{slug}"

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._client = http_client

    async def fetch(self, slug: str) -> FetchedListing:
        path = self._SHOW_PATH.format(slug=quote(slug, safe=""))
        logger.info("Fetching episode listing for %s", slug)
        try:
            response = await self._client.get(path, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise FetchError(
                FetchErrorKind.NETWORK,
                f"Request for listing {slug} failed: {exc.__class__.__name__}",
            ) from exc

        if response.status_code == 404:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"No listing found for {slug}")
        if response.status_code >= 400:
            raise FetchError(
                FetchErrorKind.NETWORK,
                f"Listing source returned HTTP {response.status_code} for {slug}",
            )

        listing = parse_listing_html(slug, response.text)
        logger.info("Listing for %s contains %d rows", slug, len(listing.rows))
        return listing
