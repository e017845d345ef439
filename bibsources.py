#!/usr/bin/env python3
"""Bibliographic metadata providers: fetch contract and response extraction."""

from __future__ import annotations

from dataclasses import dataclass, fields as dataclass_fields
import json
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional
from urllib.parse import quote, urlencode

import requests

logger = logging.getLogger(__name__)

CROSSREF_API = "https://api.crossref.org/works"
SEMANTIC_SCHOLAR_API = "https://api.semanticscholar.org/graph/v1/paper"
OPENALEX_API = "https://api.openalex.org/works"
SEMANTIC_SCHOLAR_FIELDS = "title,authors,year,venue,publicationDate,externalIds,journal,volume,pages"
CROSSREF_DATE_FIELDS = ("published-print", "published-online", "published", "issued")
DEFAULT_TIMEOUT = 10.0
USER_AGENT = "UniqueReferences/2.0"
MONTH_NAMES = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]
AUTHOR_NAME_EXCLUDES = ("Journal", "Conference", "University", "Institute")
MAX_AUTHORS = 20


@dataclass
class SourceDataset:
    title: Optional[str] = None
    doi: Optional[str] = None
    authors: Optional[str] = None
    year: Optional[str] = None
    month: Optional[str] = None
    container_title: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    pages: Optional[str] = None
    publisher: Optional[str] = None
    issn: Optional[str] = None
    isbn: Optional[str] = None
    url: Optional[str] = None
    kind: Optional[str] = None
    provenance: str = ""

    def is_empty(self) -> bool:
        return not any(
            getattr(self, item.name) for item in dataclass_fields(self) if item.name != "provenance"
        )


class FetchResult(NamedTuple):
    status: int
    body: bytes

    @property
    def ok(self) -> bool:
        return self.status == 200


NO_DATA = FetchResult(0, b"")

Fetcher = Callable[[str, Optional[float]], FetchResult]


class HttpFetcher:
    """GET a URL and hand back ``FetchResult``; every failure becomes "no data"."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        mailto: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        agent = USER_AGENT
        if mailto:
            agent = f"{agent} (mailto:{mailto})"
        self.session.headers.update({"User-Agent": agent, "Accept": "application/json"})

    def __call__(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        try:
            response = self.session.get(url, timeout=timeout or self.timeout, allow_redirects=True)
        except requests.RequestException as exc:
            logger.warning("Request failed for %s: %s", url, exc)
            return NO_DATA
        if response.status_code == 200:
            return FetchResult(200, response.content)
        # 404 and 429 are ordinary "nothing here"; other statuses are treated the same
        logger.debug("HTTP %s for %s", response.status_code, url)
        return FetchResult(response.status_code, b"")


def text_value(value: Any) -> Optional[str]:
    if isinstance(value, list):
        for item in value:
            text = text_value(item)
            if text:
                return text
        return None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return None


def month_name(value: Any) -> Optional[str]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    if 1 <= number <= 12:
        return MONTH_NAMES[number - 1]
    return None


def split_iso_date(value: Any) -> tuple:
    text = text_value(value)
    if not text or len(text) < 4 or not text[:4].isdigit():
        return None, None
    month = month_name(text[5:7]) if len(text) >= 7 else None
    return text[:4], month


def first_item(payload: Any, wrapper: str) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    items = payload.get(wrapper)
    if not isinstance(items, list) or not items:
        return None
    item = items[0]
    return item if isinstance(item, dict) else None


def display_name_to_bibtex(name: str) -> str:
    parts = name.split()
    if len(parts) < 2:
        return name
    return f"{parts[-1]}, {' '.join(parts[:-1])}"


def strip_doi_prefix(doi: Optional[str]) -> Optional[str]:
    if not doi:
        return doi
    for prefix in ("https://doi.org/", "http://doi.org/", "https://dx.doi.org/", "http://dx.doi.org/"):
        if doi.lower().startswith(prefix):
            return doi[len(prefix) :]
    return doi


# ---------------------------------------------------------------------------
# Response extraction
# ---------------------------------------------------------------------------


def crossref_authors(authors: Any) -> Optional[str]:
    if not isinstance(authors, list):
        return None
    names: List[str] = []
    for author in authors:
        if not isinstance(author, dict):
            continue
        family = text_value(author.get("family"))
        given = text_value(author.get("given"))
        if family and given:
            names.append(f"{family}, {given}")
        elif family:
            names.append(family)
    return " and ".join(names) or None


def crossref_date(work: Dict[str, Any], data: SourceDataset) -> None:
    for name in CROSSREF_DATE_FIELDS:
        block = work.get(name)
        if not isinstance(block, dict):
            continue
        parts = block.get("date-parts")
        if not isinstance(parts, list) or not parts or not isinstance(parts[0], list) or not parts[0]:
            continue
        year = text_value(parts[0][0])
        if not year:
            continue
        data.year = year
        if len(parts[0]) > 1:
            data.month = month_name(parts[0][1])
        return


def parse_crossref(payload: Any, is_search: bool = False) -> Optional[SourceDataset]:
    if not isinstance(payload, dict):
        return None
    message = payload.get("message", payload)
    work = first_item(message, "items") if is_search else message
    if not isinstance(work, dict):
        return None
    data = SourceDataset(
        title=text_value(work.get("title")),
        doi=text_value(work.get("DOI")),
        kind=text_value(work.get("type")),
        container_title=text_value(work.get("container-title")),
        volume=text_value(work.get("volume")),
        issue=text_value(work.get("issue")),
        pages=text_value(work.get("page")),
        publisher=text_value(work.get("publisher")),
        authors=crossref_authors(work.get("author")),
        issn=text_value(work.get("ISSN")),
        isbn=text_value(work.get("ISBN")),
        url=text_value(work.get("URL")),
        provenance="CrossRef",
    )
    crossref_date(work, data)
    return data


def parse_semantic_scholar(payload: Any, is_search: bool = False) -> Optional[SourceDataset]:
    paper = first_item(payload, "data") if is_search else payload
    if not isinstance(paper, dict):
        return None
    data = SourceDataset(
        title=text_value(paper.get("title")),
        year=text_value(paper.get("year")),
        container_title=text_value(paper.get("venue")),
        provenance="Semantic Scholar",
    )
    external = paper.get("externalIds")
    if isinstance(external, dict):
        data.doi = text_value(external.get("DOI"))
    authors = paper.get("authors")
    if isinstance(authors, list):
        names = []
        for author in authors:
            name = text_value(author.get("name")) if isinstance(author, dict) else None
            if name and " " in name:
                names.append(display_name_to_bibtex(name))
        data.authors = " and ".join(names) or None
    _, data.month = split_iso_date(paper.get("publicationDate"))
    journal = paper.get("journal")
    if isinstance(journal, dict):
        data.container_title = text_value(journal.get("name")) or data.container_title
        data.volume = text_value(journal.get("volume"))
        data.pages = text_value(journal.get("pages"))
    return data


def parse_openalex(payload: Any, is_search: bool = False) -> Optional[SourceDataset]:
    work = first_item(payload, "results") if is_search else payload
    if not isinstance(work, dict):
        return None
    data = SourceDataset(
        title=text_value(work.get("title")) or text_value(work.get("display_name")),
        doi=strip_doi_prefix(text_value(work.get("doi"))),
        kind=text_value(work.get("type")),
        provenance="OpenAlex",
    )
    data.year, data.month = split_iso_date(work.get("publication_date"))
    if not data.year:
        data.year = text_value(work.get("publication_year"))

    authorships = work.get("authorships")
    if isinstance(authorships, list):
        names = []
        for authorship in authorships[:MAX_AUTHORS]:
            author = authorship.get("author") if isinstance(authorship, dict) else None
            name = text_value(author.get("display_name")) if isinstance(author, dict) else None
            if not name or " " not in name or any(word in name for word in AUTHOR_NAME_EXCLUDES):
                continue
            names.append(display_name_to_bibtex(name))
        data.authors = " and ".join(names) or None

    location = work.get("primary_location")
    if isinstance(location, dict) and isinstance(location.get("source"), dict):
        data.container_title = text_value(location["source"].get("display_name"))

    biblio = work.get("biblio")
    if isinstance(biblio, dict):
        data.volume = text_value(biblio.get("volume"))
        data.issue = text_value(biblio.get("issue"))
        first_page = text_value(biblio.get("first_page"))
        last_page = text_value(biblio.get("last_page"))
        if first_page:
            data.pages = f"{first_page}-{last_page}" if last_page else first_page
    return data


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class Source:
    name = "source"
    supports_author_year = False

    def __init__(self, fetch: Fetcher, timeout: Optional[float] = None) -> None:
        self.fetch = fetch
        self.timeout = timeout

    def get_json(self, url: str) -> Optional[Any]:
        result = self.fetch(url, self.timeout)
        if not result.ok or not result.body:
            return None
        return json.loads(result.body)

    def by_doi(self, doi: str) -> Optional[SourceDataset]:
        raise NotImplementedError

    def by_title(self, title: str) -> Optional[SourceDataset]:
        raise NotImplementedError

    def by_author_year(self, surname: str, year: str, title: Optional[str]) -> Optional[SourceDataset]:
        return None


class CrossrefSource(Source):
    name = "CrossRef"
    supports_author_year = True

    def by_doi(self, doi: str) -> Optional[SourceDataset]:
        payload = self.get_json(f"{CROSSREF_API}/{quote(doi, safe='/')}")
        return parse_crossref(payload) if payload is not None else None

    def by_title(self, title: str) -> Optional[SourceDataset]:
        query = urlencode({"query.title": title, "rows": 1})
        payload = self.get_json(f"{CROSSREF_API}?{query}")
        return parse_crossref(payload, is_search=True) if payload is not None else None

    def by_author_year(self, surname: str, year: str, title: Optional[str]) -> Optional[SourceDataset]:
        params = {
            "query.author": surname,
            "filter": f"from-pub-date:{year},until-pub-date:{year}",
        }
        if title and len(title) > 5:
            params["query.title"] = title[:50]
        params["rows"] = "3"
        payload = self.get_json(f"{CROSSREF_API}?{urlencode(params)}")
        return parse_crossref(payload, is_search=True) if payload is not None else None


class SemanticScholarSource(Source):
    name = "Semantic Scholar"

    def by_doi(self, doi: str) -> Optional[SourceDataset]:
        url = f"{SEMANTIC_SCHOLAR_API}/DOI:{quote(doi, safe='/')}?fields={SEMANTIC_SCHOLAR_FIELDS}"
        payload = self.get_json(url)
        return parse_semantic_scholar(payload) if payload is not None else None

    def by_title(self, title: str) -> Optional[SourceDataset]:
        query = urlencode({"query": title, "fields": SEMANTIC_SCHOLAR_FIELDS, "limit": 1})
        payload = self.get_json(f"{SEMANTIC_SCHOLAR_API}/search?{query}")
        return parse_semantic_scholar(payload, is_search=True) if payload is not None else None


class OpenAlexSource(Source):
    name = "OpenAlex"

    def by_doi(self, doi: str) -> Optional[SourceDataset]:
        payload = self.get_json(f"{OPENALEX_API}/https://doi.org/{quote(doi, safe='/')}")
        return parse_openalex(payload) if payload is not None else None

    def by_title(self, title: str) -> Optional[SourceDataset]:
        query = urlencode({"filter": f"title.search:{title}", "per_page": 1})
        payload = self.get_json(f"{OPENALEX_API}?{query}")
        return parse_openalex(payload, is_search=True) if payload is not None else None


def default_sources(fetch: Optional[Fetcher] = None, timeout: Optional[float] = None) -> List[Source]:
    fetch = fetch or HttpFetcher()
    return [
        CrossrefSource(fetch, timeout),
        SemanticScholarSource(fetch, timeout),
        OpenAlexSource(fetch, timeout),
    ]
