#!/usr/bin/env python3
"""Verify BibTeX entries against online sources and fill in what is missing."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields, replace
from enum import Enum
import logging
import re
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import bibcore as bc
from bibsources import SourceDataset, Source, default_sources

logger = logging.getLogger(__name__)

SCORE_WEIGHTS = (
    ("title", 10),
    ("authors", 10),
    ("doi", 8),
    ("year", 5),
    ("month", 5),
    ("container_title", 5),
    ("pages", 3),
    ("volume", 3),
    ("issue", 2),
    ("publisher", 2),
)
NON_DATA_FIELDS = {"kind", "provenance"}
OVERWRITE_ALLOWED_FIELDS = {
    "doi",
    "url",
    "year",
    "month",
    "volume",
    "number",
    "pages",
    "journal",
    "booktitle",
}
TYPE_MAP = {
    "journal-article": "article",
    "article": "article",
    "book": "book",
    "book-chapter": "incollection",
    "chapter": "incollection",
    "proceedings-article": "inproceedings",
    "proceedings": "inproceedings",
    "dissertation": "phdthesis",
    "thesis": "phdthesis",
    "report": "techreport",
}
LATEX_SKIP_FIELDS = {"doi", "url"}
MIN_TITLE_QUERY_LENGTH = 10
DEFAULT_REQUEST_DELAY = 0.15

ProgressCallback = Callable[[int, int, str], None]


class VerificationMode(str, Enum):
    SAFE = "safe"
    AGGRESSIVE_DOI_ONLY = "aggressive-doi-only"


class VerificationStatus(str, Enum):
    VERIFIED = "VERIFIED"
    CORRECTED = "CORRECTED"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class VerificationOutcome:
    original: str
    corrected: str
    status: VerificationStatus
    message: str
    key: str = ""


@dataclass
class VerificationRun:
    outcomes: List[VerificationOutcome] = field(default_factory=list)
    submitted: int = 0
    cancelled: bool = False

    def count(self, status: VerificationStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    def counts(self) -> Dict[VerificationStatus, int]:
        return {status: self.count(status) for status in VerificationStatus}


def completeness_score(data: SourceDataset) -> int:
    return sum(weight for name, weight in SCORE_WEIGHTS if getattr(data, name))


def merge_datasets(results: Sequence[SourceDataset]) -> Optional[SourceDataset]:
    """Pick the most complete dataset and fill its gaps from the others, in order."""
    best: Optional[SourceDataset] = None
    best_score = -1
    for data in results:
        score = completeness_score(data)
        if score > best_score:
            best, best_score = data, score
    if best is None:
        return None
    merged = replace(best)
    for other in results:
        if other is best:
            continue
        for item in dataclass_fields(merged):
            if item.name in NON_DATA_FIELDS:
                continue
            if not getattr(merged, item.name) and getattr(other, item.name):
                setattr(merged, item.name, getattr(other, item.name))
    return merged


def map_entry_type(kind: str) -> str:
    return TYPE_MAP.get(kind.lower(), "misc")


def normalize_for_comparison(text: str) -> str:
    text = re.sub(r"\s+", " ", text.lower())
    return text.replace("{", "").replace("}", "").strip()


def author_surname(author: str) -> str:
    """First author's surname for the author/year query.

    Comma form keeps everything before the first comma; a bare ``and`` list
    takes the last token of the first name; anything else is used as is.
    """
    name = author.replace("{", "").replace("}", "").strip()
    if "," in name:
        return name.split(",")[0].strip()
    if " and " in name:
        first = name.split(" and ")[0].strip()
        return first.split(" ")[-1]
    return name


def escape_ampersands(text: str) -> str:
    return re.sub(r"(?<!\\)&", r"\\&", text)


def latex_safe(name: str, value: str) -> str:
    if name in LATEX_SKIP_FIELDS:
        return value
    return escape_ampersands(value)


class ReferenceVerifier:
    def __init__(
        self,
        sources: Optional[Sequence[Source]] = None,
        mode: VerificationMode = VerificationMode.SAFE,
        month_style: bc.MonthStyle = bc.MonthStyle.KEEP_ORIGINAL,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sources = list(sources) if sources is not None else default_sources()
        self.mode = mode or VerificationMode.SAFE
        self.month_style = month_style or bc.MonthStyle.KEEP_ORIGINAL
        self.request_delay = request_delay
        self.sleep = sleep

    # -- lookups -----------------------------------------------------------

    def ask(self, source: Source, method: str, *args) -> Optional[SourceDataset]:
        try:
            data = getattr(source, method)(*args)
        except Exception as exc:
            logger.warning("%s %s lookup failed: %s", source.name, method, exc)
            return None
        if data is None or data.is_empty():
            return None
        return data

    def lookup(
        self,
        doi: Optional[str],
        title: Optional[str],
        author: Optional[str],
        year: Optional[str],
    ) -> List[SourceDataset]:
        results: List[SourceDataset] = []
        if doi:
            for source in self.sources:
                data = self.ask(source, "by_doi", doi)
                if data:
                    results.append(data)

        if not results and title and len(title) > MIN_TITLE_QUERY_LENGTH:
            clean_title = title.replace("{", "").replace("}", "").strip()
            for source in self.sources:
                data = self.ask(source, "by_title", clean_title)
                if data:
                    results.append(data)

        if not results and author and year:
            source = next((item for item in self.sources if item.supports_author_year), None)
            if source is not None:
                hint = title.replace("{", "").replace("}", "").strip() if title else None
                data = self.ask(source, "by_author_year", author_surname(author), year.strip(), hint)
                if data:
                    results.append(data)
        return results

    # -- single record -----------------------------------------------------

    def verify(self, entry: str) -> VerificationOutcome:
        key = ""
        try:
            scanned = bc.scan_entries(entry)
            if scanned.records:
                key = scanned.records[0].key
            doi = (bc.extract_field(entry, "doi") or "").strip()
            title = bc.normalize_whitespace(bc.extract_field(entry, "title") or "")
            author = bc.normalize_whitespace(bc.extract_field(entry, "author") or "")
            year = (bc.extract_field(entry, "year") or "").strip()

            results = self.lookup(doi, title, author, year)
            if not results:
                if title:
                    return VerificationOutcome(
                        entry, entry, VerificationStatus.NOT_FOUND,
                        "Could not find reference in any online source", key,
                    )
                return VerificationOutcome(
                    entry, entry, VerificationStatus.SKIPPED,
                    "No DOI, title, or author+year found to verify", key,
                )

            best = merge_datasets(results)
            allow_overwrites = self.mode == VerificationMode.AGGRESSIVE_DOI_ONLY and bool(doi)
            return self.build_outcome(entry, best, allow_overwrites)
        except Exception as exc:
            logger.exception("Verification failed for %s", key or "entry")
            return VerificationOutcome(entry, entry, VerificationStatus.ERROR, f"Error: {exc}", key)

    def build_outcome(self, entry: str, data: SourceDataset, allow_overwrites: bool) -> VerificationOutcome:
        kind, key = "article", "unknown"
        scanned = bc.scan_entries(entry)
        if scanned.records:
            kind, key = scanned.records[0].kind, scanned.records[0].key
        if data.kind:
            kind = map_entry_type(data.kind)

        corrected = self.build_corrected_entry(kind, key, data, entry, allow_overwrites)
        if normalize_for_comparison(corrected) != normalize_for_comparison(entry):
            prefix = "Reference corrected (aggressive) from " if allow_overwrites else "Reference corrected from "
            return VerificationOutcome(entry, corrected, VerificationStatus.CORRECTED, prefix + data.provenance, key)
        return VerificationOutcome(
            entry, entry, VerificationStatus.VERIFIED, f"Reference verified via {data.provenance}", key
        )

    def build_corrected_entry(
        self,
        kind: str,
        key: str,
        data: SourceDataset,
        original: str,
        allow_overwrites: bool = False,
    ) -> str:
        fields = bc.extract_all_fields(original)

        def put_maybe(name: str, value: Optional[str]) -> None:
            if not value:
                return
            if name not in fields:
                fields[name] = latex_safe(name, value)
            elif allow_overwrites and name in OVERWRITE_ALLOWED_FIELDS:
                fields[name] = latex_safe(name, value)

        put_maybe("author", data.authors)
        put_maybe("title", data.title)

        container = "booktitle" if kind in {"inproceedings", "incollection"} else "journal"
        if "journal" not in fields and "booktitle" not in fields:
            put_maybe(container, data.container_title)
        elif container in fields:
            put_maybe(container, data.container_title)

        put_maybe("year", data.year)
        self.apply_month(fields, data.month, allow_overwrites)
        put_maybe("volume", data.volume)
        put_maybe("number", data.issue)
        put_maybe("pages", data.pages)
        put_maybe("publisher", data.publisher)
        put_maybe("doi", data.doi)
        if kind in {"book", "incollection"}:
            put_maybe("isbn", data.isbn)
        if kind == "article":
            put_maybe("issn", data.issn)
        put_maybe("url", data.url)

        return bc.rebuild_entry(kind, key, fields)

    def apply_month(self, fields: Dict[str, str], fetched: Optional[str], allow_overwrites: bool) -> None:
        existing = fields.get("month")
        if fetched and (not existing or allow_overwrites):
            number = bc.parse_month_number(fetched)
            fields["month"] = bc.format_month(number, self.month_style, fetched)
            return
        if existing and self.month_style != bc.MonthStyle.KEEP_ORIGINAL:
            number = bc.parse_month_number(existing)
            if number is not None:
                fields["month"] = bc.format_month(number, self.month_style, existing)

    # -- batches -----------------------------------------------------------

    def verify_all(
        self,
        records: Iterable[bc.Record],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
        workers: int = 1,
    ) -> VerificationRun:
        items = list(records)
        run = VerificationRun(submitted=len(items))
        if workers > 1 and len(items) > 1:
            self._verify_parallel(items, run, progress, cancel, workers)
        else:
            self._verify_sequential(items, run, progress, cancel)
        return run

    def _verify_sequential(
        self,
        items: List[bc.Record],
        run: VerificationRun,
        progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event],
    ) -> None:
        total = len(items)
        for index, record in enumerate(items, start=1):
            if cancel is not None and cancel.is_set():
                run.cancelled = True
                return
            if progress:
                progress(index, total, record.key)
            run.outcomes.append(self.verify(record.raw))
            if index < total and self.request_delay > 0:
                self.sleep(self.request_delay)

    def _verify_parallel(
        self,
        items: List[bc.Record],
        run: VerificationRun,
        progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event],
        workers: int,
    ) -> None:
        def task(record: bc.Record) -> Optional[VerificationOutcome]:
            if cancel is not None and cancel.is_set():
                return None
            outcome = self.verify(record.raw)
            if self.request_delay > 0:
                self.sleep(self.request_delay)
            return outcome

        total = len(items)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(task, record) for record in items]
            for index, (record, future) in enumerate(zip(items, futures), start=1):
                outcome = future.result()
                if outcome is None:
                    run.cancelled = True
                    for pending in futures[index:]:
                        pending.cancel()
                    return
                if progress:
                    progress(index, total, record.key)
                run.outcomes.append(outcome)


def verification_counts(run: VerificationRun) -> Tuple[int, int, int, int, int]:
    return (
        run.count(VerificationStatus.VERIFIED),
        run.count(VerificationStatus.CORRECTED),
        run.count(VerificationStatus.NOT_FOUND),
        run.count(VerificationStatus.ERROR),
        run.count(VerificationStatus.SKIPPED),
    )


def format_verification_summary(
    run: VerificationRun,
    duplicates_removed: int,
    pending: Sequence[str] = (),
) -> str:
    """Summary comment block followed by every entry; ``pending`` are left as they were."""
    verified, corrected, not_found, errors, skipped = verification_counts(run)
    rule = "% " + "=" * 55
    lines = [
        rule,
        "% VERIFICATION & DEDUPLICATION SUMMARY",
        rule,
        f"% Duplicates removed: {duplicates_removed}",
        f"% Verified (already correct): {verified}",
        f"% Corrected/completed: {corrected}",
        f"% Not found online: {not_found}",
        f"% Errors during lookup: {errors}",
        f"% Skipped (no DOI/title): {skipped}",
    ]
    if run.cancelled:
        lines.append(f"% Cancelled after {len(run.outcomes)} of {run.submitted} entries")
    lines.append(rule)
    blocks = ["\n".join(lines)]
    blocks.extend(outcome.corrected for outcome in run.outcomes)
    blocks.extend(pending)
    return "\n\n".join(blocks).strip() + "\n"
