#!/usr/bin/env python3
"""Scan, deduplicate and rewrite BibTeX entries without disturbing their field text."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import os
import re
import sys
from typing import Dict, Iterator, List, Mapping, Optional, Tuple


SKIPPED_KINDS = {"comment", "preamble", "string"}
FIELD_ORDER = [
    "author",
    "title",
    "journal",
    "booktitle",
    "year",
    "month",
    "volume",
    "number",
    "pages",
    "publisher",
    "organization",
    "doi",
    "isbn",
    "issn",
    "url",
    "note",
    "keywords",
    "abstract",
]
FULL_MONTHS = [
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
ABBREV_MONTHS = [
    "Jan.",
    "Feb.",
    "Mar.",
    "Apr.",
    "May",
    "Jun.",
    "Jul.",
    "Aug.",
    "Sep.",
    "Oct.",
    "Nov.",
    "Dec.",
]
MIN_SIGNATURE_LENGTH = 10


@dataclass(frozen=True)
class Record:
    kind: str
    key: str
    raw: str

    def fields(self) -> Dict[str, str]:
        return extract_all_fields(self.raw)

    def field(self, name: str) -> Optional[str]:
        return extract_field(self.raw, name)


@dataclass
class ScanResult:
    records: List[Record] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class MonthStyle(str, Enum):
    KEEP_ORIGINAL = "keep"
    ABBREV_DOT = "abbrev"
    FULL_NAME = "full"


class DuplicateReason(str, Enum):
    KEY_DUPLICATE = "KEY_DUPLICATE"
    TITLE_DUPLICATE = "TITLE_DUPLICATE"
    TITLE_YEAR_DUPLICATE = "TITLE_YEAR_DUPLICATE"


@dataclass(frozen=True)
class DuplicateRecord:
    dropped_key: str
    kept_key: str
    reason: DuplicateReason


@dataclass
class DeduplicationResult:
    records: Dict[str, Record]
    total: int
    unique: int
    duplicates: int
    parse_errors: int
    duplicate_log: List[DuplicateRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Low-level span helpers shared by the scanner and the field codec.
# A backslash always escapes the next character. Quotes only delimit at the
# level where they open a value; inside braces they are literal text.
# ---------------------------------------------------------------------------


def skip_braced(text: str, idx: int) -> int:
    """Return the index just past the brace group opening at ``idx``, or -1."""
    depth = 0
    n = len(text)
    while idx < n:
        ch = text[idx]
        if ch == "\\":
            idx += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
        idx += 1
    return -1


def skip_quoted(text: str, idx: int) -> int:
    """Return the index just past the quoted value opening at ``idx``, or -1."""
    idx += 1
    n = len(text)
    while idx < n:
        ch = text[idx]
        if ch == "\\":
            idx += 2
            continue
        if ch == "{":
            end = skip_braced(text, idx)
            if end == -1:
                return -1
            idx = end
            continue
        if ch == '"':
            return idx + 1
        idx += 1
    return -1


def is_name_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_-"


def skip_whitespace(text: str, idx: int) -> int:
    while idx < len(text) and text[idx].isspace():
        idx += 1
    return idx


def find_top_level(text: str, idx: int, stops: str, close_char: str) -> Tuple[int, str]:
    """Walk from ``idx`` skipping nested groups until one of ``stops`` or ``close_char``.

    Returns the position and the character found there, ``(-1, "")`` when the
    text ends first.
    """
    n = len(text)
    parens = 0
    while idx < n:
        ch = text[idx]
        if ch == "\\":
            idx += 2
            continue
        if ch == "{":
            end = skip_braced(text, idx)
            if end == -1:
                return -1, ""
            idx = end
            continue
        if ch == '"':
            end = skip_quoted(text, idx)
            if end == -1:
                return -1, ""
            idx = end
            continue
        if close_char == ")" and ch == "(":
            parens += 1
        elif ch == close_char:
            if parens == 0:
                return idx, ch
            parens -= 1
        elif ch in stops and parens == 0:
            return idx, ch
        idx += 1
    return -1, ""


# ---------------------------------------------------------------------------
# Entry scanner
# ---------------------------------------------------------------------------


def scan_entries(text: Optional[str]) -> ScanResult:
    result = ScanResult()
    if not text:
        return result
    n = len(text)
    idx = 0
    while idx < n:
        at = text.find("@", idx)
        if at == -1:
            break
        kind_start = skip_whitespace(text, at + 1)
        kind_end = kind_start
        while kind_end < n and is_name_char(text[kind_end]):
            kind_end += 1
        if kind_end == kind_start:
            idx = at + 1
            continue
        kind = text[kind_start:kind_end].lower()
        open_idx = skip_whitespace(text, kind_end)
        if open_idx >= n:
            break
        open_char = text[open_idx]
        if open_char not in "{(":
            idx = open_idx
            continue
        close_char = "}" if open_char == "{" else ")"

        if kind in SKIPPED_KINDS:
            # free text: only the braces have to balance
            if open_char == "{":
                end = skip_braced(text, open_idx)
            else:
                close_idx, _ = find_top_level(text, open_idx + 1, "", close_char)
                end = close_idx + 1 if close_idx != -1 else -1
            if end == -1:
                result.errors.append(f"Unclosed entry starting at index {at} (@{kind})")
                break
            idx = end
            continue

        key: Optional[str] = None
        key_end, found = find_top_level(text, open_idx + 1, ",", close_char)
        if key_end == -1:
            close_idx = -1
        elif found == close_char:
            close_idx = key_end
        else:
            key = text[open_idx + 1 : key_end].strip() or None
            close_idx, _ = find_top_level(text, key_end + 1, "", close_char)
        if close_idx == -1:
            result.errors.append(f"Unclosed entry starting at index {at} (@{kind})")
            break

        end = close_idx + 1
        if key is None:
            result.errors.append(f"Entry without key at index {at} (@{kind})")
        else:
            result.records.append(Record(kind=kind, key=key, raw=text[at:end].strip()))
        idx = end
    return result


# ---------------------------------------------------------------------------
# Field codec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpan:
    name: str
    start: int
    end: int
    delimiter: str
    value: str


def entry_bounds(body: str) -> Tuple[int, str]:
    """Return the position after the key comma and the record's closing delimiter."""
    stripped = body.lstrip()
    if not stripped.startswith("@"):
        return 0, "}"
    idx = body.find("@")
    idx = skip_whitespace(body, idx + 1)
    while idx < len(body) and is_name_char(body[idx]):
        idx += 1
    idx = skip_whitespace(body, idx)
    if idx >= len(body) or body[idx] not in "{(":
        return -1, "}"
    close_char = "}" if body[idx] == "{" else ")"
    comma, found = find_top_level(body, idx + 1, ",", close_char)
    if comma == -1 or found != ",":
        return -1, close_char
    return comma + 1, close_char


def iter_field_spans(body: str) -> Iterator[FieldSpan]:
    start, close_char = entry_bounds(body)
    if start == -1:
        return
    n = len(body)
    idx = start
    while idx < n:
        while idx < n and (body[idx].isspace() or body[idx] == ","):
            idx += 1
        if idx >= n or body[idx] == close_char:
            return
        name_start = idx
        while idx < n and is_name_char(body[idx]):
            idx += 1
        if idx == name_start:
            if body[idx] == "{":
                end = skip_braced(body, idx)
            elif body[idx] == '"':
                end = skip_quoted(body, idx)
            else:
                end = idx + 1
            if end == -1:
                return
            idx = end
            continue
        name = body[name_start:idx].lower()
        idx = skip_whitespace(body, idx)
        if idx >= n or body[idx] != "=":
            continue
        idx = skip_whitespace(body, idx + 1)
        if idx >= n:
            return
        open_char = body[idx]
        if open_char == "{":
            end = skip_braced(body, idx)
            if end == -1:
                return
            yield FieldSpan(name, idx, end, "{", body[idx + 1 : end - 1].strip())
        elif open_char == '"':
            end = skip_quoted(body, idx)
            if end == -1:
                return
            yield FieldSpan(name, idx, end, '"', body[idx + 1 : end - 1].strip())
        else:
            end = idx
            while end < n and body[end] not in ",})":
                end += 1
            yield FieldSpan(name, idx, end, "", body[idx:end].strip())
        idx = end


def find_field_span(body: Optional[str], field_name: Optional[str]) -> Optional[FieldSpan]:
    if not body or not field_name:
        return None
    target = field_name.strip().lower()
    if not target:
        return None
    for span in iter_field_spans(body):
        if span.name == target:
            return span
    return None


def extract_field(body: Optional[str], field_name: Optional[str]) -> Optional[str]:
    span = find_field_span(body, field_name)
    return span.value if span else None


def extract_all_fields(body: Optional[str]) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    if not body:
        return fields
    for span in iter_field_spans(body):
        fields.setdefault(span.name, span.value)
    return fields


def replace_field(body: str, field_name: str, new_value: str) -> str:
    span = find_field_span(body, field_name)
    if span is None:
        return body
    return f"{body[:span.start]}{{{new_value}}}{body[span.end:]}"


def append_field(body: str, field_name: str, value: str) -> str:
    if find_field_span(body, field_name) is not None:
        return body
    start, close_char = entry_bounds(body)
    if start == -1:
        return body
    close_idx, _ = find_top_level(body, start, "", close_char)
    if close_idx == -1:
        return body
    head = body[:close_idx].rstrip()
    separator = "" if head.endswith(",") else ","
    return f"{head}{separator}\n  {field_name.lower()} = {{{value}}}\n{body[close_idx:]}"


def rebuild_entry(kind: str, key: str, fields: Mapping[str, str]) -> str:
    lines = [f"@{kind}{{{key},"]
    seen = set()
    for name in FIELD_ORDER:
        if name in fields:
            lines.append(f"  {name} = {{{fields[name]}}},")
            seen.add(name)
    for name, value in fields.items():
        if name not in seen:
            lines.append(f"  {name} = {{{value}}},")
    lines.append("}")
    return "\n".join(lines)


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


# ---------------------------------------------------------------------------
# Months
# ---------------------------------------------------------------------------


def parse_month_number(text: Optional[str]) -> Optional[int]:
    if text is None:
        return None
    value = text.strip()
    if not value:
        return None
    digits = re.sub(r"[^0-9]", "", value)
    if digits:
        number = int(digits)
        if 1 <= number <= 12:
            return number
    lower = value.lower().replace("{", "").replace("}", "").strip()
    bare = lower.rstrip(".")
    for idx, full in enumerate(FULL_MONTHS):
        full_lower = full.lower()
        abbrev = ABBREV_MONTHS[idx].lower()
        if lower == full_lower or lower.startswith(full_lower[:3]):
            return idx + 1
        if len(bare) >= 3 and full_lower.startswith(bare):
            return idx + 1
        if lower == abbrev or lower == abbrev.replace(".", ""):
            return idx + 1
    return None


def format_month(number: Optional[int], style: Optional[MonthStyle], original: str) -> str:
    if style is None or style == MonthStyle.KEEP_ORIGINAL:
        return original
    if number is None or not 1 <= number <= 12:
        return original
    if style == MonthStyle.FULL_NAME:
        return FULL_MONTHS[number - 1]
    return ABBREV_MONTHS[number - 1]


def normalize_month_in_entry(raw: str, style: MonthStyle) -> str:
    month = extract_field(raw, "month")
    if not month:
        return raw
    number = parse_month_number(month)
    if number is None:
        return raw
    formatted = format_month(number, style, month)
    if formatted == month:
        return raw
    return replace_field(raw, "month", formatted)


def normalize_months(records: Mapping[str, Record], style: Optional[MonthStyle]) -> Dict[str, Record]:
    if style is None or style == MonthStyle.KEEP_ORIGINAL:
        return dict(records)
    normalized: Dict[str, Record] = {}
    for key, record in records.items():
        raw = normalize_month_in_entry(record.raw, style)
        normalized[key] = record if raw == record.raw else replace(record, raw=raw)
    return normalized


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


def normalize_signature(title: str) -> str:
    return re.sub(r"[^a-z0-9]", "", title.lower())


def title_signatures(record: Record) -> List[Tuple[str, DuplicateReason]]:
    title = extract_field(record.raw, "title")
    if not title or not title.strip():
        return []
    norm = normalize_signature(title)
    if len(norm) < MIN_SIGNATURE_LENGTH:
        return []
    sigs = [(norm, DuplicateReason.TITLE_DUPLICATE)]
    year = extract_field(record.raw, "year")
    if year and year.strip():
        sigs.append((f"{norm}|{year.strip()}", DuplicateReason.TITLE_YEAR_DUPLICATE))
    return sigs


def deduplicate(text: Optional[str], sort_by_key: bool = False, smart_dedup: bool = False) -> DeduplicationResult:
    scanned = scan_entries(text)
    unique: Dict[str, Record] = {}
    log: List[DuplicateRecord] = []
    claimed: Dict[str, str] = {}

    for record in scanned.records:
        if record.key in unique:
            log.append(DuplicateRecord(record.key, record.key, DuplicateReason.KEY_DUPLICATE))
            continue

        signatures = title_signatures(record) if smart_dedup else []
        match = next(((sig, reason) for sig, reason in signatures if sig in claimed), None)
        if match:
            sig, reason = match
            log.append(DuplicateRecord(record.key, claimed[sig], reason))
            continue

        unique[record.key] = record
        for sig, _ in signatures:
            claimed.setdefault(sig, record.key)

    if sort_by_key:
        unique = {key: unique[key] for key in sorted(unique)}
    return DeduplicationResult(
        records=unique,
        total=len(scanned.records),
        unique=len(unique),
        duplicates=len(log),
        parse_errors=len(scanned.errors),
        duplicate_log=log,
        errors=list(scanned.errors),
    )


# ---------------------------------------------------------------------------
# bibtexparser loader
# ---------------------------------------------------------------------------


def load_with_bibtexparser(text: str) -> ScanResult:
    try:
        import bibtexparser
        from bibtexparser.bparser import BibTexParser
    except ImportError as exc:
        raise RuntimeError(
            "bibtexparser is required. Install with: pip install bibtexparser"
        ) from exc

    parser = BibTexParser(common_strings=True)
    parser.ignore_nonstandard_types = False
    parser.homogenize_fields = False

    bib_db = bibtexparser.loads(text, parser=parser)
    result = ScanResult()
    for raw in bib_db.entries:
        kind = (raw.get("ENTRYTYPE") or "").lower().strip()
        key = (raw.get("ID") or "").strip()
        if not kind or not key:
            result.errors.append(f"Entry without key (@{kind or '?'})")
            continue
        fields = {
            name.lower(): str(value).strip()
            for name, value in raw.items()
            if name not in {"ENTRYTYPE", "ID"} and value is not None
        }
        result.records.append(Record(kind=kind, key=key, raw=rebuild_entry(kind, key, fields)))
    return result


def deduplicate_records(records: List[Record], sort_by_key: bool = False, smart_dedup: bool = False) -> DeduplicationResult:
    text = "\n\n".join(record.raw for record in records)
    return deduplicate(text, sort_by_key=sort_by_key, smart_dedup=smart_dedup)


# ---------------------------------------------------------------------------
# Rendering and reports
# ---------------------------------------------------------------------------


def render_deduplicated(
    result: DeduplicationResult,
    records: Mapping[str, Record],
    month_style: MonthStyle = MonthStyle.KEEP_ORIGINAL,
) -> str:
    lines = [
        f"% Total entries parsed: {result.total}",
        f"% Unique kept: {result.unique}",
        f"% Duplicates removed: {result.duplicates}",
        f"% Parse issues: {result.parse_errors}",
    ]
    if month_style != MonthStyle.KEEP_ORIGINAL:
        lines.append(f"% Month style: {month_style.name}")
    lines.append("% " + "=" * 50)
    blocks = ["\n".join(lines)]
    blocks.extend(record.raw for record in records.values())
    return "\n\n".join(blocks).strip() + "\n"


def format_summary(
    result: DeduplicationResult,
    sort_by_key: bool,
    smart_dedup: bool,
    mode: str = "safe",
    month_style: MonthStyle = MonthStyle.KEEP_ORIGINAL,
) -> str:
    lines = [
        "Unique LaTeX References - Summary",
        "",
        f"Total entries: {result.total}",
        f"Unique entries: {result.unique}",
        f"Duplicates removed: {result.duplicates}",
        f"Parse errors: {result.parse_errors}",
        f"Sort by key: {str(sort_by_key).lower()}",
        f"Smart dedupe: {str(smart_dedup).lower()}",
        f"Verification mode: {mode}",
        f"Month style: {month_style.value}",
    ]
    return "\n".join(lines) + "\n"


def format_duplicates_report(result: DeduplicationResult) -> str:
    lines = [
        "Unique LaTeX References - Duplicates Report",
        "",
        f"Total duplicates removed: {result.duplicates}",
        "",
    ]
    for dup in result.duplicate_log:
        lines.append(f"- dropped={dup.dropped_key} kept={dup.kept_key} reason={dup.reason.value}")
    return "\n".join(lines) + "\n"


def shorten_value(value: str, limit: int = 160) -> str:
    text = value.replace("\n", " ").strip()
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def prompt_path(prompt: str) -> str:
    while True:
        value = input(prompt).strip()
        if value:
            return value


def ensure_bib_extension(path: str) -> str:
    if path.lower().endswith(".bib"):
        return path
    return f"{path}.bib"


def resolve_existing_bib_path(initial: Optional[str]) -> str:
    if initial:
        candidate = initial.strip()
        if os.path.isfile(candidate):
            return candidate
        candidate = ensure_bib_extension(candidate)
        if os.path.isfile(candidate):
            return candidate
        print(f"Not found: {candidate}")
        if not sys.stdin.isatty():
            raise SystemExit(1)
    while True:
        value = prompt_path("Input .bib path (extension optional): ")
        candidate = ensure_bib_extension(value)
        if os.path.isfile(candidate):
            return candidate
        print(f"Not found: {candidate}")


def derive_default_path(input_path: str, suffix: str) -> str:
    base = os.path.splitext(os.path.basename(input_path))[0]
    dir_path = os.path.dirname(input_path) or "."
    return os.path.join(dir_path, f"{base}{suffix}")
