#!/usr/bin/env python3
"""Turn plain text of a paper (already extracted from a PDF) into BibTeX candidates."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Callable, List, Optional

from bibverify import ReferenceVerifier, VerificationStatus

logger = logging.getLogger(__name__)

REFERENCES_HEADER = re.compile(
    r"^\s*(References|Bibliography|Works\s+Cited|Literature\s+Cited|Citations)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
NEXT_SECTION_HEADER = re.compile(
    r"^\s*(Appendix|Acknowledgments?|About\s+the\s+Authors?|Author\s+Bio|Supplementary)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
BRACKET_REF = re.compile(r"^\s*\[(\d+)\]\s*(.+?)(?=^\s*\[\d+\]|\Z)", re.MULTILINE | re.DOTALL)
DOT_REF = re.compile(r"(?:^|\n)\s*(\d{1,3})\.\s+(.+?)(?=\n\s*\d{1,3}\.\s|\Z)", re.DOTALL)
PLAIN_REF = re.compile(
    r"(?:^|\n)\s*(\d{1,3})\.?\s+([A-Z][a-zA-Z]+[^\n]*(?:\n(?!\s*\d{1,3}\.?\s+[A-Z])[^\n]*)*)",
    re.MULTILINE,
)
BLANK_LINES = re.compile(r"\n\s*\n+")
DOI_PATTERN = re.compile(r"(?:doi[:\s]*|https?://(?:dx\.)?doi\.org/)?(10\.\d{4,}/\S+)", re.IGNORECASE)
YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")
TITLE_PATTERN = re.compile(
    "[“”\"‘’']([^“”\"‘’']+)[“”\"‘’']"
    r"|(?:\d{4}[a-z]?[.,]?\s*)([^.]+\.)"
)
NUMBERED_START = re.compile(r"^\d{1,3}\.?\s+[A-Z][a-z]+")
AUTHOR_START = re.compile(r"^[A-Z][a-z]+\s+[A-Z]{1,2}[,.]?\s|^[A-Z][a-z]+,\s+[A-Z]")
KEY_AUTHOR = re.compile(r"^([A-Z][a-z]+)")

MISSING_SECTION_MESSAGE = "Could not locate references section in the document."
OUTPUT_HEADER = "% References extracted from PDF\n% Generated by Unique LaTeX References\n\n"
BIBTEX_ESCAPES = [
    ("&", "\\&"),
    ("%", "\\%"),
    ("$", "\\$"),
    ("#", "\\#"),
    ("_", "\\_"),
    ("{", "\\{"),
    ("}", "\\}"),
    ("~", "\\~{}"),
    ("^", "\\^{}"),
]


@dataclass(frozen=True)
class Candidate:
    number: int
    text: str
    doi: Optional[str] = None
    year: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class ExtractedReference:
    number: int
    text: str
    entry: str
    verified: bool
    message: str


@dataclass
class ExtractionResult:
    references: List[ExtractedReference] = field(default_factory=list)
    bibtex: str = ""
    total_found: int = 0
    converted: int = 0
    verification_errors: int = 0
    messages: List[str] = field(default_factory=list)


def collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def find_references_section(text: str) -> Optional[str]:
    header = REFERENCES_HEADER.search(text)
    if header:
        start = header.end()
        following = NEXT_SECTION_HEADER.search(text, start)
        end = following.start() if following else len(text)
        return text[start:end].strip()

    tail = text[len(text) * 2 // 3 :]
    hits = 0
    for _ in BRACKET_REF.finditer(tail):
        hits += 1
        if hits >= 3:
            return tail
    return None


def parse_candidate(number: int, text: str) -> Candidate:
    clean = collapse(text)

    doi = None
    doi_match = DOI_PATTERN.search(clean)
    if doi_match:
        doi = re.sub(r"[.,;:\s]+$", "", doi_match.group(1))

    year_match = YEAR_PATTERN.search(clean)
    year = year_match.group(0) if year_match else None

    title = None
    title_match = TITLE_PATTERN.search(clean)
    if title_match:
        title = title_match.group(1) or title_match.group(2)
        if title:
            title = re.sub(r"\.$", "", title.strip())
    if title:
        title = re.sub(r"^[)\]}>.,;:\s]+", "", title).strip()
    return Candidate(number, clean, doi, year, title or None)


def split_bracketed(section: str) -> List[Candidate]:
    candidates = []
    for match in BRACKET_REF.finditer(section):
        body = match.group(2).strip()
        if len(body) > 20:
            candidates.append(parse_candidate(int(match.group(1)), body))
    return candidates


def split_dotted(section: str) -> List[Candidate]:
    candidates = []
    for match in DOT_REF.finditer(section):
        body = collapse(match.group(2))
        if len(body) > 30:
            candidates.append(parse_candidate(int(match.group(1)), body))
    return candidates


def split_plain_numbered(section: str) -> List[Candidate]:
    candidates = []
    for match in PLAIN_REF.finditer(section):
        body = collapse(match.group(2))
        if len(body) > 30:
            candidates.append(parse_candidate(int(match.group(1)), body))
    return candidates


def split_blank_lines(section: str) -> List[Candidate]:
    candidates = []
    for block in BLANK_LINES.split(section):
        body = collapse(block)
        if len(body) > 40 and YEAR_PATTERN.search(body):
            candidates.append(parse_candidate(len(candidates) + 1, body))
    return candidates


def split_author_lines(section: str) -> List[Candidate]:
    candidates: List[Candidate] = []
    current: List[str] = []

    def flush() -> None:
        body = " ".join(current)
        if len(body) > 40:
            candidates.append(parse_candidate(len(candidates) + 1, body))

    for line in section.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        starts_new = bool(NUMBERED_START.match(stripped) or AUTHOR_START.match(stripped))
        if starts_new and len(" ".join(current)) > 40:
            flush()
            current = []
        current.append(stripped)
    flush()
    return candidates


SPLIT_STRATEGIES: List[tuple] = [
    (split_bracketed, 5),
    (split_dotted, 5),
    (split_plain_numbered, 5),
    (split_blank_lines, 3),
    (split_author_lines, None),
]


def split_candidates(section: str) -> List[Candidate]:
    fallback: List[Candidate] = []
    for strategy, threshold in SPLIT_STRATEGIES:
        found = strategy(section)
        if threshold is not None and len(found) >= threshold:
            return found
        if found and not fallback:
            fallback = found
    return fallback


def escape_bibtex(text: Optional[str]) -> str:
    if text is None:
        return ""
    for plain, escaped in BIBTEX_ESCAPES:
        text = text.replace(plain, escaped)
    return text


def generate_key(candidate: Candidate) -> str:
    author = KEY_AUTHOR.match(candidate.text)
    key = author.group(1).lower() if author else "ref"
    key += candidate.year if candidate.year else str(candidate.number)
    if candidate.title:
        for word in candidate.title.split():
            if len(word) > 4 and word.isascii() and word.isalpha():
                key += word.lower()
                break
    return key


def lookup_entry(candidate: Candidate) -> str:
    lines = [f"@misc{{ref{candidate.number},"]
    if candidate.title:
        lines.append(f"  title = {{{escape_bibtex(candidate.title)}}},")
    if candidate.doi:
        lines.append(f"  doi = {{{candidate.doi}}},")
    if candidate.year:
        lines.append(f"  year = {{{candidate.year}}},")
    lines.append("  note = {Extracted from PDF}")
    lines.append("}")
    return "\n".join(lines)


def basic_entry(candidate: Candidate) -> str:
    title = candidate.title
    if not title:
        title = candidate.text if len(candidate.text) <= 100 else candidate.text[:100] + "..."
    lines = [f"@misc{{{generate_key(candidate)},", f"  title = {{{escape_bibtex(title)}}},"]
    if candidate.year:
        lines.append(f"  year = {{{candidate.year}}},")
    if candidate.doi:
        lines.append(f"  doi = {{{candidate.doi}}},")
    lines.append("  note = {Extracted from PDF - needs manual verification}")
    lines.append("}")
    return "\n".join(lines)


def convert_candidate(candidate: Candidate, verifier: Optional[ReferenceVerifier]) -> ExtractedReference:
    if verifier is None:
        return ExtractedReference(candidate.number, candidate.text, basic_entry(candidate), False, "Not verified")
    if not (candidate.doi or candidate.title):
        return ExtractedReference(
            candidate.number,
            candidate.text,
            basic_entry(candidate),
            False,
            "Could not extract enough information to verify",
        )
    outcome = verifier.verify(lookup_entry(candidate))
    if outcome.status in (VerificationStatus.VERIFIED, VerificationStatus.CORRECTED):
        return ExtractedReference(candidate.number, candidate.text, outcome.corrected, True, outcome.message)
    return ExtractedReference(candidate.number, candidate.text, basic_entry(candidate), False, outcome.message)


def extract_references_from_text(
    text: str,
    verifier: Optional[ReferenceVerifier] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> ExtractionResult:
    result = ExtractionResult()
    section = find_references_section(text or "")
    if not section or not section.strip():
        result.messages.append(MISSING_SECTION_MESSAGE)
        return result
    result.messages.append(f"Found references section ({len(section)} characters)")

    candidates = split_candidates(section)
    result.messages.append(f"Parsed {len(candidates)} raw references")
    if not candidates:
        result.messages.append("No references could be parsed from the section.")
        return result
    result.total_found = len(candidates)

    parts = [OUTPUT_HEADER]
    for index, candidate in enumerate(candidates, start=1):
        if progress:
            progress(index, len(candidates))
        extracted = convert_candidate(candidate, verifier)
        result.references.append(extracted)
        if extracted.verified:
            result.converted += 1
            parts.append(extracted.entry + "\n\n")
        else:
            result.verification_errors += 1
            parts.append("% WARNING: Could not verify this reference\n" + extracted.entry + "\n\n")
    logger.debug("Converted %d of %d candidates", result.converted, result.total_found)

    result.messages.append(f"Successfully converted: {result.converted}")
    result.messages.append(f"Verification errors: {result.verification_errors}")
    result.bibtex = "".join(parts)
    return result
