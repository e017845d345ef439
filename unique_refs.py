#!/usr/bin/env python3
"""Remove duplicate BibTeX entries, optionally verify them online, or extract references from text."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Optional, Sequence

import bibcore as bc
import bibsettings
from bibcandidates import extract_references_from_text
from bibsources import HttpFetcher, default_sources
from bibverify import ReferenceVerifier, VerificationMode, VerificationStatus, format_verification_summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deduplicate, verify and extract BibTeX references."
    )
    parser.add_argument("--settings", help="Optional JSON settings file (read, then updated)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    dedup = commands.add_parser("dedup", help="Remove duplicate entries")
    add_dedup_arguments(dedup)

    verify = commands.add_parser("verify", help="Deduplicate, then verify entries online")
    add_dedup_arguments(verify)
    verify.add_argument(
        "--mode",
        choices=[mode.value for mode in VerificationMode],
        help="safe only fills missing fields; aggressive-doi-only may fix a few fields of DOI entries",
    )
    verify.add_argument("--workers", type=int, help="Entries verified in parallel")
    verify.add_argument("--delay", type=float, help="Seconds to wait between entries")
    verify.add_argument("--mailto", help="Contact e-mail sent with API requests")

    extract = commands.add_parser("extract", help="Build BibTeX from the text of a paper")
    extract.add_argument("input", help="Plain-text file (e.g. text extracted from a PDF)")
    extract.add_argument("-o", "--output", help="Path to output .bib file")
    extract.add_argument("--verify", action="store_true", help="Look up each reference online")
    return parser


def add_dedup_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", nargs="?", help="Path to input .bib file (extension optional)")
    parser.add_argument("-o", "--output", help="Path to output .bib file")
    parser.add_argument("--sort-by-key", action="store_true", default=None, help="Sort output by key")
    parser.add_argument(
        "--smart-dedup",
        action="store_true",
        default=None,
        help="Also drop entries whose normalized title (and year) was already seen",
    )
    parser.add_argument(
        "--month-style",
        choices=[style.value for style in bc.MonthStyle],
        help="Rewrite month fields: keep, abbrev (Sep.) or full (September)",
    )
    parser.add_argument("--summary", help="Optional path to write the summary")
    parser.add_argument("--duplicates-report", help="Optional path to write the duplicates report")
    parser.add_argument(
        "--parser",
        choices=["builtin", "bibtexparser"],
        default="builtin",
        help="Entry parser (bibtexparser rewrites entries in canonical layout)",
    )


def pick(value, fallback):
    return fallback if value is None else value


def load_and_deduplicate(text: str, parser: str, sort_by_key: bool, smart_dedup: bool) -> bc.DeduplicationResult:
    if parser == "builtin":
        return bc.deduplicate(text, sort_by_key=sort_by_key, smart_dedup=smart_dedup)
    scanned = bc.load_with_bibtexparser(text)
    result = bc.deduplicate_records(scanned.records, sort_by_key=sort_by_key, smart_dedup=smart_dedup)
    result.errors = scanned.errors + result.errors
    result.parse_errors = len(result.errors)
    return result


def emit_reports(args: argparse.Namespace, result: bc.DeduplicationResult, summary: str) -> None:
    print(summary, end="")
    for error in result.errors:
        print(f"Parse issue: {bc.shorten_value(error)}")
    if args.summary:
        bc.write_text(args.summary, summary)
    report = bc.format_duplicates_report(result)
    if result.duplicate_log:
        print(report, end="")
    if args.duplicates_report:
        bc.write_text(args.duplicates_report, report)


def run_dedup(args: argparse.Namespace, settings: bibsettings.Settings) -> int:
    args.input = bc.resolve_existing_bib_path(args.input)
    if not args.output:
        args.output = bc.derive_default_path(args.input, "_unique.bib")
    sort_by_key = pick(args.sort_by_key, settings.sort_by_key)
    smart_dedup = pick(args.smart_dedup, settings.smart_dedup)
    month_style = bc.MonthStyle(pick(args.month_style, settings.month_style))

    try:
        result = load_and_deduplicate(bc.read_text(args.input), args.parser, sort_by_key, smart_dedup)
    except RuntimeError as exc:
        print(str(exc))
        return 1

    records = bc.normalize_months(result.records, month_style)
    bc.write_text(args.output, bc.render_deduplicated(result, records, month_style))
    summary = bc.format_summary(result, sort_by_key, smart_dedup, settings.mode, month_style)
    emit_reports(args, result, summary)
    print(f"Wrote {result.unique} entries to {args.output}")
    remember(args, settings)
    return 0


def run_verify(args: argparse.Namespace, settings: bibsettings.Settings) -> int:
    args.input = bc.resolve_existing_bib_path(args.input)
    if not args.output:
        args.output = bc.derive_default_path(args.input, "_verified.bib")
    sort_by_key = pick(args.sort_by_key, settings.sort_by_key)
    smart_dedup = pick(args.smart_dedup, settings.smart_dedup)
    month_style = bc.MonthStyle(pick(args.month_style, settings.month_style))
    mode = VerificationMode(pick(args.mode, settings.mode))
    workers = max(1, pick(args.workers, settings.workers))
    delay = max(0.0, pick(args.delay, settings.request_delay))
    mailto = pick(args.mailto, settings.mailto)

    try:
        result = load_and_deduplicate(bc.read_text(args.input), args.parser, sort_by_key, smart_dedup)
    except RuntimeError as exc:
        print(str(exc))
        return 1
    records = list(bc.normalize_months(result.records, month_style).values())

    fetcher = HttpFetcher(timeout=settings.timeout, mailto=mailto)
    verifier = ReferenceVerifier(
        sources=default_sources(fetcher),
        mode=mode,
        month_style=month_style,
        request_delay=delay,
    )

    def progress(index: int, total: int, key: str) -> None:
        print(f"[{index}/{total}] {key}", file=sys.stderr)

    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        run = verifier.verify_all(records, progress=progress, cancel=cancel, workers=workers)
    finally:
        signal.signal(signal.SIGINT, previous)

    pending = [record.raw for record in records[len(run.outcomes):]]
    bc.write_text(args.output, format_verification_summary(run, result.duplicates, pending))

    summary = bc.format_summary(result, sort_by_key, smart_dedup, mode.value, month_style)
    emit_reports(args, result, summary)
    for outcome in run.outcomes:
        if outcome.status != VerificationStatus.VERIFIED:
            print(f"{outcome.key or '?'}: {outcome.status.value} - {outcome.message}")
    counts = run.counts()
    print(
        "Verified: {}  Corrected: {}  Not found: {}  Errors: {}  Skipped: {}".format(
            counts[VerificationStatus.VERIFIED],
            counts[VerificationStatus.CORRECTED],
            counts[VerificationStatus.NOT_FOUND],
            counts[VerificationStatus.ERROR],
            counts[VerificationStatus.SKIPPED],
        )
    )
    if run.cancelled:
        print(f"Cancelled after {len(run.outcomes)} of {run.submitted} entries; the rest were left unchanged.")
    print(f"Wrote {len(records)} entries to {args.output}")
    remember(args, settings)
    return 0


def run_extract(args: argparse.Namespace, settings: bibsettings.Settings) -> int:
    if not os.path.isfile(args.input):
        print(f"Not found: {args.input}")
        return 1
    if not args.output:
        args.output = bc.derive_default_path(args.input, "_extracted.bib")

    verifier: Optional[ReferenceVerifier] = None
    if args.verify:
        fetcher = HttpFetcher(timeout=settings.timeout, mailto=settings.mailto)
        verifier = ReferenceVerifier(
            sources=default_sources(fetcher),
            mode=VerificationMode(settings.mode),
            month_style=bc.MonthStyle(settings.month_style),
            request_delay=settings.request_delay,
        )

    extraction = extract_references_from_text(bc.read_text(args.input), verifier)
    for message in extraction.messages:
        print(message)
    if not extraction.references:
        return 1
    bc.write_text(args.output, extraction.bibtex)
    print(f"Wrote {extraction.total_found} entries to {args.output}")
    remember(args, settings)
    return 0


def remember(args: argparse.Namespace, settings: bibsettings.Settings) -> None:
    if not args.settings:
        return
    bibsettings.add_recent_file(settings, args.input)
    bibsettings.save_settings(settings, args.settings)


COMMANDS = {
    "dedup": run_dedup,
    "verify": run_verify,
    "extract": run_extract,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    settings = bibsettings.apply_env_overrides(bibsettings.load_settings(args.settings))
    return COMMANDS[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
