"""
ecmc_registration_organizer.py

Reads the form-submission notification emails (participants and volunteers)
and writes:
  out/
    participants-<event>.csv
    volunteers-<event>.csv
    volunteer-emails-<event>.txt
    participant-emails-<event>.txt
    all-emails-<event>.txt

Then prints the participant race numbers and the roster sizes.

Usage examples:
  python ecmc_registration_organizer.py
  python ecmc_registration_organizer.py --input-dir ./ecmc-form-submissions --out-dir ./out --event ecmc24

Requirements:
  pip install beautifulsoup4 pandas
"""

from __future__ import annotations
import argparse
import logging
import os
import quopri
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from bs4 import BeautifulSoup, NavigableString, ParserRejectedMarkup, Tag
from bs4.element import PreformattedString
from ecmc_config import (
    INPUT_DIR_DEFAULT,
    OUT_DIR_DEFAULT,
    EVENT_TAG_DEFAULT,
    PARTICIPANTS_CSV_TEMPLATE,
    VOLUNTEERS_CSV_TEMPLATE,
    VOLUNTEER_EMAILS_TEMPLATE,
    PARTICIPANT_EMAILS_TEMPLATE,
    ALL_EMAILS_TEMPLATE,
    SENTINEL_TEXT,
    BOLD_TAG,
    SPAN_TAG,
    VOLUNTEER_SUBJECT_MARKER,
    PARTICIPANT_COLUMNS,
    VOLUNTEER_COLUMNS,
    POLICY_SKIP,
    POLICY_FAIL,
    ON_HTML_ERROR_DEFAULT,
    ON_DECODE_ERROR_DEFAULT,
    output_path,
)

log = logging.getLogger("ecmc")

PARTICIPANT = "participant"
VOLUNTEER = "volunteer"

# e.g. '2024-03-01 14:30:00 +0000 UTC'
REGISTERED_AT_FORMAT = "%Y-%m-%d %H:%M:%S %z %Z"

# ------------------------- Errors --------------------------------------

class RosterError(Exception):
    """Base class for every failure the organizer reports."""


class InputDirectoryError(RosterError):
    """Raised when the submissions directory cannot be listed."""


class OutputSetupError(RosterError):
    """Raised when the output directory or an output file cannot be written."""


class MessageParseError(RosterError):
    """Raised when a message file or one of its required headers is unusable."""


class HtmlExtractionError(RosterError):
    """Raised when the HTML parser rejects a message body."""


class ShapeMismatchError(RosterError):
    """Raised when a form has fewer fields than its layout requires."""


class TextDecodeError(RosterError):
    """Raised when a quoted-printable field cannot be decoded."""

# ------------------------- Models --------------------------------------

@dataclass(frozen=True)
class Registrant:
    registered_at: datetime
    kind: str
    name: str
    email: str
    category: str
    pronouns: str
    message: str
    city_or_team: str
    race_number: str
    arrival: str
    departure: str

    def as_row(self) -> Dict[str, str]:
        """
        CSV row keyed by column header. Volunteers' CSV simply never
        selects the 'racenumber' column.
        """
        return {
            "name": self.name,
            "email": self.email,
            "category": self.category,
            "pronouns": self.pronouns,
            "racenumber": self.race_number,
            "city/team": self.city_or_team,
            "arrival": self.arrival,
            "departure": self.departure,
            "registered_at": self.registered_at.strftime(REGISTERED_AT_FORMAT),
            "message": self.message,
        }


@dataclass(frozen=True)
class FormMessage:
    source: str
    subject: str
    reply_to: str
    sent_at: datetime  # UTC
    html: Optional[str]


@dataclass(frozen=True)
class FormLayout:
    """
    Positional layout of one form's cleaned values.

    `required` lists (field, index) pairs that must be present; arrival and
    departure are read only when their index exists.
    """
    kind: str
    required: Tuple[Tuple[str, int], ...]
    arrival_index: int
    departure_index: int
    decoded: Tuple[str, ...] = ("name", "message")

    @property
    def min_length(self) -> int:
        return max(idx for _, idx in self.required) + 1


# Index 1 is the form's "confirm email" answer; the address comes from Reply-To
VOLUNTEER_LAYOUT = FormLayout(
    kind=VOLUNTEER,
    required=(
        ("name", 0),
        ("category", 2),
        ("pronouns", 3),
        ("message", 4),
        ("city_or_team", 5),
    ),
    arrival_index=6,
    departure_index=7,
)

PARTICIPANT_LAYOUT = FormLayout(
    kind=PARTICIPANT,
    required=(
        ("name", 0),
        ("category", 2),
        ("pronouns", 3),
        ("message", 4),
        ("city_or_team", 5),
        ("race_number", 6),
    ),
    arrival_index=7,
    departure_index=8,
)

LAYOUTS: Dict[str, FormLayout] = {
    VOLUNTEER: VOLUNTEER_LAYOUT,
    PARTICIPANT: PARTICIPANT_LAYOUT,
}

# ------------------------- Helpers -------------------------------------

# Soft line break, or a trailing '=' left behind once the value was trimmed
SOFT_BREAK_RE = re.compile(r"=(?:\r?\n|\Z)")


def decode_text(text: str) -> str:
    """
    Undo the quoted-printable encoding the form vendor applies to free-text
    answers, e.g. 'Caf=C3=A9 au=\\nlait' -> 'Café aulait'.

    An '=' that does not start a hex escape is kept as a literal '='.
    Raises TextDecodeError when the decoded bytes are not UTF-8.
    """
    unwrapped = SOFT_BREAK_RE.sub("", text)
    raw = quopri.decodestring(unwrapped.encode("utf-8"))
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise TextDecodeError(f"decoded bytes are not valid UTF-8: {e}") from e


def clean_line(line: str) -> str:
    """
    'Arrival: 10:30 ' -> '10:30'. Everything up to the first colon is the
    label; a line without a colon carries no value.
    """
    _, sep, value = line.partition(":")
    if not sep:
        return ""
    return value.strip()


def classify_subject(subject: str) -> str:
    return VOLUNTEER if VOLUNTEER_SUBJECT_MARKER in (subject or "") else PARTICIPANT


def deduplicate(values: Iterable[str]) -> List[str]:
    """Drop repeats, keeping the first occurrence of each value in order."""
    return list(dict.fromkeys(values))


def race_number_key(value: str) -> int:
    # unparseable race numbers sort as 0
    try:
        return int(value)
    except ValueError:
        return 0

# ------------------------- Parsing the HTML body -------------------------

def _is_text_node(node) -> bool:
    # comments, doctypes and CDATA are NavigableStrings too, but not text
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


def span_sibling_text(tag: Tag) -> Optional[str]:
    """
    Text of the first <span> among the tag's following siblings, or None.
    """
    span = tag.find_next_sibling(SPAN_TAG)
    if span is None:
        return None
    return span.get_text()


def walk_labels(node) -> Tuple[List[str], bool]:
    """
    Pre-order walk collecting '<bold text> <span text>' for every bold
    element that has a span sibling.

    Returns (labels, stopped). `stopped` is True once a text node starting
    with the sentinel footer was reached; callers must not visit anything
    after that point.
    """
    if _is_text_node(node):
        return [], str(node).strip().startswith(SENTINEL_TEXT)
    if not isinstance(node, Tag):
        return [], False

    labels: List[str] = []
    if node.name == BOLD_TAG:
        span_text = span_sibling_text(node)
        if span_text is not None:
            labels.append(f"{node.get_text()} {span_text}")

    for child in node.children:
        found, stopped = walk_labels(child)
        labels.extend(found)
        if stopped:
            return labels, True
    return labels, False


def extract_labels(html: Optional[str], source: str = "<message>") -> List[str]:
    """
    Ordered 'Label: value' strings from a notification's HTML body.

    A message without an HTML part yields no pairs; the shape check then
    stops the run for it.
    """
    if html is None:
        log.warning(f"[{source}] message has no HTML part")
        return []
    try:
        soup = BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup as e:
        raise HtmlExtractionError(f"{source}: HTML body rejected by parser: {e}") from e

    labels, stopped = walk_labels(soup)
    if not stopped:
        log.debug(f"[{source}] no '{SENTINEL_TEXT}' footer; read the whole body")
    log.debug(f"[{source}] extracted {len(labels)} label/value pair(s)")
    return labels

# ------------------------- Mapping values to records -------------------------

def validate_shape(values: Sequence[str], layout: FormLayout, source: str = "<message>") -> None:
    if len(values) >= layout.min_length:
        return
    field, idx = next((f, i) for f, i in layout.required if i >= len(values))
    raise ShapeMismatchError(
        f"{source}: {layout.kind} form has {len(values)} field(s), "
        f"expected at least {layout.min_length}; missing '{field}' (index {idx})"
    )


def _optional(values: Sequence[str], idx: int) -> str:
    return values[idx] if idx < len(values) else ""


def _strict_decode(text: str, field: str) -> str:
    return decode_text(text)


def map_record(
    values: Sequence[str],
    layout: FormLayout,
    email: str,
    registered_at: datetime,
    source: str = "<message>",
    decode: Optional[Callable[[str, str], str]] = None,
) -> Registrant:
    """
    Build a Registrant from cleaned positional values.

    `decode(text, field)` is applied to the layout's quoted-printable fields;
    by default it is a strict decode_text.
    """
    validate_shape(values, layout, source)
    if decode is None:
        decode = _strict_decode

    fields = {field: values[idx] for field, idx in layout.required}
    for field in layout.decoded:
        fields[field] = decode(fields[field], field)
    fields.setdefault("race_number", "")

    return Registrant(
        registered_at=registered_at,
        kind=layout.kind,
        email=email,
        arrival=_optional(values, layout.arrival_index),
        departure=_optional(values, layout.departure_index),
        **fields,
    )

# ------------------------- Reading messages -------------------------

def _html_body(msg: EmailMessage) -> Optional[str]:
    part = msg.get_body(preferencelist=("html",))
    if part is None:
        return None
    try:
        return part.get_content()
    except LookupError:
        # unknown charset label; the forms are UTF-8 in practice
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def read_message(path: Path) -> FormMessage:
    """
    Parse one notification file and pull out the headers the rosters need.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            msg = BytesParser(policy=policy.default).parse(f)
    except OSError as e:
        raise MessageParseError(f"{path.name}: cannot read message: {e}") from e

    subject = msg.get("Subject")
    if subject is None:
        raise MessageParseError(f"{path.name}: missing Subject header")

    reply_to = msg.get("Reply-To")
    addresses = getattr(reply_to, "addresses", ()) if reply_to is not None else ()
    if not addresses or not addresses[0].addr_spec:
        raise MessageParseError(f"{path.name}: missing or empty Reply-To header")

    try:
        date_header = msg.get("Date")
    except (TypeError, ValueError) as e:
        raise MessageParseError(f"{path.name}: unparseable Date header: {e}") from e
    sent_at = getattr(date_header, "datetime", None) if date_header is not None else None
    if sent_at is None:
        raise MessageParseError(f"{path.name}: missing or unparseable Date header: {date_header!r}")
    if sent_at.tzinfo is None:
        # '-0000' means "zone unknown"; the value is UTC
        sent_at = sent_at.replace(tzinfo=timezone.utc)

    return FormMessage(
        source=path.name,
        subject=str(subject),
        reply_to=addresses[0].addr_spec,
        sent_at=sent_at.astimezone(timezone.utc),
        html=_html_body(msg),
    )

# ------------------------- Building the rosters -------------------------

class RosterBuilder:
    """
    Runs every submission through parse -> classify -> extract -> clean ->
    map and keeps the two rosters. Stages raise RosterError subclasses; this
    class alone decides whether a failure skips the message or stops the run.
    """

    def __init__(
        self,
        on_html_error: str = ON_HTML_ERROR_DEFAULT,
        on_decode_error: str = ON_DECODE_ERROR_DEFAULT,
    ) -> None:
        for name, value in (("on_html_error", on_html_error), ("on_decode_error", on_decode_error)):
            if value not in (POLICY_SKIP, POLICY_FAIL):
                raise ValueError(f"{name} must be '{POLICY_SKIP}' or '{POLICY_FAIL}', got {value!r}")
        self.on_html_error = on_html_error
        self.on_decode_error = on_decode_error
        self.participants: List[Registrant] = []
        self.volunteers: List[Registrant] = []
        self.skipped: List[str] = []

    def _decoder(self, source: str) -> Callable[[str, str], str]:
        def decode(text: str, field: str) -> str:
            try:
                return decode_text(text)
            except TextDecodeError as e:
                if self.on_decode_error == POLICY_SKIP:
                    log.warning(f"[{source}] could not decode '{field}' ({e}); leaving it empty")
                    return ""
                raise TextDecodeError(f"{source}: field '{field}': {e}") from e
        return decode

    def add_message(self, path: Path) -> Optional[Registrant]:
        """
        Process one file. Returns the new record, or None if it was skipped.
        """
        message = read_message(path)
        kind = classify_subject(message.subject)
        log.debug(f"[{message.source}] subject={message.subject!r} -> {kind}")

        try:
            labels = extract_labels(message.html, source=message.source)
        except HtmlExtractionError as e:
            if self.on_html_error == POLICY_FAIL:
                raise
            log.warning("%s; skipping message", e)
            self.skipped.append(message.source)
            return None

        values = [clean_line(line) for line in labels]
        record = map_record(
            values,
            LAYOUTS[kind],
            email=message.reply_to,
            registered_at=message.sent_at,
            source=message.source,
            decode=self._decoder(message.source),
        )
        if kind == VOLUNTEER:
            self.volunteers.append(record)
        else:
            self.participants.append(record)
        return record

    def build(self, input_dir: Path) -> Tuple[List[Registrant], List[Registrant]]:
        """
        Process every regular file in input_dir, in file-name order.
        Returns (participants, volunteers).
        """
        try:
            with os.scandir(input_dir) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise InputDirectoryError(f"Error opening directory {input_dir}: {e}") from e

        for entry in entries:
            if not entry.is_file(follow_symlinks=False):
                log.debug(f"Skipping non-regular entry: {entry.name}")
                continue
            self.add_message(Path(entry.path))

        log.info(
            f"Read {len(self.participants)} participant(s) and {len(self.volunteers)} "
            f"volunteer(s) from {input_dir} (skipped {len(self.skipped)})"
        )
        return self.participants, self.volunteers

# ------------------------- Export -------------------------

def ensure_out_dir(out_dir: Path) -> None:
    try:
        os.makedirs(out_dir, exist_ok=True)
    except OSError as e:
        raise OutputSetupError(f"creating output directory {out_dir}: {e}") from e
    log.info(f"Output directory '{out_dir}' ready")


def sort_by_registered_at(records: Iterable[Registrant]) -> List[Registrant]:
    return sorted(records, key=lambda r: r.registered_at)


def records_to_df(records: Iterable[Registrant], columns: List[str]) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in records], columns=columns)


def save_roster_csv(records: Sequence[Registrant], columns: List[str], path: Path) -> Path:
    """
    Write one roster; the header row is written even for an empty roster.
    """
    df = records_to_df(records, columns)
    try:
        df.to_csv(path, index=False, lineterminator="\n")
    except OSError as e:
        raise OutputSetupError(f"Couldn't write {path}: {e}") from e
    log.info(f"Wrote {path} (rows={len(df)})")
    return Path(path)


def save_email_list(emails: Sequence[str], path: Path) -> Path:
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(",".join(emails))
    except OSError as e:
        raise OutputSetupError(f"Couldn't write {path}: {e}") from e
    log.info(f"Wrote {path} ({len(emails)} address(es))")
    return Path(path)


def build_email_lists(
    participants: Sequence[Registrant],
    volunteers: Sequence[Registrant],
) -> Dict[str, List[str]]:
    volunteer_emails = deduplicate(v.email for v in volunteers)
    participant_emails = deduplicate(p.email for p in participants)
    return {
        VOLUNTEER_EMAILS_TEMPLATE: volunteer_emails,
        PARTICIPANT_EMAILS_TEMPLATE: participant_emails,
        ALL_EMAILS_TEMPLATE: deduplicate(volunteer_emails + participant_emails),
    }


def export_rosters(
    participants: Sequence[Registrant],
    volunteers: Sequence[Registrant],
    out_dir: Path = OUT_DIR_DEFAULT,
    event: str = EVENT_TAG_DEFAULT,
) -> List[Registrant]:
    """
    Write both CSVs and the three email lists. Returns the participants in
    registration order.
    """
    ensure_out_dir(out_dir)
    participants = sort_by_registered_at(participants)

    log.info("Generating participants CSV")
    save_roster_csv(participants, PARTICIPANT_COLUMNS, output_path(out_dir, PARTICIPANTS_CSV_TEMPLATE, event))
    log.info("Generating volunteers CSV")
    save_roster_csv(volunteers, VOLUNTEER_COLUMNS, output_path(out_dir, VOLUNTEERS_CSV_TEMPLATE, event))

    log.info("Generating email lists")
    for template, emails in build_email_lists(participants, volunteers).items():
        save_email_list(emails, output_path(out_dir, template, event))
    return participants


def print_summary(participants: Sequence[Registrant], volunteers: Sequence[Registrant]) -> None:
    race_numbers = sorted((p.race_number for p in participants), key=race_number_key)
    print(f"Race numbers: {', '.join(race_numbers)}")
    print(f"Number of participants: {len(participants)}")
    print(f"Number of volunteers: {len(volunteers)}")

# ------------------------- Main -------------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ECMC registration roster organizer")

    parser.add_argument(
        "--input-dir",
        type=Path,
        default=INPUT_DIR_DEFAULT,
        help=f"Directory with one form-notification email per file (default: {INPUT_DIR_DEFAULT})",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=OUT_DIR_DEFAULT,
        help=f"Where the CSVs and email lists are written (default: {OUT_DIR_DEFAULT})",
    )
    parser.add_argument(
        "--event",
        default=EVENT_TAG_DEFAULT,
        help=f"Event tag used in output file names (default: '{EVENT_TAG_DEFAULT}')",
    )

    # Failure policies
    parser.add_argument(
        "--on-html-error",
        choices=(POLICY_SKIP, POLICY_FAIL),
        default=ON_HTML_ERROR_DEFAULT,
        help=f"Skip or stop on a message without a usable HTML body (default: {ON_HTML_ERROR_DEFAULT})",
    )
    parser.add_argument(
        "--on-decode-error",
        choices=(POLICY_SKIP, POLICY_FAIL),
        default=ON_DECODE_ERROR_DEFAULT,
        help=f"Blank the field or stop on a bad quoted-printable value (default: {ON_DECODE_ERROR_DEFAULT})",
    )

    # Logging
    g = parser.add_mutually_exclusive_group()
    g.add_argument("--verbose", action="store_true", help="Verbose (DEBUG) logging")
    g.add_argument("--quiet", action="store_true", help="Only warnings and errors")

    args = parser.parse_args(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    if args.quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    log.info(f"Reading submissions from: {args.input_dir}")
    builder = RosterBuilder(on_html_error=args.on_html_error, on_decode_error=args.on_decode_error)
    try:
        participants, volunteers = builder.build(args.input_dir)
        participants = export_rosters(participants, volunteers, out_dir=args.out_dir, event=args.event)
    except RosterError as e:
        log.error(f"{e}; no further output written.")
        return 1

    print_summary(participants, volunteers)
    return 0


if __name__ == "__main__":
    sys.exit(main())
