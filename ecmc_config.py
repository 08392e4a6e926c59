#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ecmc_config.py
Common configuration for the ECMC registration roster organizer
"""

from __future__ import annotations
from pathlib import Path
from typing import List

# ============================================================
#   EVENT DEFAULTS
# ============================================================

# Short event tag appended to every output file name
#     e.g. participants-ecmc24.csv
EVENT_TAG_DEFAULT: str = "ecmc24"

# ============================================================
#   PROJECT PATHS & FILENAMES
# ============================================================

# Relative to the working directory the organizer is run from.
# One raw message per file, as exported from the mailbox
INPUT_DIR_DEFAULT: Path = Path("ecmc-form-submissions")
OUT_DIR_DEFAULT: Path   = Path("out")

# Output file templates (formatted with event=<tag>)
PARTICIPANTS_CSV_TEMPLATE: str       = "participants-{event}.csv"
VOLUNTEERS_CSV_TEMPLATE: str         = "volunteers-{event}.csv"
VOLUNTEER_EMAILS_TEMPLATE: str       = "volunteer-emails-{event}.txt"
PARTICIPANT_EMAILS_TEMPLATE: str     = "participant-emails-{event}.txt"
ALL_EMAILS_TEMPLATE: str             = "all-emails-{event}.txt"

# ============================================================
#   FORM TEMPLATE MARKERS
# ============================================================

# Footer line of the form vendor's notification; nothing after it is form data
SENTINEL_TEXT: str = "Sent via form submission from"

# The form renders each answer as <b>Label:</b> ... <span>value</span>
BOLD_TAG: str = "b"
SPAN_TAG: str = "span"

# The volunteer form is the vendor's "Form 2"; its subject carries the digit
VOLUNTEER_SUBJECT_MARKER: str = "2"

# ============================================================
#   CSV HEADERS
# ============================================================

PARTICIPANT_COLUMNS: List[str] = [
    "name",
    "email",
    "category",
    "pronouns",
    "racenumber",
    "city/team",
    "arrival",
    "departure",
    "registered_at",
    "message",
]

VOLUNTEER_COLUMNS: List[str] = [
    "name",
    "email",
    "category",
    "pronouns",
    "city/team",
    "arrival",
    "departure",
    "registered_at",
    "message",
]

# ============================================================
#   FAILURE POLICIES
# ============================================================

POLICY_SKIP: str = "skip"
POLICY_FAIL: str = "fail"

# A body the HTML parser rejects only loses that one message
ON_HTML_ERROR_DEFAULT: str   = POLICY_SKIP
# A bad quoted-printable escape stops the run
ON_DECODE_ERROR_DEFAULT: str = POLICY_FAIL


def output_path(out_dir: Path, template: str, event: str) -> Path:
    """
    Build the path of one output file for the given event tag.
    """
    return Path(out_dir) / template.format(event=event)
