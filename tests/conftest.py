"""
Pytest configuration and shared fixtures.
"""
import os
import sys
from datetime import datetime, timezone
from email.message import EmailMessage

import pytest
from bs4 import ParserRejectedMarkup

# Add project root to path for imports
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import ecmc_registration_organizer as organizer
from ecmc_registration_organizer import PARTICIPANT, Registrant


VOLUNTEER_PAIRS = [
    ("Name", "Jane Doe"),
    ("Email", "jane@example.com"),
    ("Category", "Runner"),
    ("Pronouns", "she/her"),
    ("Message", "Hi there"),
    ("City or team", "Metro TC"),
]

PARTICIPANT_PAIRS = [
    ("Name", "Sam Park"),
    ("Email", "sam@example.com"),
    ("Category", "Open 40+"),
    ("Pronouns", "they/them"),
    ("Message", "See you=20there"),
    ("City or team", "Lakeside Striders"),
    ("Race number", "42"),
    ("Arrival", "Friday 18:30"),
    ("Departure", "Sunday 12:00"),
]

REJECT_MARKER = "<!-- unparseable -->"


def build_form_html(pairs, footer=True, after_footer=()):
    """Render answers the way the form vendor's notification does."""
    rows = "\n".join(
        f"<tr><td><b>{label}:</b> <span>{value}</span></td></tr>" for label, value in pairs
    )
    tail = ""
    if footer:
        extra = "\n".join(
            f"<p><b>{label}:</b> <span>{value}</span></p>" for label, value in after_footer
        )
        tail = (
            '<p class="footer">Sent via form submission from '
            '<a href="https://example.com">ECMC</a></p>\n' + extra
        )
    return (
        "<html><head><title>Form Submission</title></head><body>\n"
        "<table>\n" + rows + "\n</table>\n" + tail + "\n</body></html>"
    )


@pytest.fixture
def volunteer_pairs():
    """Six answers of the volunteer form, no travel details."""
    return list(VOLUNTEER_PAIRS)


@pytest.fixture
def participant_pairs():
    """All nine answers of the participant form."""
    return list(PARTICIPANT_PAIRS)


@pytest.fixture
def form_html():
    """Factory for notification HTML bodies."""
    return build_form_html


@pytest.fixture
def inbox(tmp_path):
    """Empty submissions directory."""
    path = tmp_path / "ecmc-form-submissions"
    path.mkdir()
    return path


@pytest.fixture
def write_submission(inbox):
    """Factory writing one notification email into the inbox."""

    def _write(
        filename,
        subject="Form Submission - New Form",
        pairs=PARTICIPANT_PAIRS,
        reply_to="Sam Park <sam@example.com>",
        date="Fri, 01 Mar 2024 09:30:00 -0500",
        html=None,
        plain_only=False,
    ):
        msg = EmailMessage()
        msg["From"] = "Forms <no-reply@forms.example.com>"
        msg["To"] = "race-director@example.com"
        if subject is not None:
            msg["Subject"] = subject
        if reply_to is not None:
            msg["Reply-To"] = reply_to
        if date is not None:
            msg["Date"] = date
        if plain_only:
            msg.set_content("\n".join(f"{label}: {value}" for label, value in pairs))
        else:
            msg.set_content(html if html is not None else build_form_html(pairs), subtype="html")
        path = inbox / filename
        path.write_bytes(msg.as_bytes())
        return path

    return _write


@pytest.fixture
def rejecting_parser(monkeypatch):
    """Make the HTML parser reject one marked body; returns that body."""
    real = organizer.BeautifulSoup

    def parse(markup, *args, **kwargs):
        if REJECT_MARKER in markup:
            raise ParserRejectedMarkup("markup rejected")
        return real(markup, *args, **kwargs)

    monkeypatch.setattr(organizer, "BeautifulSoup", parse)
    return f"<html><body>{REJECT_MARKER}</body></html>"


@pytest.fixture
def make_registrant():
    """Factory for Registrant records with overridable fields."""

    def _make(**overrides):
        fields = dict(
            registered_at=datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc),
            kind=PARTICIPANT,
            name="Sam Park",
            email="sam@example.com",
            category="Open 40+",
            pronouns="they/them",
            message="See you there",
            city_or_team="Lakeside Striders",
            race_number="42",
            arrival="Friday 18:30",
            departure="Sunday 12:00",
        )
        fields.update(overrides)
        return Registrant(**fields)

    return _make
