"""
ASP.NET web-forms postback state.

Every page the portal renders carries hidden inputs (__VIEWSTATE and
friends) that must be echoed back on the next POST. ``decode`` reads them
from a page, ``encode`` merges them with the fields of the next step.
"""

from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup

from nfce.errors import FormStateError

VIEWSTATE = "__VIEWSTATE"
VIEWSTATE_GENERATOR = "__VIEWSTATEGENERATOR"
EVENT_VALIDATION = "__EVENTVALIDATION"
LAST_FOCUS = "__LASTFOCUS"
EVENT_TARGET = "__EVENTTARGET"
EVENT_ARGUMENT = "__EVENTARGUMENT"


@dataclass(frozen=True)
class FormState:
    view_state: str = ""
    view_state_generator: str = ""
    event_validation: str = ""
    last_focus: str = ""
    event_target: str = ""
    event_argument: str = ""

    @property
    def is_valid(self) -> bool:
        return self.view_state != ""


def _soup(page: str | bytes) -> BeautifulSoup:
    if not page or not page.strip():
        raise FormStateError("empty page")
    return BeautifulSoup(page, "html.parser")


def decode(page: str | bytes) -> FormState:
    """Read the hidden postback fields from a rendered page.

    Missing fields decode as "". Check ``is_valid`` before submitting.
    """
    soup = _soup(page)

    def field(name: str) -> str:
        inp = soup.find("input", attrs={"name": name})
        if inp is None:
            return ""
        return inp.get("value", "") or ""

    return FormState(
        view_state=field(VIEWSTATE),
        view_state_generator=field(VIEWSTATE_GENERATOR),
        event_validation=field(EVENT_VALIDATION),
        last_focus=field(LAST_FOCUS),
        event_target=field(EVENT_TARGET),
        event_argument=field(EVENT_ARGUMENT),
    )


def encode(state: FormState, extra_fields: dict[str, str] | None = None) -> dict[str, str]:
    """Build the POST body for the next step.

    The three event fields are always sent, even when empty; the portal
    rejects postbacks that omit them. Step fields win over carried tokens.
    """
    values: dict[str, str] = {}
    if state.view_state:
        values[VIEWSTATE] = state.view_state
    if state.view_state_generator:
        values[VIEWSTATE_GENERATOR] = state.view_state_generator
    if state.event_validation:
        values[EVENT_VALIDATION] = state.event_validation
    values[LAST_FOCUS] = state.last_focus
    values[EVENT_TARGET] = state.event_target
    values[EVENT_ARGUMENT] = state.event_argument

    values.update(extra_fields or {})
    return values


def has_element(page: str | bytes, selector: str) -> bool:
    """True if ``selector`` matches at least one element of ``page``."""
    if not page:
        return False
    return BeautifulSoup(page, "html.parser").select_one(selector) is not None
