"""
Portal -> page parser table.

The table is built explicitly by the caller (CLI, tests) and passed where
needed; nothing registers itself at import time.
"""

from __future__ import annotations

from typing import Callable

from nfce.errors import UnsupportedPortalError
from nfce.extraction import parse_nfe_tab
from nfce.models import Portal, Receipt

ParserFunc = Callable[[str | bytes], Receipt]


def build_parser_table() -> dict[Portal, ParserFunc]:
    """Parsers for every supported portal, keyed by portal."""
    return {
        Portal.BA: parse_nfe_tab,
    }


def parse_from_html(page: str | bytes, portal: str, parsers: dict[Portal, ParserFunc]) -> Receipt:
    """Parse a saved detail page with the parser registered for ``portal``."""
    if not portal:
        raise UnsupportedPortalError("missing portal")
    try:
        key = Portal(portal.upper())
    except ValueError:
        raise UnsupportedPortalError(f"unsupported portal: {portal}") from None

    parser = parsers.get(key)
    if parser is None:
        raise UnsupportedPortalError(f"unsupported portal: {portal}")
    return parser(page)
