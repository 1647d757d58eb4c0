"""
Page Navigation

The session logic runs once per page load and needs three things from the page it runs
in: the current URL, a way to leave the page, and a way to tell the visitor something.

Leaving the page is terminal. ``Navigator.navigate`` never returns; it raises
``Navigation`` which unwinds the current flow. The web layer turns that exception into
an HTTP redirect (see ``net.ibremote.app.server.navigation_middleware``).
"""

import logging
from typing import Dict, List, NoReturn, Optional
from urllib.parse import parse_qsl, urlparse

logger = logging.getLogger(__name__)


class Navigation(Exception):
    """Raised to leave the current page for ``location``."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


class Navigator:
    """
    The page's view of its own URL.

    Attributes:
        url: The URL the page was loaded with
        replaced_url: URL recorded by ``replace_url``, the clean URL the page should show
        notices: Messages raised with ``alert``, in order
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.replaced_url: Optional[str] = None
        self.notices: List[str] = []

    @property
    def query(self) -> Dict[str, str]:
        # First value wins when a parameter is repeated.
        query: Dict[str, str] = {}
        for key, value in parse_qsl(urlparse(self.url).query, keep_blank_values=True):
            query.setdefault(key, value)
        return query

    def navigate(self, location: str) -> NoReturn:
        logger.debug("Navigating to %s", location)
        raise Navigation(location)

    def replace_url(self, location: str) -> None:
        self.replaced_url = location

    def alert(self, message: str) -> None:
        logger.info("Notice: %s", message)
        self.notices.append(message)
