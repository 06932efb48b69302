"""Open the authorization URL in the user's default browser."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import webbrowser

from collections.abc import Callable

from ..exceptions import BrowserLaunchError


logger = logging.getLogger("loopauth.auth")

UrlOpener = Callable[[str], object]
"""Callable handing a URL to some handler. A ``False`` return means failure."""


class BrowserLauncher:
    """Hand URLs to the OS default URL handler.

    Fire-and-forget: a successful launch says nothing about whether the
    user completes the login.

    Parameters
    ----------
    opener : callable, optional
        Replacement for :func:`webbrowser.open`, e.g. one that prints the
        URL for headless sessions.
    """

    def __init__(self, opener: UrlOpener | None = None) -> None:
        """Initialize the launcher."""
        self._opener = opener or webbrowser.open

    def open(self, url: str) -> None:
        """Open ``url``.

        Raises
        ------
        BrowserLaunchError
            If the handler raises or reports that nothing was opened.
        """
        try:
            opened = self._opener(url)
        except (webbrowser.Error, OSError) as exc:
            msg = f"Failed to open the system browser: {exc}"
            raise BrowserLaunchError(msg) from exc
        if opened is False:
            msg = "No browser could be launched for the authorization URL"
            raise BrowserLaunchError(msg)
        logger.debug("Opened authorization URL in browser")


def print_url_opener(url: str) -> bool:
    """Opener that prints the URL for the user to open by hand."""
    print(f"Open this URL in your browser to sign in:\n\n  {url}\n", flush=True)
    return True
