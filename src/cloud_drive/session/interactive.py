"""Interactive capabilities used by the authorization-code flow."""

from __future__ import annotations

import logging
import webbrowser
from typing import Protocol

logger = logging.getLogger(__name__)

REDIRECT_PROMPT = "Paste the response url: "


class InteractiveAuth(Protocol):
    """Shows the authorization page to the user and reads back the redirect URL."""

    def open(self, url: str) -> None: ...

    def read_line(self) -> str: ...


class ConsoleInteractiveAuth:
    """Opens the system browser and reads the pasted redirect URL from stdin."""

    def __init__(self, prompt: str = REDIRECT_PROMPT) -> None:
        self._prompt = prompt

    def open(self, url: str) -> None:
        """Open ``url`` in the system browser, logging it when no browser starts."""
        if not webbrowser.open(url):
            logger.warning("[open] could not launch a browser; open this URL manually: %s", url)

    def read_line(self) -> str:
        """Read the pasted redirect URL from stdin."""
        return input(self._prompt)
