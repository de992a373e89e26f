"""One parsed document shared by every strategy of a single extraction."""

from __future__ import annotations

from functools import cached_property

from bs4 import BeautifulSoup


class Page:
    def __init__(self, html: str | bytes | None, base_url: str) -> None:
        if isinstance(html, bytes):
            html = html.decode("utf-8", errors="replace")
        self.html: str = html or ""
        self.base_url = base_url

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "lxml")
