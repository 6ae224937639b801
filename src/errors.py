from __future__ import annotations


class ScrapeError(Exception):
    """Base class for everything the scraper raises on purpose."""


class TransportError(ScrapeError):
    """Network or HTTP failure. Always aborts the run."""


class SelectorError(ScrapeError):
    """A CSS selector could not be compiled."""


class ParseError(ScrapeError):
    """Extracted text did not have the expected shape."""


class FormatError(ParseError):
    """A clock value (hours) could not be read as a number."""


class NotFoundError(ScrapeError):
    """An expected element, attribute or chunk is missing from the page."""


class ConfigError(ScrapeError):
    pass
