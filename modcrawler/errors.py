"""
Error types raised by the crawler
"""

from typing import Optional


class ModCrawlerError(Exception):
    """Base class for all crawler errors"""


class ConfigError(ModCrawlerError):
    """Missing token, invalid query or settings. Aborts a run before any repository is processed."""


class TransientError(ModCrawlerError):
    """Network failure, 5xx or rate limiting that outlasted the retry budget"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PermanentError(ModCrawlerError):
    """4xx other than rate limiting. Never retried."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(PermanentError):
    """The repository or path does not exist"""

    def __init__(self, message: str):
        super().__init__(message, status=404)


class ParseError(ModCrawlerError):
    """Metadata could not be extracted"""

    reason = 'parse_error'


class NoMetadataError(ParseError):
    """No recognizable name, version or heading in the input"""

    reason = 'no_metadata'


class MalformedError(ParseError):
    """Recognized fields were present but none carried a usable value"""

    reason = 'malformed'

    def __init__(self, message: str, problems: Optional[list] = None):
        super().__init__(message)
        self.problems = problems or []


class StoreError(ModCrawlerError):
    """Cache read or write failed for a single entry"""
