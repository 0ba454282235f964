"""
Exception and warning types raised by caschooldata

Every fatal condition raised by the pipeline derives from CaSchoolDataError
so callers can catch the whole family with one clause. DataQualityWarning is
a warning, not an exception: it is emitted through the ``warnings`` module
and attached to returned tables, never raised.

Usage:
    from caschooldata.errors import UnsupportedYear, TransportError

    try:
        df = fetch("enrollment", 1900)
    except UnsupportedYear as e:
        print(e.dataset, e.year)
"""

from typing import Dict, Optional


class CaSchoolDataError(RuntimeError):
    """Base class for all caschooldata failures."""


class UnsupportedYear(CaSchoolDataError, ValueError):
    """No URL or schema mapping is known for this (dataset, year)."""

    def __init__(self, dataset: str, year, message: Optional[str] = None):
        self.dataset = dataset
        self.year = year
        if message is None:
            message = f"No known URL for year {year}, dataset '{dataset}'"
        super().__init__(message)


class TransportError(CaSchoolDataError):
    """Network or timeout failure while fetching a URL. Caller-retryable."""

    def __init__(self, message: str, *, url: Optional[str] = None):
        self.url = url
        self.retryable = True
        super().__init__(message)


class UpstreamRejection(CaSchoolDataError):
    """
    The server answered, but not with the data file we asked for.

    Covers non-success HTTP status codes and success responses whose body
    fails the format signature check (an HTML block page, a truncated file).
    """

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        content_type: Optional[str] = None,
    ):
        self.url = url
        self.status_code = status_code
        self.content_type = content_type
        self.retryable = False
        super().__init__(message)


class ParseError(CaSchoolDataError):
    """Content passed the signature check but could not be read as a table."""

    def __init__(
        self,
        message: str,
        *,
        dataset: Optional[str] = None,
        year=None,
        row: Optional[int] = None,
    ):
        self.dataset = dataset
        self.year = year
        self.row = row
        super().__init__(message)


class SchemaMappingGap(CaSchoolDataError):
    """A column or code in the raw data has no entry in the era mapping."""

    def __init__(self, message: str, *, field: Optional[str] = None, values=None):
        self.field = field
        self.values = sorted(map(str, values)) if values else []
        super().__init__(message)


class MultiYearFetchError(CaSchoolDataError):
    """One or more years of a multi-year fetch failed (strict mode)."""

    def __init__(self, dataset: str, failures: Dict[int, Exception]):
        self.dataset = dataset
        self.failures = dict(failures)
        details = "; ".join(
            f"{year}: {type(exc).__name__}: {exc}" for year, exc in sorted(self.failures.items())
        )
        super().__init__(f"Failed to fetch {dataset} for {len(self.failures)} year(s): {details}")


class DataQualityWarning(UserWarning):
    """Non-fatal data condition (suppression, missing denominator, out of range values)."""
