"""
Format parsers: raw bytes -> untyped (all-text) DataFrame

Every parser reads all cells as strings and disables pandas' NA inference,
so the suppression marker ('*'), blanks and leading zeros in codes arrive in
the normalizer exactly as published.

Supported formats:
    - tab-delimited text (CDE enrollment, latin-1)
    - caret-delimited text (CAASPP research files)
    - fixed-width text (CAASPP ascii files, older extracts)
    - Excel workbooks (graduation, directory)
"""

import io
import logging
import zipfile
from typing import List, Optional, Sequence, Tuple, Union

import pandas as pd

from caschooldata.errors import ParseError

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = 'latin1'


def _read_error(exc: Exception, label: str) -> ParseError:
    row = None
    message = str(exc)
    # pandas reports "Expected N fields in line L, saw M"
    if 'line' in message:
        tail = message.split('line', 1)[1].strip().split(',', 1)[0].strip()
        if tail.isdigit():
            row = int(tail)
    return ParseError(f"Could not parse {label}: {message}", row=row)


def parse_delimited(
    content: Union[bytes, str],
    sep: str,
    encoding: str = DEFAULT_ENCODING,
    names: Optional[List[str]] = None,
    label: str = "delimited file",
) -> pd.DataFrame:
    """
    Parse delimited text with every column kept as text

    Args:
        content: Raw bytes (decoded with ``encoding``) or already-decoded text
        sep: Field separator
        encoding: Byte encoding
        names: Column names when the file has no header row
        label: Description used in error messages

    Returns:
        DataFrame of strings; blanks are '' and suppressed cells are '*'

    Raises:
        ParseError: Wrong field counts, undecodable bytes, or an empty file
    """
    if isinstance(content, bytes):
        try:
            text = content.decode(encoding)
        except UnicodeDecodeError as e:
            raise ParseError(f"Could not decode {label} as {encoding}: {e}") from e
    else:
        text = content

    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=sep,
            dtype=str,
            keep_default_na=False,
            na_values=[],
            header=None if names else 'infer',
            names=names,
            quoting=3,          # csv.QUOTE_NONE; CDE names contain bare quotes
            engine='python' if len(sep) > 1 else 'c',
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError(f"{label} is empty") from e
    except pd.errors.ParserError as e:
        raise _read_error(e, label) from e

    df.columns = [str(c).strip() for c in df.columns]
    logger.debug(f"Parsed {label}: {len(df):,} rows x {len(df.columns)} columns")
    return df


def parse_tsv(content: Union[bytes, str], encoding: str = DEFAULT_ENCODING,
              label: str = "tab-delimited file") -> pd.DataFrame:
    """Parse a CDE tab-delimited text file."""
    return parse_delimited(content, sep='\t', encoding=encoding, label=label)


def parse_caret(content: Union[bytes, str], encoding: str = DEFAULT_ENCODING,
                label: str = "caret-delimited file") -> pd.DataFrame:
    """Parse a CAASPP caret ('^') delimited research file."""
    return parse_delimited(content, sep='^', encoding=encoding, label=label)


def parse_fixed_width(
    content: Union[bytes, str],
    colspecs: Sequence[Tuple[int, int]],
    names: Sequence[str],
    encoding: str = DEFAULT_ENCODING,
    label: str = "fixed-width file",
) -> pd.DataFrame:
    """
    Parse a headerless fixed-width file with caller-supplied layout

    Args:
        content: Raw bytes or decoded text
        colspecs: Half-open (start, end) character offsets for each field
        names: Column names, one per colspec
        encoding: Byte encoding

    Returns:
        DataFrame of stripped strings

    Raises:
        ParseError: Layout/name mismatch or undecodable bytes
    """
    if len(colspecs) != len(names):
        raise ParseError(
            f"{label}: {len(colspecs)} column specs but {len(names)} names"
        )

    if isinstance(content, bytes):
        try:
            text = content.decode(encoding)
        except UnicodeDecodeError as e:
            raise ParseError(f"Could not decode {label} as {encoding}: {e}") from e
    else:
        text = content

    try:
        df = pd.read_fwf(
            io.StringIO(text),
            colspecs=list(colspecs),
            names=list(names),
            header=None,
            dtype=str,
            keep_default_na=False,
            na_values=[],
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError(f"{label} is empty") from e

    for col in df.columns:
        df[col] = df[col].str.strip()
    return df


def parse_excel(
    content: bytes,
    sheet_name: Union[int, str] = 0,
    header: int = 0,
    label: str = "Excel workbook",
) -> pd.DataFrame:
    """
    Parse one worksheet of an .xlsx workbook as text

    Raises:
        ParseError: If the workbook cannot be opened or the sheet is missing
    """
    try:
        df = pd.read_excel(
            io.BytesIO(content),
            sheet_name=sheet_name,
            header=header,
            dtype=str,
            keep_default_na=False,
            na_values=[],
            engine='openpyxl',
        )
    except (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
        raise ParseError(f"Could not read {label}: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    logger.debug(f"Parsed {label}: {len(df):,} rows x {len(df.columns)} columns")
    return df
