import pandas as pd
from typing import Dict, List, Tuple
import io
import logging

logger = logging.getLogger(__name__)


class UploadParseError(ValueError):
    """The uploaded file could not be read as a CSV table."""


def process_csv(file_content: bytes) -> Tuple[List[str], List[Dict[str, str]]]:
    """
    Parse an uploaded CSV file into headers and raw string rows.

    Every cell is read as text (no type inference, no NaN conversion) so the
    import pipeline sees exactly what the file contains. Header whitespace
    is stripped and a UTF-8 byte order mark is tolerated.

    Args:
        file_content: CSV file content as bytes

    Returns:
        Tuple of (headers, rows) where each row maps header -> cell text

    Raises:
        UploadParseError: If the file is empty or not parseable as CSV
    """
    if not file_content or not file_content.strip():
        raise UploadParseError("The uploaded file is empty")

    try:
        df = pd.read_csv(
            io.BytesIO(file_content),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError:
        raise UploadParseError("The uploaded file has no header row") from None
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise UploadParseError(f"Could not parse CSV file: {e}") from e

    df.columns = [str(column).strip() for column in df.columns]
    headers = list(df.columns)
    records = df.to_dict('records')

    logger.info(f"Processed CSV upload: {len(records)} rows, columns: {headers}")
    return headers, records
