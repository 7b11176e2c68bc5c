"""
Manual Reader Tool
Extracts raw text from an uploaded lab manual PDF so it can be stored as an
admin reference for report generation.
"""
from pathlib import Path
from typing import BinaryIO, Union

try:
    from PyPDF2 import PdfReader
except ImportError:
    try:
        import pypdf
        PdfReader = pypdf.PdfReader
    except ImportError:
        raise ImportError("PyPDF2 or pypdf is required. Install with: pip install pypdf")


# References are prompt context, keep them to a sensible size
MAX_REFERENCE_CHARS = 20000


class ManualReadError(Exception):
    """The PDF could not be read or contained no text"""


def read_manual_text(source: Union[str, Path, BinaryIO], max_chars: int = MAX_REFERENCE_CHARS) -> str:
    """
    Extract the text of every page.

    Args:
        source: path to the PDF or an open binary stream
        max_chars: truncate the joined text to this many characters

    Returns:
        The page texts joined with newlines

    Raises:
        ManualReadError: missing file, unreadable PDF or no extractable text
    """
    if isinstance(source, (str, Path)) and not Path(source).exists():
        raise ManualReadError(f"PDF file not found: {source}")

    try:
        reader = PdfReader(source if not isinstance(source, Path) else str(source))
        text_parts = []
        for page in reader.pages:
            text = page.extract_text()
            if text:
                text_parts.append(text)
    except Exception as e:
        raise ManualReadError(f"Error reading PDF: {e}") from e

    raw_text = "\n".join(text_parts).strip()
    if not raw_text:
        raise ManualReadError("PDF appears to be empty or could not extract text")
    return raw_text[:max_chars]
