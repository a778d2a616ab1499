import base64
from typing import Union

import fitz  # PyMuPDF

from .errors import ExtractionError
from .utils import json_log


PDF_MIME_TYPE = "application/pdf"


def as_bytes(data: Union[bytes, str]) -> bytes:
    """Attachments arrive either as raw bytes or base64 text."""
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)


class PdfExtractor:
    """Single-shot PDF text extraction using PyMuPDF."""

    def extract_text(self, data: Union[bytes, str]) -> str:
        try:
            raw = as_bytes(data)
        except ValueError as e:
            raise ExtractionError("Failed to extract text from PDF") from e
        if not raw:
            raise ExtractionError("Failed to extract text from PDF")

        try:
            doc = fitz.open(stream=raw, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            # fitz.FileDataError / EmptyFileError derive from RuntimeError
            json_log("pdf_open_error", error=str(e), size=len(raw))
            raise ExtractionError("Failed to extract text from PDF") from e

        try:
            if doc.needs_pass:
                json_log("pdf_encrypted", size=len(raw))
                raise ExtractionError("Failed to extract text from PDF")
            return "".join(page.get_text() for page in doc)
        except RuntimeError as e:
            json_log("pdf_extract_error", error=str(e), size=len(raw))
            raise ExtractionError("Failed to extract text from PDF") from e
        finally:
            doc.close()
