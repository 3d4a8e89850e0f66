# preflight/extraction.py
"""
PDF text extraction:
 - validate the bytes look like a PDF before handing them to pypdf
 - extract text page by page; a page that fails is logged and kept as ""
   so page numbering is preserved
 - anything pypdf cannot open (corrupt, truncated, encrypted) is an ExtractionError

Runs synchronously; callers on the event loop wrap it in asyncio.to_thread.
"""
import io
import logging
from dataclasses import dataclass
from typing import List, Tuple

from pypdf import PdfReader

from preflight.errors import ExtractionError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"
# pdf headers may be preceded by a little garbage; readers accept it within the first 1KB
HEADER_SEARCH_BYTES = 1024


@dataclass
class ExtractedDocument:
    text: str
    page_count: int
    pages: List[str]


def _clean(text: str) -> str:
    # postgres text columns reject NUL
    return text.replace("\x00", "").strip()


def extract_pages(data: bytes) -> List[Tuple[int, str]]:
    """
    Extract text by page. Returns list of tuples (page_number (1-based), text).
    """
    if not data:
        raise ExtractionError("File is empty")
    if PDF_MAGIC not in data[:HEADER_SEARCH_BYTES]:
        raise ExtractionError("File is not a valid PDF")

    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            try:
                reader.decrypt("")
            except Exception as e:
                raise ExtractionError("PDF is password protected") from e
        pages = list(reader.pages)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to process PDF: {e}") from e

    pages_text = []
    for i, page in enumerate(pages):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            logger.warning("Failed to extract text from page %s: %s", i + 1, e)
            text = ""
        pages_text.append((i + 1, _clean(text)))
    return pages_text


class PdfTextExtractor:
    """Turns stored PDF bytes into the text the analysis steps consume."""

    page_separator = "\n\n"

    def extract(self, data: bytes) -> ExtractedDocument:
        logger.info("Extracting text from PDF (%d bytes)", len(data or b""))
        pages = extract_pages(data)
        if not pages:
            raise ExtractionError("PDF has no pages")

        texts = [text for _, text in pages]
        full_text = self.page_separator.join(t for t in texts if t)
        if not full_text:
            raise ExtractionError("No extractable text found in PDF (is it a scanned image?)")

        logger.info("Extracted %d characters from %d page(s)", len(full_text), len(pages))
        return ExtractedDocument(text=full_text, page_count=len(pages), pages=texts)
