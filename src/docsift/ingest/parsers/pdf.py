"""PDF file parser."""

import re
from pathlib import Path

from ...models import ParsedFile

_STRUCTURAL_LINE = re.compile(
    r"^(?:\d{2}:\d{2}(?::\d{2})?$"  # timestamp
    r"|#{1,6}\s"  # markdown header
    r"|[-*•]\s"  # list item
    r"|\d+(?:\.\d+)*\.?\s+[A-Z])"  # numbered clause heading
)


class PdfParser:
    """Parse PDF files using pypdf."""

    def parse(self, file_path: Path) -> ParsedFile:
        from pypdf import PdfReader

        reader = PdfReader(str(file_path))
        pages = [self._clean_page(text) for text in (p.extract_text() for p in reader.pages) if text]

        title = file_path.stem
        meta = reader.metadata
        if meta and meta.title:
            t = meta.title.strip()
            # Generators often stuff JSON or multi-line junk into the title field
            if t and not t.startswith(("{", "[")) and len(t) < 200 and "\n" not in t:
                title = t

        return ParsedFile(
            content="\n\n".join(pages),
            title=title,
            source_type="pdf",
            metadata={"page_count": len(reader.pages)},
        )

    @staticmethod
    def _clean_page(text: str) -> str:
        """Rejoin hard-wrapped lines into paragraphs.

        Blank lines stay paragraph breaks; structural lines (headings, list
        items, timestamps) start a paragraph of their own.
        """
        paragraphs: list[str] = []
        current: list[str] = []

        for line in text.split("\n"):
            stripped = line.strip()
            if not stripped:
                if current:
                    paragraphs.append(" ".join(current))
                    current = []
                continue
            if _STRUCTURAL_LINE.match(stripped):
                if current:
                    paragraphs.append(" ".join(current))
                    current = []
                paragraphs.append(stripped)
            else:
                current.append(stripped)

        if current:
            paragraphs.append(" ".join(current))
        return "\n\n".join(paragraphs)
