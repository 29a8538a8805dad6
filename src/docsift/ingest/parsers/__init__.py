"""Text extraction for supported source file formats."""

from pathlib import Path

from ...models import ParsedFile
from .docx import DocxParser
from .html import HtmlParser
from .markdown import MarkdownParser
from .pdf import PdfParser
from .text import TextParser

PARSERS = {
    ".md": MarkdownParser,
    ".markdown": MarkdownParser,
    ".txt": TextParser,
    ".text": TextParser,
    ".html": HtmlParser,
    ".htm": HtmlParser,
    ".pdf": PdfParser,
    ".docx": DocxParser,
}


def parse_file(file_path: Path) -> ParsedFile | None:
    """Extract text from a file, or None when the format is unsupported."""
    parser_cls = PARSERS.get(file_path.suffix.lower())
    if parser_cls is None:
        return None
    return parser_cls().parse(file_path)


__all__ = ["PARSERS", "parse_file", "MarkdownParser", "TextParser", "HtmlParser", "PdfParser", "DocxParser"]
