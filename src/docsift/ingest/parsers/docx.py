"""DOCX file parser."""

from pathlib import Path

from ...models import ParsedFile


class DocxParser:
    """Parse DOCX files using python-docx."""

    def parse(self, file_path: Path) -> ParsedFile:
        from docx import Document as DocxDocument

        doc = DocxDocument(str(file_path))
        content = "\n\n".join(p.text for p in doc.paragraphs if p.text.strip())
        title = doc.core_properties.title or file_path.stem
        return ParsedFile(content=content, title=title, source_type="docx")
