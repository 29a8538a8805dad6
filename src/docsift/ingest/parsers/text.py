"""Plain text file parser."""

from pathlib import Path

from ...models import ParsedFile


class TextParser:
    """Parse plain text files."""

    def parse(self, file_path: Path) -> ParsedFile:
        text = file_path.read_text(encoding="utf-8", errors="replace")
        # Normalise Windows line endings so paragraph breaks are recognised
        text = text.replace("\r\n", "\n")
        title = file_path.stem
        first_line = text.split("\n", 1)[0].strip()
        if first_line and len(first_line) < 120:
            title = first_line
        return ParsedFile(content=text, title=title, source_type="text")
