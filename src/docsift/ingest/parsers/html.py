"""HTML file parser."""

from pathlib import Path

from ...models import ParsedFile


class HtmlParser:
    """Parse HTML files using BeautifulSoup."""

    def parse(self, file_path: Path) -> ParsedFile:
        from bs4 import BeautifulSoup

        soup = BeautifulSoup(file_path.read_text(encoding="utf-8", errors="replace"), "lxml")

        for tag in soup(["script", "style", "nav", "footer", "header"]):
            tag.decompose()

        title = file_path.stem
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        # Block elements on their own lines, blank line between them for paragraph splitting
        content = soup.get_text(separator="\n\n", strip=True)
        return ParsedFile(content=content, title=title, source_type="html")
