"""Markdown file parser."""

import re
from pathlib import Path

import yaml

from ...models import ParsedFile


class MarkdownParser:
    """Parse markdown files; YAML frontmatter becomes document metadata."""

    def parse(self, file_path: Path) -> ParsedFile:
        text = file_path.read_text(encoding="utf-8", errors="replace").replace("\r\n", "\n")
        metadata: dict = {}

        fm_match = re.match(r"^---\s*\n(.*?)\n---\s*\n", text, re.DOTALL)
        if fm_match:
            try:
                fm = yaml.safe_load(fm_match.group(1)) or {}
            except yaml.YAMLError:
                fm = {}
            if isinstance(fm, dict):
                metadata.update(fm)
            content = text[fm_match.end():]
        else:
            content = text

        tags = metadata.get("tags")
        if isinstance(tags, str):
            metadata["tags"] = [t.strip() for t in tags.split(",") if t.strip()]

        title = metadata.get("title")
        if not title:
            title_match = re.search(r"^#\s+(.+)$", content, re.MULTILINE)
            title = title_match.group(1).strip() if title_match else file_path.stem

        return ParsedFile(content=content, title=str(title), source_type="markdown", metadata=metadata)
