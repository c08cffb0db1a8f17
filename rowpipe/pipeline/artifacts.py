"""
Artifact emission.
==================
The core announces artifacts as events; writers decide where they land.
"""
import base64
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..interfaces import IArtifactWriter, IFetcher
from ..utils import render_template, sanitize_filename

_DATA_URL = re.compile(r"^data:([\w/+.\-]+);base64,(.*)$", re.DOTALL)


@dataclass
class ArtifactEvent:
    """One artifact: `content` is text, bytes, a JSON value or an image URL."""
    row: int
    step: int
    type: str  # text | json | image | audio | validation | binary
    filename: str
    content: Any


def output_filename(template: Optional[str], context: Dict[str, Any], row_label: str,
                    step_index: int, extension: str = "") -> str:
    """
    Relative artifact path for a step result. Template placeholders are
    filename-sanitised; a template without an extension gets `extension`.
    """
    if not template:
        return f"output_{row_label}_{step_index + 1}{extension}"
    rendered = render_template(template, context, transform=sanitize_filename)
    if not os.path.splitext(rendered)[1]:
        rendered += extension
    return rendered


class FileSystemArtifactWriter(IArtifactWriter):
    """Writes artifacts under a base directory."""

    def __init__(self, base_dir: str, fetcher: Optional[IFetcher] = None, logger=None):
        self.base_dir = os.path.abspath(base_dir)
        self.fetcher = fetcher
        self.logger = logger
        os.makedirs(self.base_dir, exist_ok=True)

    async def emit(self, event: ArtifactEvent) -> Optional[str]:
        path = os.path.join(self.base_dir, event.filename)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        payload = await self._to_bytes(event)
        with open(path, "wb") as f:
            f.write(payload)
        if self.logger:
            self.logger.artifact_saved(path)
        return path

    async def _to_bytes(self, event: ArtifactEvent) -> bytes:
        content = event.content
        if isinstance(content, bytes):
            return content
        if event.type == "image" and isinstance(content, str):
            match = _DATA_URL.match(content)
            if match:
                return base64.b64decode(match.group(2))
            if content.startswith(("http://", "https://")) and self.fetcher:
                return await self.fetcher.fetch_bytes(content)
        if event.type == "audio" and isinstance(content, str):
            return base64.b64decode(content)
        if isinstance(content, (dict, list)):
            return json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")
        return str(content).encode("utf-8")


@dataclass
class MemoryArtifactWriter(IArtifactWriter):
    """Keeps events in memory; handy for dry runs and tests."""
    events: List[ArtifactEvent] = field(default_factory=list)

    async def emit(self, event: ArtifactEvent) -> Optional[str]:
        self.events.append(event)
        return event.filename

    def by_filename(self) -> Dict[str, ArtifactEvent]:
        return {e.filename: e for e in self.events}
