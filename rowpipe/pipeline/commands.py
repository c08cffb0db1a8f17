"""
Shell commands around generated artifacts.
==========================================
Verification commands gate a generation (non-zero exit feeds the retry loop);
post-process commands run after the artifact is saved.
"""
import asyncio
import base64
import os
import re
import uuid
from typing import Any, Dict, Optional, Tuple

from ..domain import ExtractedContent
from ..errors import ExternalVerificationFailure
from ..interfaces import IFetcher
from ..utils import render_template, sanitize_filename

_DATA_URL = re.compile(r"^data:[\w/+.\-]+;base64,(.*)$", re.DOTALL)
OUTPUT_LIMIT = 2000


class CommandRunner:
    """Runs shell templates with `{{file}}` bound to an artifact path."""

    def __init__(self, timeout: float = 300.0, fetcher: Optional[IFetcher] = None, logger=None):
        self.timeout = timeout
        self.fetcher = fetcher
        self.logger = logger

    async def run(self, command: str, cwd: Optional[str] = None) -> Tuple[int, str]:
        """
        Runs a shell command and returns (returncode, combined output).

        A timeout is reported as returncode -1.
        """
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "Command timeout exceeded"
        output = (stderr or b"").decode("utf-8", "replace") + (stdout or b"").decode("utf-8", "replace")
        return process.returncode, output.strip()

    def render(self, template: str, file_path: str, context: Dict[str, Any]) -> str:
        """Row values are filename-sanitised before they reach the shell."""
        safe_context = dict(context)
        safe_context.pop("file", None)
        command = render_template(template, safe_context, transform=sanitize_filename)
        return command.replace("{{file}}", file_path).replace("{{ file }}", file_path)

    async def verify(self, template: str, content: ExtractedContent, context: Dict[str, Any],
                     workdir: str) -> None:
        """Writes the content to a temp file and raises when the command rejects it."""
        verify_dir = os.path.join(workdir, "verify")
        os.makedirs(verify_dir, exist_ok=True)
        path = os.path.abspath(os.path.join(verify_dir, f"{uuid.uuid4().hex}{content.extension}"))
        with open(path, "wb") as f:
            f.write(await self.content_bytes(content))
        try:
            command = self.render(template, path, context)
            returncode, output = await self.run(command)
        finally:
            os.remove(path)
        if returncode != 0:
            raise ExternalVerificationFailure(
                command, returncode, f"{output[:OUTPUT_LIMIT]}\nPlease fix the content."
            )

    async def post_process(self, template: str, file_path: str, context: Dict[str, Any]) -> bool:
        """Failures are logged; the generation that produced the file stands."""
        command = self.render(template, os.path.abspath(file_path), context)
        returncode, output = await self.run(command)
        if returncode != 0:
            if self.logger:
                self.logger.warning(f"Post-process command failed (exit {returncode}): {output[:500]}")
            return False
        return True

    async def content_bytes(self, content: ExtractedContent) -> bytes:
        if content.kind == "text":
            return content.data.encode("utf-8")
        if content.kind == "audio":
            return base64.b64decode(content.data)
        match = _DATA_URL.match(content.data)
        if match:
            return base64.b64decode(match.group(1))
        if self.fetcher:
            return await self.fetcher.fetch_bytes(content.data)
        return content.data.encode("utf-8")
