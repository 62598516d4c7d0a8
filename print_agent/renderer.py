"""Turn a job's render payload into output on a local printer."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any

import httpx

from backend.app.schemas.print_job import PrintJobDelivery

logger = logging.getLogger(__name__)


class RenderError(Exception):
    """Rendering failed; the job is reported as failed with this message."""


class RenderAgent(ABC):
    @abstractmethod
    async def render(self, job: PrintJobDelivery) -> None:
        """Print ``job`` or raise :class:`RenderError`."""


class DryRunRenderAgent(RenderAgent):
    """Logs jobs instead of printing them."""

    def __init__(self):
        self.rendered: list[int] = []

    async def render(self, job: PrintJobDelivery) -> None:
        entries = (job.render_payload or {}).get("data", [])
        logger.info(
            "[dry-run] Job %s '%s' -> %s (%s entr%s)",
            job.id,
            job.document_name,
            job.printer_name,
            len(entries),
            "y" if len(entries) == 1 else "ies",
        )
        self.rendered.append(job.id)


class LpRenderAgent(RenderAgent):
    """Submit payload entries to CUPS with ``lp``."""

    def __init__(self, lp_command: str = "lp", download_timeout: float = 60.0):
        self._lp_command = lp_command
        self._download_timeout = download_timeout

    async def render(self, job: PrintJobDelivery) -> None:
        payload = job.render_payload
        if not payload or not payload.get("data"):
            raise RenderError("Job has no render payload")

        printer = payload.get("printer") or job.printer_name
        for entry in payload["data"]:
            content, raw = await self._materialize(entry)
            await self._submit(printer, content, self._lp_options(entry, raw))
        logger.info("Job %s sent to %s", job.id, printer)

    async def _materialize(self, entry: dict[str, Any]) -> tuple[bytes, bool]:
        kind = entry.get("type")
        flavor = entry.get("flavor")
        data = entry.get("data", "")

        try:
            if kind == "raw":
                if flavor == "base64":
                    return base64.b64decode(data), True
                if flavor == "hex":
                    return bytes.fromhex(data), True
                return data.encode("utf-8"), True
            if flavor == "file":
                return await self._download(data), False
            if flavor == "base64":
                return base64.b64decode(data), False
        except ValueError as e:
            raise RenderError(f"Cannot decode {flavor} data: {e}") from e
        raise RenderError(f"Unsupported payload entry {kind}/{flavor}")

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self._download_timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise RenderError(f"Download of {url} failed: {e}") from e

    @staticmethod
    def _lp_options(entry: dict[str, Any], raw: bool) -> list[str]:
        if raw:
            return ["-o", "raw"]
        options = entry.get("options", {})
        args = ["-n", str(options.get("copies", 1))]
        if options.get("duplex"):
            args += ["-o", "sides=two-sided-long-edge"]
        if options.get("orientation") in ("landscape", "reverse-landscape"):
            args += ["-o", "landscape"]
        if options.get("pageRanges"):
            args += ["-P", str(options["pageRanges"])]
        return args

    async def _submit(self, printer: str, content: bytes, options: list[str]) -> None:
        fd, path = tempfile.mkstemp(prefix="printbridge-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._lp_command,
                    "-d",
                    printer,
                    *options,
                    path,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise RenderError(f"'{self._lp_command}' is not installed") from e
            _, stderr = await proc.communicate()
            if proc.returncode != 0:
                raise RenderError(stderr.decode(errors="replace").strip() or f"lp exited with {proc.returncode}")
        finally:
            os.remove(path)
