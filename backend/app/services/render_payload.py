"""Build the render instructions carried by a job.

The payload follows the shape desktop print bridges (QZ Tray and friends)
accept: a ``printer`` name, a list of ``data`` entries, and a ``config``
block. Keys inside the payload are camelCase because the agent hands the
structure to such a renderer unchanged.
"""

from __future__ import annotations

from typing import Any

from backend.app.schemas.print_job import (
    Base64PrintRequest,
    DocumentPrintBase,
    Margins,
    PrintRequest,
    RawPrintRequest,
    UrlPrintRequest,
)

DEFAULT_MARGIN_MM = 12.7
DEFAULT_UNITS = "mm"


def job_name(document_name: str, job_id: int) -> str:
    return f"{document_name} - ID: {job_id}"


def _margins(margins: Margins | None) -> dict[str, float]:
    values = margins.model_dump(exclude_none=True) if margins else {}
    return {side: values.get(side, DEFAULT_MARGIN_MM) for side in ("top", "right", "bottom", "left")}


def _pixel_options(request: DocumentPrintBase) -> dict[str, Any]:
    options: dict[str, Any] = {
        "orientation": request.orientation,
        "copies": request.copies,
        "duplex": request.duplex,
        "ignoreTransparency": True,
        "altFontRendering": True,
    }
    if request.options:
        opts = request.options
        if opts.ignore_transparency is not None:
            options["ignoreTransparency"] = opts.ignore_transparency
        if opts.alt_font_rendering is not None:
            options["altFontRendering"] = opts.alt_font_rendering
        if opts.page_ranges:
            options["pageRanges"] = opts.page_ranges
    return options


def _pixel_config(request: DocumentPrintBase, name: str, units: str = DEFAULT_UNITS) -> dict[str, Any]:
    config: dict[str, Any] = {
        "jobName": name,
        "units": units,
        "margins": _margins(request.margins),
    }
    if request.options:
        opts = request.options
        for key, value in (
            ("density", opts.density),
            ("colorType", opts.color_type),
            ("interpolation", opts.interpolation),
            ("scaleContent", opts.scale_content),
            ("rasterize", opts.rasterize),
        ):
            if value is not None:
                config[key] = value
    return config


def build_url_payload(request: UrlPrintRequest, printer_name: str, document_name: str, job_id: int) -> dict[str, Any]:
    return {
        "printer": printer_name,
        "data": [
            {
                "type": "pixel",
                "format": "pdf",
                "flavor": "file",
                "data": str(request.document_url),
                "options": _pixel_options(request),
            }
        ],
        "config": _pixel_config(request, job_name(document_name, job_id)),
    }


def build_base64_payload(request: Base64PrintRequest, printer_name: str, job_id: int) -> dict[str, Any]:
    units = request.size.units if request.size else DEFAULT_UNITS
    config = _pixel_config(request, job_name(request.document_name, job_id), units=units)
    if request.size:
        config["size"] = {"width": request.size.width, "height": request.size.height}
    return {
        "printer": printer_name,
        "data": [
            {
                "type": "pixel",
                "format": request.format,
                "flavor": "base64",
                "data": request.document_base64,
                "options": _pixel_options(request),
            }
        ],
        "config": config,
    }


def build_raw_payload(request: RawPrintRequest, printer_name: str, job_id: int) -> dict[str, Any]:
    # Raw commands are device-native; no margins or scaling apply
    return {
        "printer": printer_name,
        "data": [
            {
                "type": "raw",
                "format": "command",
                "flavor": request.flavor,
                "data": command,
                "options": {"language": request.language, "dotDensity": "double"},
            }
            for command in request.commands
        ],
        "config": {"jobName": job_name(request.document_name, job_id), "scaleContent": False},
    }


def build_render_payload(request: PrintRequest, printer_name: str, document_name: str, job_id: int) -> dict[str, Any]:
    """Dispatch on the request variant."""
    if isinstance(request, UrlPrintRequest):
        return build_url_payload(request, printer_name, document_name, job_id)
    if isinstance(request, Base64PrintRequest):
        return build_base64_payload(request, printer_name, job_id)
    if isinstance(request, RawPrintRequest):
        return build_raw_payload(request, printer_name, job_id)
    raise TypeError(f"Unsupported print request type: {type(request).__name__}")


def describe_source(request: PrintRequest) -> tuple[str, str, str]:
    """Return (source_type, document_name, document_url) for storage."""
    if isinstance(request, UrlPrintRequest):
        url = str(request.document_url)
        name = request.document_name or url.rstrip("/").rsplit("/", 1)[-1] or "document.pdf"
        return "url", name, url
    if isinstance(request, Base64PrintRequest):
        return "base64", request.document_name, f"inline:{request.format}:{len(request.document_base64)}"
    if isinstance(request, RawPrintRequest):
        return "raw", request.document_name, f"raw:{request.language}:{len(request.commands)}"
    raise TypeError(f"Unsupported print request type: {type(request).__name__}")
