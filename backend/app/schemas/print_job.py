import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, HttpUrl, PlainSerializer, field_validator, model_validator


# Custom serializer to ensure UTC datetimes have Z suffix
def serialize_utc_datetime(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    # Add Z suffix to indicate UTC
    return dt.isoformat() + "Z"


UTCDatetime = Annotated[datetime | None, PlainSerializer(serialize_utc_datetime)]

JobStatus = Literal["pending", "ready", "processing", "completed", "failed"]
ReportedStatus = Literal["processing", "completed", "failed"]
Orientation = Literal["portrait", "landscape", "reverse-portrait", "reverse-landscape"]
ColorType = Literal["color", "grayscale", "blackwhite"]
Interpolation = Literal["nearest", "bilinear", "bicubic", "lanczos"]

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


class Margins(BaseModel):
    top: float | None = Field(None, ge=0)
    right: float | None = Field(None, ge=0)
    bottom: float | None = Field(None, ge=0)
    left: float | None = Field(None, ge=0)


class PageSize(BaseModel):
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    units: Literal["in", "mm", "cm"] = "in"


class RenderOptions(BaseModel):
    """Pixel-printing hints forwarded untouched to the render agent."""

    ignore_transparency: bool | None = None
    alt_font_rendering: bool | None = None
    page_ranges: str | None = None
    scale_content: bool | None = None
    rasterize: bool | None = None
    color_type: ColorType | None = None
    density: float | None = Field(None, ge=72, le=1200)
    interpolation: Interpolation | None = None


class PrintTarget(BaseModel):
    # Either the numeric printer id or the agent-side unique id
    printer_id: int | None = Field(None, gt=0)
    printer_unique_id: str | None = Field(None, min_length=1)

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.printer_id is None) == (self.printer_unique_id is None):
            raise ValueError("Provide exactly one of printer_id or printer_unique_id")
        return self


class DocumentPrintBase(PrintTarget):
    copies: int = Field(1, ge=1, le=999)
    duplex: bool = False
    orientation: Orientation = "portrait"
    margins: Margins | None = None
    options: RenderOptions | None = None


class UrlPrintRequest(DocumentPrintBase):
    document_url: HttpUrl
    document_name: str | None = Field(None, max_length=500)


class Base64PrintRequest(DocumentPrintBase):
    document_base64: str = Field(..., min_length=1)
    document_name: str = Field(..., min_length=1, max_length=500)
    format: Literal["pdf", "image", "html", "txt", "svg"] = "image"
    size: PageSize | None = None

    @field_validator("document_base64")
    @classmethod
    def _looks_like_base64(cls, value: str) -> str:
        if not _BASE64_RE.match(value):
            raise ValueError("document_base64 is not valid base64")
        return value


class RawPrintRequest(PrintTarget):
    """Device commands (ESC/POS, ZPL, ...) passed through byte-for-byte."""

    commands: list[str] = Field(..., min_length=1)
    flavor: Literal["plain", "base64", "hex"] = "plain"
    language: str = Field("ESCPOS", min_length=1, max_length=20)
    document_name: str = Field("raw-commands", min_length=1, max_length=500)


PrintRequest = UrlPrintRequest | Base64PrintRequest | RawPrintRequest


class PrinterBrief(BaseModel):
    id: int
    name: str
    status: str

    class Config:
        from_attributes = True


class PrintJobSubmitResponse(BaseModel):
    job_id: int
    status: JobStatus
    delivery: Literal["pushed", "no_connection"]
    printer: PrinterBrief


class PrintJobResponse(BaseModel):
    id: int
    user_id: int
    printer_id: int
    document_name: str
    document_url: str
    source_type: str
    copies: int
    duplex: bool
    orientation: str
    status: JobStatus
    error_message: str | None
    created_at: UTCDatetime
    updated_at: UTCDatetime
    completed_at: UTCDatetime

    # Nested info for UI (populated in route)
    printer_name: str | None = None

    class Config:
        from_attributes = True


class PrintJobDelivery(BaseModel):
    """A job as handed to the print agent, by push or by pickup."""

    id: int
    document_name: str
    document_url: str
    source_type: str
    printer_id: int
    printer_name: str
    printer_unique_id: str
    status: JobStatus
    copies: int
    duplex: bool
    orientation: str
    render_payload: dict[str, Any] | None = None
    created_at: UTCDatetime = None


class StatusUpdateRequest(BaseModel):
    status: ReportedStatus
    error: str | None = None


class StatusUpdateResponse(BaseModel):
    job: PrintJobResponse
    changed: bool
