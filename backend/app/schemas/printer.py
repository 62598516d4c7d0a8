from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.schemas.print_job import UTCDatetime


class PrinterBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    unique_id: str = Field(..., min_length=1, max_length=200)
    model: str | None = None
    location: str | None = None  # Site/floor label


class PrinterCreate(PrinterBase):
    status: str = Field("offline", pattern="^(online|offline)$")


class PrinterUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    model: str | None = None
    location: str | None = None
    status: str | None = Field(None, pattern="^(online|offline)$")
    is_active: bool | None = None


class PrinterResponse(PrinterBase):
    id: int
    status: str
    is_active: bool
    last_print_time: UTCDatetime = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PrinterSyncItem(BaseModel):
    """A printer as reported by the print agent's host."""

    name: str = Field(..., min_length=1, max_length=100)
    unique_id: str = Field(..., min_length=1, max_length=200)
    model: str | None = None
    location: str | None = None


class PrinterSyncRequest(BaseModel):
    printers: list[PrinterSyncItem] = Field(..., min_length=1)


class PrinterSyncResponse(BaseModel):
    created: int
    updated: int
    printers: list[PrinterResponse]
