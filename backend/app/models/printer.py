from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.database import Base


class Printer(Base):
    __tablename__ = "printers"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    # Identity reported by the print agent (e.g. the OS printer name/serial)
    unique_id: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    model: Mapped[str | None] = mapped_column(String(100))
    location: Mapped[str | None] = mapped_column(String(100))  # Site/floor label
    status: Mapped[str] = mapped_column(String(20), default="offline")  # online, offline
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_print_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    print_jobs: Mapped[list["PrintJob"]] = relationship(back_populates="printer", cascade="all, delete-orphan")


from backend.app.models.print_job import PrintJob  # noqa: E402
