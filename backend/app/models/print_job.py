from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.database import Base

JOB_STATUSES = ("pending", "ready", "processing", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


class PrintJob(Base):
    """One unit of work for the owning user's print agent."""

    __tablename__ = "print_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Links
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    printer_id: Mapped[int] = mapped_column(ForeignKey("printers.id", ondelete="CASCADE"))

    # Source description
    document_name: Mapped[str] = mapped_column(String(500))
    # URL for url jobs; a short placeholder for inline/raw jobs (the bytes live in the payload)
    document_url: Mapped[str] = mapped_column(Text)
    source_type: Mapped[str] = mapped_column(String(20), default="url")  # url, base64, raw

    # Formatting
    copies: Mapped[int] = mapped_column(Integer, default=1)
    duplex: Mapped[bool] = mapped_column(Boolean, default=False)
    orientation: Mapped[str] = mapped_column(String(30), default="portrait")

    # JSON payload for the render agent; never interpreted server-side
    render_payload: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status: pending, ready, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="print_jobs")
    printer: Mapped["Printer"] = relationship(back_populates="print_jobs")


from backend.app.models.printer import Printer  # noqa: E402
from backend.app.models.user import User  # noqa: E402
