from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.lgu.models import Base
from app.lgu.utils import utcnow


class ApplicationSubmission(Base):
    """A citizen's answers to a custom application form (draft or submitted) plus the admin review state."""

    __tablename__ = "application_submissions"
    __table_args__ = (
        Index("idx_app_submissions_user_service", "user_id", "custom_application_service_id"),
        Index("idx_app_submissions_status", "status"),
        Index("idx_app_submissions_admin_status", "admin_status"),
        Index("idx_app_submissions_updated_at", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # Not a foreign key: submissions outlive the form definition they were made against
    custom_application_service_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft|submitted
    admin_status: Mapped[str | None] = mapped_column(String(16), nullable=True)  # pending|reviewing|rejected|approved
    form_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
