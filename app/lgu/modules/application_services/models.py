from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.lgu.models import Base
from app.lgu.utils import utcnow


class CustomApplicationService(Base):
    """Admin-built citizen application form (steps + fields), shown on the portal when visible."""

    __tablename__ = "custom_application_services"
    __table_args__ = (
        Index("idx_custom_app_services_visible", "visible"),
        Index("idx_custom_app_services_title", "title"),
    )

    # e.g. "barangay-clearance_20250114_093015_1"
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String(64), nullable=False, default="FileText")
    color: Mapped[str] = mapped_column(String(64), nullable=False, default="bg-blue-500")
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    form_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    form_steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    button_texts: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    button_visibility: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
