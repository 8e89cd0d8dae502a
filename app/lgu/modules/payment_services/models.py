from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.lgu.models import Base
from app.lgu.utils import utcnow


class CustomPaymentService(Base):
    """Admin-defined payment form outside the built-in catalog."""

    __tablename__ = "custom_payment_services"
    __table_args__ = (Index("idx_custom_payment_services_enabled", "enabled"),)

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # pesos, not minor units; a cost field lets the citizen enter the amount instead
    base_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    processing_fee: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    form_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
