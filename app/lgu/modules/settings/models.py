from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.lgu.models import Base
from app.lgu.utils import utcnow


class PortalSettings(Base):
    """
    Single-row portal configuration (get-or-create).
    Nested groups are JSON documents; the service layer owns their defaults and merge rules.
    """

    __tablename__ = "portal_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    city: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # {name, fullName}
    branding: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # {systemName, systemDescription}
    assets: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    contact: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    faq: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    convenience_fee: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # serviceId -> bool; missing ids count as enabled
    enabled_services: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # serviceId -> ServiceFormConfig
    form_configs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    add_on_services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    custom_payment_services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
