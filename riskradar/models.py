from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Supplier(Base):
    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    supplier_name: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    location: Mapped[str] = mapped_column(String(300), default="")
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    product: Mapped[str] = mapped_column(String(300), default="General Goods")
    category: Mapped[str] = mapped_column(String(100), default="manufacturing")
    lead_time_days: Mapped[int] = mapped_column(Integer, default=7)
    monthly_volume: Mapped[str] = mapped_column(String(100), default="N/A")
    annual_contract_value: Mapped[str] = mapped_column(String(100), default="N/A")
    criticality: Mapped[str] = mapped_column(String(50), default="")
    backup_suppliers_json: Mapped[str] = mapped_column(Text, default="[]")
    imported_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
