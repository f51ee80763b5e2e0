from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ilves.models import Base, Company, PostalAddress


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_owner_id", "owner_id"),
        Index("idx_customers_sort", "company_name", "last_name", "first_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)

    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    invoicing_address_id: Mapped[int | None] = mapped_column(
        ForeignKey("postal_addresses.id", ondelete="SET NULL"), nullable=True
    )
    delivery_address_id: Mapped[int | None] = mapped_column(
        ForeignKey("postal_addresses.id", ondelete="SET NULL"), nullable=True
    )

    created: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    modified: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    owner: Mapped[Company] = relationship("Company", lazy="selectin")
    invoicing_address: Mapped[PostalAddress | None] = relationship(
        "PostalAddress",
        foreign_keys=[invoicing_address_id],
        cascade="all, delete-orphan",
        single_parent=True,
        lazy="selectin",
    )
    delivery_address: Mapped[PostalAddress | None] = relationship(
        "PostalAddress",
        foreign_keys=[delivery_address_id],
        cascade="all, delete-orphan",
        single_parent=True,
        lazy="selectin",
    )

    @property
    def display_name(self) -> str:
        person = " ".join(p for p in (self.first_name, self.last_name) if p)
        if self.company_name and person:
            return f"{self.company_name} ({person})"
        return self.company_name or person or f"Customer #{self.id}"
