from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from revenue_engine.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY_TYPE = Numeric(12, 2)


class Bill(Base):
    __tablename__ = "bill"
    __table_args__ = (
        CheckConstraint("net_total >= 0", name="ck_bill_net_total_non_negative"),
        Index("ix_bill_franchise_created", "franchise_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    franchise_id: Mapped[str] = mapped_column(Text, nullable=False)
    net_total: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)
    mode_payment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BillLineItem(Base):
    __tablename__ = "bill_line_item"
    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_bill_line_item_qty_non_negative"),
        CheckConstraint("price >= 0", name="ck_bill_line_item_price_non_negative"),
        Index("ix_bill_line_item_bill", "bill_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    bill_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("bill.id"), nullable=False
    )
    franchise_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)


class DiscountBaseline(Base):
    __tablename__ = "discount_baseline"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    franchise_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    covers_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
