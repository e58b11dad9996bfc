"""
ChatShop - Ingredient ledger model

[TRANSACTIONAL DATA] receipt_info is the FIFO list of stock lots, oldest first.
version_id is the optimistic locking column, incremented by the mapper on every
flush; a concurrent writer that read an older version fails with StaleDataError.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from chatshop.db.database import Base, DecimalText, utcnow


class Ingredient(Base):
    __tablename__ = "ingredients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="g")
    quantity: Mapped[Decimal] = mapped_column(DecimalText, nullable=False, default=Decimal("0"))
    # Serialized chatshop.schemas.ledger.ReceiptBatch list, stored order == FIFO order
    receipt_info: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    product_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    receipt_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)  # optimistic lock
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version_id}
