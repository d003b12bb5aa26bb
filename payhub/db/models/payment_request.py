"""PaymentRequest model: latest known payment snapshot for one order."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from payhub.db.base import Base
from payhub.db.types import BigIntegerPK


class PaymentRequest(Base):
    """One row per order, created at checkout time with status CREATED.

    Written only by the reconciler (and by checkout creation); never deleted here.
    """

    __tablename__ = "payment_requests"

    request_id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    product_type = Column(String(64), nullable=True)  # product/category tag for downstream consumers

    # Payment view
    provider = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default="CREATED")
    status_detail = Column(String(255), nullable=True)
    amount_minor = Column(Integer, nullable=True)  # integer minor currency units
    currency = Column(String(3), nullable=True)

    # Provider identifiers
    checkout_id = Column(String(255), nullable=True, unique=True)
    payment_id = Column(String(255), nullable=True, index=True)
    payment_link = Column(Text, nullable=True)

    # PII-minimized customer view
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_tax_id = Column(String(64), nullable=True)

    # Timestamps
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    provider_updated_at = Column(DateTime(timezone=True), nullable=True)  # provider's own last-updated time
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
