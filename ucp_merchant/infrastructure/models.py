"""SQLAlchemy models for database tables.

Aggregates are stored as JSON documents (their ``to_dict`` form) next to
a few indexed columns used for listing and lookups.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String

from ucp_merchant.infrastructure.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Checkout Models
# ============================================================================


class CheckoutSessionModel(Base):
    """Checkout session document."""

    __tablename__ = "checkout_sessions"

    id = Column(String(36), primary_key=True)
    merchant_id = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    data = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


# ============================================================================
# Order Models
# ============================================================================


class OrderModel(Base):
    """Order document.

    One order per checkout session, enforced by the unique
    ``checkout_session_id`` column.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(40), nullable=False, unique=True)
    checkout_session_id = Column(String(36), nullable=False, unique=True)
    merchant_id = Column(String(100), nullable=False, index=True)
    customer_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


# ============================================================================
# Discovery Models
# ============================================================================


class CapabilityModel(Base):
    """Cached capability document for ``/.well-known/ucp``."""

    __tablename__ = "capabilities"

    merchant_id = Column(String(100), primary_key=True)
    data = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
