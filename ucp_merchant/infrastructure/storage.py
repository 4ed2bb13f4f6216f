"""Storage providers for checkout sessions, orders and capability documents.

Two implementations share the ``StorageProvider`` interface:

- ``InMemoryStorage``: dictionaries of serialized snapshots, so callers
  never share mutable aggregates with the store.
- ``SqlStorage``: SQLAlchemy async engine; aggregates are JSON documents
  next to indexed status/merchant columns.

``save_completed_checkout`` writes the completed session and its order in
one step: either both are stored or neither is.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ucp_merchant.domain.base import utc_now
from ucp_merchant.domain.entities import CheckoutSession, Order
from ucp_merchant.domain.exceptions import DomainError
from ucp_merchant.domain.state_machines import CheckoutStatus, OrderStatus
from ucp_merchant.infrastructure.config import Settings
from ucp_merchant.infrastructure.database import Base, create_engine_and_session_factory
from ucp_merchant.infrastructure.models import CapabilityModel, CheckoutSessionModel, OrderModel

logger = structlog.get_logger()


class StorageConflictError(DomainError):
    """Write rejected because it would violate a uniqueness rule."""

    error_code = "STORAGE_CONFLICT"
    status_code = 409


# ============================================================================
# Interface
# ============================================================================


class StorageProvider(ABC):
    """Persistence interface used by the application services."""

    async def initialize(self) -> None:
        """Prepare the backing store (create tables, ...)."""
        return None

    # Sessions

    @abstractmethod
    async def get_session(self, session_id: str) -> CheckoutSession | None: ...

    @abstractmethod
    async def set_session(self, session: CheckoutSession) -> None: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def list_sessions(
        self,
        status: CheckoutStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckoutSession]: ...

    # Orders

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def set_order(self, order: Order) -> None: ...

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool: ...

    @abstractmethod
    async def list_orders(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]: ...

    @abstractmethod
    async def save_completed_checkout(self, session: CheckoutSession, order: Order) -> None:
        """Persist a COMPLETED session together with its new order.

        Raises:
            StorageConflictError: If an order already exists for the session.
        """

    # Capabilities

    @abstractmethod
    async def get_capabilities(self, merchant_id: str) -> dict[str, Any] | None:
        """Return the cached capability document, or None if absent/expired."""

    @abstractmethod
    async def set_capabilities(self, merchant_id: str, document: dict[str, Any], ttl_seconds: int) -> None: ...

    # Lifecycle

    @abstractmethod
    async def clear(self) -> None: ...

    async def close(self) -> None:
        return None


# ============================================================================
# In-memory
# ============================================================================


class InMemoryStorage(StorageProvider):
    """Process-local storage holding serialized snapshots."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._sessions: dict[str, dict[str, Any]] = {}
        self._orders: dict[str, dict[str, Any]] = {}
        self._orders_by_session: dict[str, str] = {}
        self._capabilities: dict[str, tuple[dict[str, Any], datetime]] = {}
        self._lock = asyncio.Lock()

    async def get_session(self, session_id: str) -> CheckoutSession | None:
        data = self._sessions.get(session_id)
        return CheckoutSession.from_dict(data) if data else None

    async def set_session(self, session: CheckoutSession) -> None:
        self._sessions[session.id] = session.to_dict()

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def list_sessions(
        self,
        status: CheckoutStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckoutSession]:
        rows = [d for d in self._sessions.values() if status is None or d["status"] == status.value]
        rows.sort(key=lambda d: d["created_at"], reverse=True)
        return [CheckoutSession.from_dict(d) for d in rows[offset : offset + limit]]

    async def get_order(self, order_id: str) -> Order | None:
        data = self._orders.get(order_id)
        return Order.from_dict(data) if data else None

    async def set_order(self, order: Order) -> None:
        existing = self._orders_by_session.get(order.checkout_session_id)
        if existing is not None and existing != order.id:
            raise StorageConflictError(
                "An order already exists for this checkout session",
                {"checkout_session_id": order.checkout_session_id, "order_id": existing},
            )
        self._orders[order.id] = order.to_dict()
        self._orders_by_session[order.checkout_session_id] = order.id

    async def delete_order(self, order_id: str) -> bool:
        data = self._orders.pop(order_id, None)
        if data is None:
            return False
        self._orders_by_session.pop(data["checkout_session_id"], None)
        return True

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        rows = [d for d in self._orders.values() if status is None or d["status"] == status.value]
        rows.sort(key=lambda d: d["created_at"], reverse=True)
        return [Order.from_dict(d) for d in rows[offset : offset + limit]]

    async def save_completed_checkout(self, session: CheckoutSession, order: Order) -> None:
        async with self._lock:
            if order.checkout_session_id in self._orders_by_session:
                raise StorageConflictError(
                    "An order already exists for this checkout session",
                    {"checkout_session_id": order.checkout_session_id},
                )
            session_snapshot = copy.deepcopy(self._sessions.get(session.id))
            await self.set_order(order)
            try:
                await self.set_session(session)
            except Exception:
                await self.delete_order(order.id)
                if session_snapshot is not None:
                    self._sessions[session.id] = session_snapshot
                raise

    async def get_capabilities(self, merchant_id: str) -> dict[str, Any] | None:
        entry = self._capabilities.get(merchant_id)
        if entry is None:
            return None
        document, expires_at = entry
        if self._clock() >= expires_at:
            del self._capabilities[merchant_id]
            return None
        return copy.deepcopy(document)

    async def set_capabilities(self, merchant_id: str, document: dict[str, Any], ttl_seconds: int) -> None:
        self._capabilities[merchant_id] = (
            copy.deepcopy(document),
            self._clock() + timedelta(seconds=ttl_seconds),
        )

    async def clear(self) -> None:
        self._sessions.clear()
        self._orders.clear()
        self._orders_by_session.clear()
        self._capabilities.clear()


# ============================================================================
# SQL
# ============================================================================


class SqlStorage(StorageProvider):
    """SQLAlchemy async storage (SQLite via aiosqlite, or PostgreSQL)."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self._engine, self._session_factory = create_engine_and_session_factory(database_url, echo=echo)

    async def initialize(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQL storage initialized", database_url=self._engine.url.render_as_string(hide_password=True))

    @staticmethod
    def _session_row(session: CheckoutSession) -> CheckoutSessionModel:
        return CheckoutSessionModel(
            id=session.id,
            merchant_id=session.merchant_id,
            status=session.status.value,
            version=session.version,
            data=session.to_dict(),
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    @staticmethod
    def _order_row(order: Order) -> OrderModel:
        return OrderModel(
            id=order.id,
            order_number=order.order_number,
            checkout_session_id=order.checkout_session_id,
            merchant_id=order.merchant_id,
            customer_id=order.customer.id if order.customer else None,
            status=order.status.value,
            data=order.to_dict(),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    async def get_session(self, session_id: str) -> CheckoutSession | None:
        async with self._session_factory() as db:
            row = await db.get(CheckoutSessionModel, session_id)
            return CheckoutSession.from_dict(row.data) if row else None

    async def set_session(self, session: CheckoutSession) -> None:
        async with self._session_factory() as db:
            await db.merge(self._session_row(session))
            await db.commit()

    async def delete_session(self, session_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(CheckoutSessionModel).where(CheckoutSessionModel.id == session_id))
            await db.commit()
            return result.rowcount > 0

    async def list_sessions(
        self,
        status: CheckoutStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckoutSession]:
        stmt = select(CheckoutSessionModel).order_by(CheckoutSessionModel.created_at.desc())
        if status is not None:
            stmt = stmt.where(CheckoutSessionModel.status == status.value)
        async with self._session_factory() as db:
            result = await db.execute(stmt.limit(limit).offset(offset))
            return [CheckoutSession.from_dict(row.data) for row in result.scalars()]

    async def get_order(self, order_id: str) -> Order | None:
        async with self._session_factory() as db:
            row = await db.get(OrderModel, order_id)
            return Order.from_dict(row.data) if row else None

    async def set_order(self, order: Order) -> None:
        async with self._session_factory() as db:
            try:
                await db.merge(self._order_row(order))
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise StorageConflictError(
                    "An order already exists for this checkout session",
                    {"checkout_session_id": order.checkout_session_id},
                ) from e

    async def delete_order(self, order_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(OrderModel).where(OrderModel.id == order_id))
            await db.commit()
            return result.rowcount > 0

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        stmt = select(OrderModel).order_by(OrderModel.created_at.desc())
        if status is not None:
            stmt = stmt.where(OrderModel.status == status.value)
        async with self._session_factory() as db:
            result = await db.execute(stmt.limit(limit).offset(offset))
            return [Order.from_dict(row.data) for row in result.scalars()]

    async def save_completed_checkout(self, session: CheckoutSession, order: Order) -> None:
        async with self._session_factory() as db:
            try:
                async with db.begin():
                    await db.merge(self._session_row(session))
                    db.add(self._order_row(order))
            except IntegrityError as e:
                raise StorageConflictError(
                    "An order already exists for this checkout session",
                    {"checkout_session_id": session.id},
                ) from e

    async def get_capabilities(self, merchant_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            row = await db.get(CapabilityModel, merchant_id)
            if row is None:
                return None
            expires_at = row.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=utc_now().tzinfo)
            if utc_now() >= expires_at:
                return None
            return dict(row.data)

    async def set_capabilities(self, merchant_id: str, document: dict[str, Any], ttl_seconds: int) -> None:
        async with self._session_factory() as db:
            await db.merge(
                CapabilityModel(
                    merchant_id=merchant_id,
                    data=document,
                    expires_at=utc_now() + timedelta(seconds=ttl_seconds),
                )
            )
            await db.commit()

    async def clear(self) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(delete(OrderModel))
                await db.execute(delete(CheckoutSessionModel))
                await db.execute(delete(CapabilityModel))

    async def close(self) -> None:
        await self._engine.dispose()


def create_storage(settings: Settings) -> StorageProvider:
    """Build the storage provider selected by ``settings.storage_type``."""
    if settings.storage_type == "sql":
        return SqlStorage(settings.database_url, echo=settings.debug)
    return InMemoryStorage()
