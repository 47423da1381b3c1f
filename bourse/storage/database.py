"""Database storage for market state, price history, orders and holdings."""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (Column, DateTime, Index, Integer, Numeric, String,
                        delete, func, select)
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from bourse.core.config import database_config
from bourse.core.models import (Holding, MacroState, MarketStatus, OrderSide,
                                PendingOrder, PricePoint)

Base = declarative_base()

MACRO_STATE_KEY = "macro_state"


class BourseStateModel(Base):
    """Singleton row holding the regulation cycle and the market override."""
    __tablename__ = 'bourse_state'

    key = Column(String, primary_key=True)
    cycle_start = Column(DateTime, nullable=True)
    start_price = Column(Numeric(18, 2), nullable=True)
    target_price = Column(Numeric(18, 2), nullable=True)
    end_time = Column(DateTime, nullable=True)
    mode = Column(String, nullable=True)
    market_open_status = Column(String, nullable=True)


class PendingOrderModel(Base):
    """SQLAlchemy model for frozen orders."""
    __tablename__ = 'bourse_pending'
    __table_args__ = (
        Index('ix_pending_account_side_end', 'account_id', 'side', 'end_time'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    instrument_id = Column(String, nullable=False)
    side = Column(String, nullable=False)
    shares = Column(Integer, nullable=False)
    unit_price = Column(Numeric(18, 2), nullable=False)
    notional = Column(Numeric(18, 2), nullable=False)
    cost_basis = Column(Numeric(18, 2), default=0)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False, index=True)


class PriceHistoryModel(Base):
    """SQLAlchemy model for price ticks."""
    __tablename__ = 'bourse_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    instrument_id = Column(String, nullable=False)
    price = Column(Numeric(18, 2), nullable=False)
    time = Column(DateTime, nullable=False, index=True)


class HoldingModel(Base):
    """SQLAlchemy model for holdings."""
    __tablename__ = 'bourse_holding'

    account_id = Column(String, primary_key=True)
    instrument_id = Column(String, primary_key=True)
    shares = Column(Integer, nullable=False)
    total_cost = Column(Numeric(18, 2), default=0)


class Database:
    """
    Async database interface.

    Transactions are serialized through one lock: SQLite allows a single
    writer, and in-memory databases share one connection.
    """

    def __init__(self, database_url: Optional[str] = None, instrument_id: str = "MAIN"):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs: Dict[str, Any] = {"echo": False}
        if db_url.endswith(':memory:'):
            engine_kwargs["poolclass"] = StaticPool

        self.instrument_id = instrument_id
        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self):
        async with self._lock:
            async with self.session_maker() as session:
                yield session

    # Macro state operations
    async def get_macro_state_fields(self) -> Optional[Dict[str, Any]]:
        """Raw macro fields of the singleton row, or None if the row is absent.

        Fields may be missing or inconsistent after a partial write; callers
        validate them.
        """
        async with self._session() as session:
            row = await session.get(BourseStateModel, MACRO_STATE_KEY)
            if row is None:
                return None
            return {
                "cycle_start": row.cycle_start,
                "start_price": row.start_price,
                "target_price": row.target_price,
                "end_time": row.end_time,
                "mode": row.mode,
            }

    async def save_macro_state(self, state: MacroState):
        """Replace the cycle fields wholesale, keeping the market override."""
        async with self._session() as session:
            row = await session.get(BourseStateModel, MACRO_STATE_KEY)
            if row is None:
                row = BourseStateModel(key=MACRO_STATE_KEY)
                session.add(row)
            row.cycle_start = state.cycle_start
            row.start_price = state.start_price
            row.target_price = state.target_price
            row.end_time = state.end_time
            row.mode = state.mode.value
            await session.commit()

    async def get_market_override(self) -> MarketStatus:
        async with self._session() as session:
            row = await session.get(BourseStateModel, MACRO_STATE_KEY)
            if row is None or not row.market_open_status:
                return MarketStatus.AUTO
            try:
                return MarketStatus(row.market_open_status)
            except ValueError:
                return MarketStatus.AUTO

    async def set_market_override(self, status: MarketStatus):
        async with self._session() as session:
            row = await session.get(BourseStateModel, MACRO_STATE_KEY)
            if row is None:
                # Cycle fields stay empty; the next tick regenerates them
                row = BourseStateModel(key=MACRO_STATE_KEY)
                session.add(row)
            row.market_open_status = status.value
            await session.commit()

    # Price history operations
    async def add_price_point(self, price: Decimal, time: datetime) -> PricePoint:
        async with self._session() as session:
            row = PriceHistoryModel(instrument_id=self.instrument_id, price=price, time=time)
            session.add(row)
            await session.commit()
            return self._price_point_from_model(row)

    async def get_latest_price_point(self) -> Optional[PricePoint]:
        async with self._session() as session:
            result = await session.execute(
                select(PriceHistoryModel)
                .where(PriceHistoryModel.instrument_id == self.instrument_id)
                .order_by(PriceHistoryModel.time.desc(), PriceHistoryModel.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._price_point_from_model(row) if row else None

    async def get_price_history(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[PricePoint]:
        """Price points in ascending time order.

        With a limit, the most recent `limit` points are returned.
        """
        async with self._session() as session:
            query = select(PriceHistoryModel).where(
                PriceHistoryModel.instrument_id == self.instrument_id
            )
            if since is not None:
                query = query.where(PriceHistoryModel.time >= since)

            if limit is not None:
                query = query.order_by(
                    PriceHistoryModel.time.desc(), PriceHistoryModel.id.desc()
                ).limit(limit)
                result = await session.execute(query)
                rows = list(reversed(result.scalars().all()))
            else:
                query = query.order_by(PriceHistoryModel.time.asc(), PriceHistoryModel.id.asc())
                result = await session.execute(query)
                rows = result.scalars().all()

            return [self._price_point_from_model(r) for r in rows]

    async def prune_price_history(self, before: datetime) -> int:
        """Delete points older than `before`. Returns the number removed."""
        async with self._session() as session:
            result = await session.execute(
                delete(PriceHistoryModel).where(
                    PriceHistoryModel.instrument_id == self.instrument_id,
                    PriceHistoryModel.time < before,
                )
            )
            await session.commit()
            return result.rowcount or 0

    # Pending order operations
    async def create_pending_order(self, order: PendingOrder) -> PendingOrder:
        async with self._session() as session:
            row = self._pending_model_from_order(order)
            session.add(row)
            await session.commit()
            return self._order_from_model(row)

    async def get_latest_pending_order(
        self, account_id: str, side: OrderSide
    ) -> Optional[PendingOrder]:
        """The account's same-side pending order that ends last."""
        async with self._session() as session:
            result = await session.execute(
                select(PendingOrderModel)
                .where(
                    PendingOrderModel.account_id == account_id,
                    PendingOrderModel.instrument_id == self.instrument_id,
                    PendingOrderModel.side == side.value,
                )
                .order_by(PendingOrderModel.end_time.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._order_from_model(row) if row else None

    async def get_pending_orders(self, account_id: Optional[str] = None) -> List[PendingOrder]:
        async with self._session() as session:
            query = select(PendingOrderModel).where(
                PendingOrderModel.instrument_id == self.instrument_id
            ).order_by(PendingOrderModel.end_time.asc(), PendingOrderModel.id.asc())
            if account_id:
                query = query.where(PendingOrderModel.account_id == account_id)
            result = await session.execute(query)
            return [self._order_from_model(r) for r in result.scalars().all()]

    async def get_matured_orders(self, now: datetime) -> List[PendingOrder]:
        async with self._session() as session:
            result = await session.execute(
                select(PendingOrderModel)
                .where(
                    PendingOrderModel.instrument_id == self.instrument_id,
                    PendingOrderModel.end_time <= now,
                )
                .order_by(PendingOrderModel.end_time.asc(), PendingOrderModel.id.asc())
            )
            return [self._order_from_model(r) for r in result.scalars().all()]

    async def get_pending_shares(self, account_id: str, side: OrderSide) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(PendingOrderModel.shares), 0)).where(
                    PendingOrderModel.account_id == account_id,
                    PendingOrderModel.instrument_id == self.instrument_id,
                    PendingOrderModel.side == side.value,
                )
            )
            return int(result.scalar_one())

    async def claim_pending_order(self, order_id: int) -> bool:
        """Delete a pending order. False if it was already gone."""
        async with self._session() as session:
            result = await session.execute(
                delete(PendingOrderModel).where(PendingOrderModel.id == order_id)
            )
            await session.commit()
            return result.rowcount == 1

    async def restore_pending_order(self, order: PendingOrder) -> PendingOrder:
        """Re-insert a claimed order under its original id."""
        async with self._session() as session:
            row = self._pending_model_from_order(order)
            row.id = order.id
            session.add(row)
            await session.commit()
            return self._order_from_model(row)

    # Holding operations
    async def get_holding(self, account_id: str) -> Optional[Holding]:
        async with self._session() as session:
            row = await session.get(HoldingModel, (account_id, self.instrument_id))
            return self._holding_from_model(row) if row else None

    async def get_holdings(self) -> List[Holding]:
        async with self._session() as session:
            result = await session.execute(
                select(HoldingModel).where(HoldingModel.instrument_id == self.instrument_id)
            )
            return [self._holding_from_model(r) for r in result.scalars().all()]

    async def save_holding(self, holding: Holding):
        """Write a holding, deleting the row when no shares remain."""
        async with self._session() as session:
            await self._write_holding(session, holding)
            await session.commit()

    async def settle_buy_order(self, order: PendingOrder, holding: Holding) -> bool:
        """
        Atomically remove a matured buy order and write the resulting holding.

        Returns:
            False if the order was already settled; nothing is written then
        """
        async with self._session() as session:
            result = await session.execute(
                delete(PendingOrderModel).where(PendingOrderModel.id == order.id)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await self._write_holding(session, holding)
            await session.commit()
            return True

    async def place_sell_order(self, order: PendingOrder, holding: Holding) -> PendingOrder:
        """Atomically debit the holding and create the pending sell order."""
        async with self._session() as session:
            await self._write_holding(session, holding)
            row = self._pending_model_from_order(order)
            session.add(row)
            await session.commit()
            return self._order_from_model(row)

    async def _write_holding(self, session: AsyncSession, holding: Holding):
        # Rows are keyed by this store's instrument, whatever the record says
        row = await session.get(HoldingModel, (holding.account_id, self.instrument_id))
        if holding.shares == 0:
            if row is not None:
                await session.delete(row)
            return
        if row is None:
            row = HoldingModel(
                account_id=holding.account_id,
                instrument_id=self.instrument_id,
            )
            session.add(row)
        row.shares = holding.shares
        row.total_cost = holding.total_cost

    # Helpers
    def _pending_model_from_order(self, order: PendingOrder) -> PendingOrderModel:
        return PendingOrderModel(
            account_id=order.account_id,
            instrument_id=self.instrument_id,
            side=order.side.value,
            shares=order.shares,
            unit_price=order.unit_price,
            notional=order.notional,
            cost_basis=order.cost_basis,
            start_time=order.start_time,
            end_time=order.end_time,
        )

    def _order_from_model(self, model: PendingOrderModel) -> PendingOrder:
        """Convert DB model to PendingOrder object."""
        return PendingOrder(
            id=model.id,
            account_id=model.account_id,
            side=OrderSide(model.side),
            shares=model.shares,
            unit_price=Decimal(model.unit_price),
            notional=Decimal(model.notional),
            cost_basis=Decimal(model.cost_basis or 0),
            start_time=model.start_time,
            end_time=model.end_time,
        )

    def _holding_from_model(self, model: HoldingModel) -> Holding:
        return Holding(
            account_id=model.account_id,
            instrument_id=model.instrument_id,
            shares=model.shares,
            total_cost=Decimal(model.total_cost or 0),
        )

    def _price_point_from_model(self, model: PriceHistoryModel) -> PricePoint:
        return PricePoint(id=model.id, price=Decimal(model.price), time=model.time)
