"""
ChatShop - Order listing and sales statistics
"""
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatshop.models.order import Order, OrderStatus, Transaction
from chatshop.schemas.api import DailySales, ProductStat, SalesStats
from chatshop.schemas.ledger import ProductLine


async def list_orders(
    session_factory: async_sessionmaker[AsyncSession],
    store_id: str,
    page: int = 1,
    limit: int = 20,
    status: OrderStatus | None = None,
) -> tuple[list[tuple[Order, Transaction | None]], int]:
    """Newest first; returns the page and the total matching count."""
    filters = [Order.store_id == store_id]
    if status is not None:
        filters.append(Order.status == status)

    async with session_factory() as db:
        total = (await db.execute(select(func.count()).select_from(Order).where(*filters))).scalar_one()
        result = await db.execute(
            select(Order, Transaction)
            .outerjoin(Transaction, Transaction.order_id == Order.id)
            .where(*filters)
            .order_by(Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = [(order, transaction) for order, transaction in result.all()]
    return rows, total


def compute_stats(orders: list[Order]) -> SalesStats:
    products: dict[str, ProductStat] = {}
    daily: dict[str, DailySales] = defaultdict(lambda: DailySales(date=""))
    total_sales = Decimal("0")

    for order in orders:
        lines = [ProductLine.model_validate(p) for p in order.product_info or []]
        order_total = sum((line.price * line.quantity for line in lines), Decimal("0"))
        total_sales += order_total

        for name in dict.fromkeys(line.name for line in lines):
            products.setdefault(name, ProductStat(name=name)).total_orders += 1
        for line in lines:
            stat = products[line.name]
            stat.quantity += line.quantity
            stat.revenue += line.price * line.quantity

        day = order.created_at.date().isoformat()
        bucket = daily[day]
        bucket.date = day
        bucket.orders += 1
        bucket.sales += order_total

    count = len(orders)
    return SalesStats(
        total_orders=count,
        total_sales=total_sales,
        average_order_value=(total_sales / count) if count else Decimal("0"),
        product_stats=sorted(products.values(), key=lambda s: s.total_orders, reverse=True),
        daily_sales=sorted(daily.values(), key=lambda d: d.date),
    )


async def sales_stats(session_factory: async_sessionmaker[AsyncSession], store_id: str) -> SalesStats:
    """Only FINISHED orders count as sales."""
    async with session_factory() as db:
        result = await db.execute(
            select(Order).where(Order.store_id == store_id, Order.status == OrderStatus.FINISHED)
        )
        orders = list(result.scalars().all())
    return compute_stats(orders)
