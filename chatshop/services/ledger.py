"""
ChatShop - FIFO ingredient ledger

consume: walk each ingredient's active stock lots in stored order (oldest first),
drawing down `quantity_used` and recording a per-order usage entry on every lot
touched. Every ingredient an order needs is planned in memory first; nothing is
written unless all of them are satisfiable, so a shortfall on one ingredient can
never leave another one half-deducted.

reverse: give back exactly what an order drew from each lot, dropping its usage
entries and reactivating lots that are no longer exhausted. Reversing an order
with no usage entries left is a no-op.

Concurrency: callers hold `LedgerEngine.locked(ids)` for the duration of their DB
transaction, and the ingredient row's version_id catches writers in other workers
(StaleDataError -> with_optimistic_retry).
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatshop.core.errors import InsufficientIngredient, NotFound
from chatshop.core.locks import KeyedLocks
from chatshop.models.inventory import Ingredient
from chatshop.schemas.ledger import (
    ConsumedIngredient, ProductLine, ReceiptBatch, ReceiptUsage, RecipeLine,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Requirement:
    ingredient_id: str
    name: str
    quantity: Decimal


@dataclass(frozen=True)
class ConsumptionPlan:
    batches: list[ReceiptBatch]
    consumed: ConsumedIngredient


def required_quantities(
    lines: list[ProductLine], recipes: dict[str, list[RecipeLine]],
) -> list[Requirement]:
    """Per-unit recipe amount x line quantity, summed per ingredient, first-seen order."""
    totals: dict[str, Decimal] = {}
    names: dict[str, str] = {}
    for line in lines:
        for recipe in recipes.get(line.product_id, []):
            amount = recipe.qty_per_unit * line.quantity
            if amount <= ZERO:
                continue
            totals[recipe.ingredient_id] = totals.get(recipe.ingredient_id, ZERO) + amount
            names.setdefault(recipe.ingredient_id, recipe.ingredient_name)
    return [Requirement(iid, names[iid], qty) for iid, qty in totals.items()]


def available_quantity(batches: Iterable[ReceiptBatch]) -> Decimal:
    return sum((b.available for b in batches if b.is_active), ZERO)


def plan_consumption(
    batches: list[ReceiptBatch], order_id: str, requirement: Requirement,
) -> ConsumptionPlan:
    """FIFO draw of `requirement.quantity` over active lots. Input lots are not mutated."""
    planned = [b.model_copy(deep=True) for b in batches]
    remaining = requirement.quantity
    cost = ZERO

    for batch in planned:
        if remaining <= ZERO:
            break
        if not batch.is_active:
            continue
        available = batch.available
        if available <= ZERO:
            continue

        portion = remaining if available >= remaining else available
        batch.quantity_used += portion
        if batch.quantity_used == batch.quantity:
            batch.is_active = False
        batch.receipt_used_order.append(
            ReceiptUsage(order_id=order_id, quantity=portion, price=batch.price * portion)
        )
        cost += batch.price * portion
        remaining -= portion

    if remaining > ZERO:
        raise InsufficientIngredient(
            ingredient_id=requirement.ingredient_id,
            name=requirement.name,
            required=requirement.quantity,
            available=available_quantity(batches),
        )

    return ConsumptionPlan(
        batches=planned,
        consumed=ConsumedIngredient(
            ingredient_id=requirement.ingredient_id,
            name=requirement.name,
            quantity=requirement.quantity,
            price=cost,
        ),
    )


def plan_reversal(batches: list[ReceiptBatch], order_id: str) -> tuple[list[ReceiptBatch], Decimal]:
    """Returns the restored lots and the total quantity reclaimed (0 when already reversed)."""
    restored = [b.model_copy(deep=True) for b in batches]
    reclaimed = ZERO
    for batch in restored:
        mine = [u for u in batch.receipt_used_order if u.order_id == order_id]
        if not mine:
            continue
        returned = sum((u.quantity for u in mine), ZERO)
        batch.quantity_used -= returned
        batch.receipt_used_order = [u for u in batch.receipt_used_order if u.order_id != order_id]
        if batch.quantity_used < batch.quantity:
            batch.is_active = True
        reclaimed += returned
    return restored, reclaimed


def load_batches(ingredient: Ingredient) -> list[ReceiptBatch]:
    return [ReceiptBatch.model_validate(raw) for raw in ingredient.receipt_info or []]


def dump_batches(batches: list[ReceiptBatch]) -> list[dict]:
    return [b.model_dump(mode="json") for b in batches]


class LedgerEngine:
    def __init__(self, locks: KeyedLocks | None = None):
        self.locks = locks if locks is not None else KeyedLocks()

    @asynccontextmanager
    async def locked(self, ingredient_ids: Iterable[str]) -> AsyncIterator[None]:
        async with self.locks.hold_many(f"ingredient:{iid}" for iid in ingredient_ids):
            yield

    @staticmethod
    async def _load(db: AsyncSession, ingredient_ids: list[str]) -> dict[str, Ingredient]:
        if not ingredient_ids:
            return {}
        result = await db.execute(
            select(Ingredient)
            .where(Ingredient.id.in_(ingredient_ids))
            .execution_options(populate_existing=True)
        )
        return {ing.id: ing for ing in result.scalars().all()}

    async def consume(
        self, db: AsyncSession, order_id: str, requirements: list[Requirement],
    ) -> list[ConsumedIngredient]:
        """
        Deduct every requirement inside the caller's transaction and flush.
        Raises InsufficientIngredient before touching any row when one is short.
        """
        ingredients = await self._load(db, [r.ingredient_id for r in requirements])

        plans: list[tuple[Ingredient, Requirement, ConsumptionPlan]] = []
        for req in requirements:
            ingredient = ingredients.get(req.ingredient_id)
            if ingredient is None:
                raise NotFound("Ingredient", req.ingredient_id)
            named = Requirement(req.ingredient_id, req.name or ingredient.name, req.quantity)
            plans.append((ingredient, named, plan_consumption(load_batches(ingredient), order_id, named)))

        for ingredient, req, plan in plans:
            ingredient.receipt_info = dump_batches(plan.batches)
            ingredient.quantity = ingredient.quantity - req.quantity
        await db.flush()

        consumed = [plan.consumed for _, _, plan in plans]
        logger.info(
            "Order %s consumed %s",
            order_id, ", ".join(f"{c.name}={c.quantity}" for c in consumed) or "nothing",
        )
        return consumed

    async def reverse(
        self, db: AsyncSession, order_id: str, used_ingredients: list[ConsumedIngredient],
    ) -> Decimal:
        """Restore the order's draws inside the caller's transaction. Idempotent."""
        ingredients = await self._load(db, [u.ingredient_id for u in used_ingredients])
        total = ZERO
        for used in used_ingredients:
            ingredient = ingredients.get(used.ingredient_id)
            if ingredient is None:
                logger.warning(
                    "Ingredient %s missing while reversing order %s", used.ingredient_id, order_id
                )
                continue
            restored, reclaimed = plan_reversal(load_batches(ingredient), order_id)
            if reclaimed == ZERO:
                continue
            ingredient.receipt_info = dump_batches(restored)
            ingredient.quantity = ingredient.quantity + reclaimed
            total += reclaimed
        await db.flush()
        if total:
            logger.info("Order %s reversed, %s units returned to stock", order_id, total)
        return total

    async def receive(
        self,
        db: AsyncSession,
        ingredient_id: str,
        receipt_id: str,
        quantity: Decimal,
        price: Decimal,
        store_id: str | None = None,
    ) -> Ingredient:
        """Append a new stock lot at the FIFO tail."""
        ingredient = (await self._load(db, [ingredient_id])).get(ingredient_id)
        if ingredient is None or (store_id is not None and ingredient.store_id != store_id):
            raise NotFound("Ingredient", ingredient_id)
        batches = load_batches(ingredient)
        batches.append(ReceiptBatch(
            receipt_id=receipt_id, quantity=quantity, price=price, is_active=quantity > ZERO,
        ))
        ingredient.receipt_info = dump_batches(batches)
        ingredient.receipt_ids = [*(ingredient.receipt_ids or []), receipt_id]
        ingredient.quantity = ingredient.quantity + quantity
        await db.flush()
        return ingredient
