"""
FIFO ledger: lot walk order, all-or-nothing planning, reversal, and the
version/lock discipline that keeps concurrent orders from overselling a lot.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from chatshop.core.errors import ConcurrencyConflict, InsufficientIngredient
from chatshop.core.optimistic_lock import with_optimistic_retry
from chatshop.models import Ingredient
from chatshop.schemas.ledger import ConsumedIngredient, ProductLine, ReceiptBatch, RecipeLine
from chatshop.services.ledger import (
    LedgerEngine, Requirement, load_batches, plan_consumption, plan_reversal, required_quantities,
)

from conftest import EGG_ID, PORK_ID, batch, load_ingredient


def lots(*specs) -> list[ReceiptBatch]:
    return [ReceiptBatch.model_validate(batch(*spec)) for spec in specs]


# ─── Pure planning ─────────────────────────────────────────────────────────────
def test_fifo_consumes_oldest_lot_first():
    """15 units over B1(10) and B2(10) exhausts B1 and leaves B2 at 5 used."""
    plan = plan_consumption(
        lots(("B1", "10", "2"), ("B2", "10", "3")), "order-1", Requirement("i", "Flour", Decimal("15")),
    )
    b1, b2 = plan.batches
    assert (b1.quantity_used, b1.is_active) == (Decimal("10"), False)
    assert (b2.quantity_used, b2.is_active) == (Decimal("5"), True)
    assert [u.quantity for u in b1.receipt_used_order] == [Decimal("10")]
    assert [u.quantity for u in b2.receipt_used_order] == [Decimal("5")]
    assert plan.consumed.price == Decimal("10") * 2 + Decimal("5") * 3


def test_exact_fit_deactivates_lot():
    plan = plan_consumption(lots(("B1", "10", "1")), "o", Requirement("i", "Flour", Decimal("10")))
    assert plan.batches[0].is_active is False
    assert plan.batches[0].quantity_used == plan.batches[0].quantity


def test_inactive_lots_are_skipped():
    source = lots(("B1", "10", "1", "10"), ("B2", "10", "5"))
    plan = plan_consumption(source, "o", Requirement("i", "Flour", Decimal("4")))
    assert plan.batches[0].receipt_used_order == []
    assert plan.batches[1].quantity_used == Decimal("4")
    assert plan.consumed.price == Decimal("20")


def test_shortfall_reports_required_and_available_without_mutating_input():
    source = lots(("B1", "10", "1", "4"), ("B2", "3", "1"))
    with pytest.raises(InsufficientIngredient) as exc:
        plan_consumption(source, "o", Requirement("i", "Flour", Decimal("12")))
    assert exc.value.required == Decimal("12")
    assert exc.value.available == Decimal("9")
    assert source[0].quantity_used == Decimal("4")
    assert source[1].receipt_used_order == []


def test_fractional_quantities_do_not_drift():
    source = lots(("B1", "1", "1"))
    for i in range(10):
        source = plan_consumption(source, f"o{i}", Requirement("i", "Salt", Decimal("0.1"))).batches
    assert source[0].quantity_used == Decimal("1.0")
    assert source[0].is_active is False


def test_reversal_restores_only_that_order():
    source = lots(("B1", "10", "2"), ("B2", "10", "3"))
    after_a = plan_consumption(source, "A", Requirement("i", "Flour", Decimal("8"))).batches
    after_b = plan_consumption(after_a, "B", Requirement("i", "Flour", Decimal("6"))).batches

    restored, reclaimed = plan_reversal(after_b, "A")
    assert reclaimed == Decimal("8")
    assert restored[0].quantity_used == Decimal("2")
    assert restored[0].is_active is True
    assert [u.order_id for u in restored[0].receipt_used_order] == ["B"]
    assert restored[1].quantity_used == Decimal("4")


def test_required_quantities_sum_shared_ingredients():
    lines = [
        ProductLine(product_id="p1", name="Krapow", quantity=3, price=Decimal("60")),
        ProductLine(product_id="p2", name="Krapow Special", quantity=2, price=Decimal("80")),
    ]
    recipes = {
        "p1": [RecipeLine(ingredient_id="pork", ingredient_name="Pork", qty_per_unit=Decimal("100"))],
        "p2": [
            RecipeLine(ingredient_id="pork", ingredient_name="Pork", qty_per_unit=Decimal("150")),
            RecipeLine(ingredient_id="egg", ingredient_name="Egg", qty_per_unit=Decimal("1")),
        ],
    }
    assert required_quantities(lines, recipes) == [
        Requirement("pork", "Pork", Decimal("600")),
        Requirement("egg", "Egg", Decimal("2")),
    ]


# ─── Persisted ledger ──────────────────────────────────────────────────────────
async def consume(factory, ledger, order_id, *requirements):
    async with ledger.locked(r.ingredient_id for r in requirements):
        async with factory() as db:
            async with db.begin():
                return await ledger.consume(db, order_id, list(requirements))


async def reverse(factory, ledger, order_id, used):
    async with factory() as db:
        async with db.begin():
            return await ledger.reverse(db, order_id, used)


@pytest.mark.asyncio
async def test_consume_then_reverse_round_trips_exactly(db_factory):
    async with db_factory() as db:
        async with db.begin():
            db.add(Ingredient(
                id="flour", store_id="s", name="Flour", quantity=Decimal("13"),
                receipt_info=[batch("B1", "10", "2", "7"), batch("B2", "10", "3")],
            ))
    before = await load_ingredient(db_factory, "flour")
    ledger = LedgerEngine()

    used = await consume(db_factory, ledger, "order-1", Requirement("flour", "Flour", Decimal("8")))
    mid = await load_ingredient(db_factory, "flour")
    assert mid.quantity == Decimal("5")
    assert [b.is_active for b in load_batches(mid)] == [False, True]

    await reverse(db_factory, ledger, "order-1", used)
    after = await load_ingredient(db_factory, "flour")
    assert after.quantity == before.quantity
    for old, new in zip(load_batches(before), load_batches(after)):
        assert (new.quantity_used, new.is_active) == (old.quantity_used, old.is_active)
        assert all(u.order_id != "order-1" for u in new.receipt_used_order)


@pytest.mark.asyncio
async def test_reverse_twice_is_same_as_once(seeded):
    ledger = LedgerEngine()
    used = await consume(seeded, ledger, "order-1", Requirement(PORK_ID, "Pork", Decimal("300")))

    assert await reverse(seeded, ledger, "order-1", used) == Decimal("300")
    once = await load_ingredient(seeded, PORK_ID)
    assert await reverse(seeded, ledger, "order-1", used) == Decimal("0")
    twice = await load_ingredient(seeded, PORK_ID)

    assert twice.quantity == once.quantity == Decimal("500")
    assert twice.receipt_info == once.receipt_info


@pytest.mark.asyncio
async def test_failed_multi_ingredient_consume_leaves_everything_untouched(seeded):
    """Pork is sufficient, Egg is not: Pork must show zero change afterwards."""
    pork_before = await load_ingredient(seeded, PORK_ID)
    with pytest.raises(InsufficientIngredient) as exc:
        await consume(
            seeded, LedgerEngine(), "order-1",
            Requirement(PORK_ID, "Pork", Decimal("100")),
            Requirement(EGG_ID, "Egg", Decimal("51")),
        )
    assert exc.value.ingredient_id == EGG_ID
    pork_after = await load_ingredient(seeded, PORK_ID)
    assert pork_after.quantity == pork_before.quantity
    assert pork_after.receipt_info == pork_before.receipt_info
    assert pork_after.version_id == pork_before.version_id


@pytest.mark.asyncio
async def test_concurrent_consumes_never_oversell(seeded):
    """10 orders of 80 g against 500 g: exactly 6 fit, the rest see the true remainder."""
    ledger = LedgerEngine()
    results = await asyncio.gather(
        *(consume(seeded, ledger, f"order-{i}", Requirement(PORK_ID, "Pork", Decimal("80")))
          for i in range(10)),
        return_exceptions=True,
    )
    accepted = [r for r in results if isinstance(r, list)]
    rejected = [r for r in results if isinstance(r, InsufficientIngredient)]
    assert len(accepted) == 6 and len(rejected) == 4
    assert all(r.available == Decimal("20") for r in rejected)

    pork = await load_ingredient(seeded, PORK_ID)
    (lot,) = load_batches(pork)
    assert lot.quantity_used == Decimal("480") <= lot.quantity
    assert pork.quantity == Decimal("20")
    assert sum(u.quantity for u in lot.receipt_used_order) == Decimal("480")


@pytest.mark.asyncio
async def test_stale_version_is_detected(seeded):
    """A writer holding an old row version loses to one that committed first."""
    async with seeded() as slow:
        stale = await slow.get(Ingredient, PORK_ID)

        async with seeded() as fast:
            async with fast.begin():
                fresh = await fast.get(Ingredient, PORK_ID)
                fresh.quantity = Decimal("499")

        stale.quantity = Decimal("1")
        with pytest.raises(StaleDataError):
            await slow.commit()


@pytest.mark.asyncio
async def test_receive_appends_lot_at_fifo_tail(seeded):
    ledger = LedgerEngine()
    async with seeded() as db:
        async with db.begin():
            await ledger.receive(db, PORK_ID, "r-pork-2", Decimal("200"), Decimal("0.25"))
    pork = await load_ingredient(seeded, PORK_ID)
    assert [b.receipt_id for b in load_batches(pork)] == ["r-pork-1", "r-pork-2"]
    assert pork.quantity == Decimal("700")
    assert pork.receipt_ids == ["r-pork-1", "r-pork-2"]

    used = await consume(seeded, ledger, "o", Requirement(PORK_ID, "Pork", Decimal("600")))
    assert used == [ConsumedIngredient(
        ingredient_id=PORK_ID, name="Pork", quantity=Decimal("600"),
        price=Decimal("500") * Decimal("0.2") + Decimal("100") * Decimal("0.25"),
    )]


# ─── Retry decorator ───────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_optimistic_retry_recovers_then_gives_up():
    calls = {"flaky": 0, "hopeless": 0}

    @with_optimistic_retry(max_retries=3)
    async def flaky():
        calls["flaky"] += 1
        if calls["flaky"] < 3:
            raise StaleDataError("version moved")
        return "ok"

    @with_optimistic_retry(max_retries=2)
    async def hopeless():
        calls["hopeless"] += 1
        raise StaleDataError("version moved")

    assert await flaky() == "ok"
    with pytest.raises(ConcurrencyConflict):
        await hopeless()
    assert calls == {"flaky": 3, "hopeless": 2}
