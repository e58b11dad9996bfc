"""
Payments: cash on delivery, admin confirm/reject, bank slip application,
and the slip text helpers.
"""
from decimal import Decimal

import pytest

from chatshop.core.errors import InvalidStatusTransition, PaymentRejected
from chatshop.models import OrderStatus, PaymentMethod
from chatshop.schemas.store import BankAccount
from chatshop.services.slip import SlipVerification, extract_amount, match_receiver

from conftest import PORK_ID, STORE_ID, USER_ID, fill_cart, load_ingredient

ACCOUNTS = [
    BankAccount(bank="KBank", account_name_th="สมชาย ใจดี", account_name_en="Somchai Jaidee"),
    BankAccount(bank="SCB", account_name_th="สมศรี มีสุข", account_name_en="Somsri Meesuk"),
]


async def place(shop, *items, user_id=USER_ID):
    await fill_cart(shop, *items, user_id=user_id)
    return await shop.placement.place_order(STORE_ID, user_id)


def slip(amount="180", receiver="Somchai Jaidee", ref="REF-001", success=True, message=""):
    return SlipVerification(
        success=success,
        amount=Decimal(amount) if amount is not None else None,
        receiver_name=receiver,
        sender_name="Customer",
        trans_ref=ref,
        message=message,
    )


# ─── Slip text ────────────────────────────────────────────────────────

@pytest.mark.parametrize("text,expected", [
    ("Amount: 1,250.00 THB", Decimal("1250.00")),
    ("Transfer done\nTotal 180", Decimal("180")),
    ("โอนเงินสำเร็จ จำนวนเงิน 90.50 บาท", Decimal("90.50")),
    ("Fee 0 Amount ฿ 45", Decimal("45")),
    ("Ref 123 Total 90 Amount 180", Decimal("90")),
    ("Paid 180 baht", None),
    ("Amount: pending", None),
])
def test_extract_amount(text, expected):
    assert extract_amount(text) == expected


def test_match_receiver_by_first_name_and_initial():
    assert match_receiver("To: SOMSRI M. Amount 90", ACCOUNTS).bank == "SCB"
    assert match_receiver("ผู้รับ นาย สมชาย ใจดี จำนวนเงิน 90", ACCOUNTS).bank == "KBank"


def test_match_receiver_needs_amount_keyword():
    assert match_receiver("Somchai Jaidee", ACCOUNTS) is None
    assert match_receiver("To: Somkiat Amount 90", ACCOUNTS) is None


# ─── Cash / admin confirm / reject ────────────────────────────────────

@pytest.mark.asyncio
async def test_cash_marks_method_and_frees_customer(shop):
    placed = await place(shop, ("Pad Krapow", 3))

    txn = await shop.payments.choose_cash(placed.transaction.id)

    assert txn.payment_method == PaymentMethod.CASH
    assert txn.is_confirmed is False
    assert await shop.pending.get(USER_ID, STORE_ID) is None
    assert (await shop.fulfillment.get_order(placed.order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_admin_confirm_moves_order_forward(shop, notifier):
    placed = await place(shop, ("Egg", 2))
    await shop.payments.choose_cash(placed.transaction.id)

    txn = await shop.payments.confirm_payment(placed.transaction.id, store_id=STORE_ID)

    assert txn.is_confirmed is True
    assert txn.payment_method == PaymentMethod.CASH
    order = await shop.fulfillment.get_order(placed.order.id)
    assert order.status == OrderStatus.WAITING_DELIVERY
    assert notifier.sent[-1][1] == USER_ID


@pytest.mark.asyncio
async def test_confirm_twice_is_rejected(shop):
    placed = await place(shop, ("Egg", 1))
    await shop.payments.confirm_payment(placed.transaction.id)
    with pytest.raises(InvalidStatusTransition):
        await shop.payments.confirm_payment(placed.transaction.id)


@pytest.mark.asyncio
async def test_reject_cancels_order_and_returns_stock(shop):
    placed = await place(shop, ("Pad Krapow", 3))

    order = await shop.payments.reject_payment(placed.transaction.id)

    assert order.status == OrderStatus.CANCELLED
    assert (await load_ingredient(shop.session_factory, PORK_ID)).quantity == Decimal("500")
    txn = await shop.payments.get_transaction(placed.transaction.id)
    assert txn.payment_method == PaymentMethod.REJECTED


# ─── Slip application ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_valid_slip_confirms_payment(shop):
    placed = await place(shop, ("Pad Krapow", 3))

    txn = await shop.payments.apply_slip(placed.transaction.id, slip(), ACCOUNTS)

    assert txn.is_confirmed is True
    assert txn.payment_method == PaymentMethod.TRANSFER
    assert txn.slip_ref == "REF-001"
    assert txn.slip["receiver_name"] == "Somchai Jaidee"
    assert await shop.pending.get(USER_ID, STORE_ID) is None
    assert (await shop.fulfillment.get_order(placed.order.id)).status == OrderStatus.WAITING_DELIVERY


@pytest.mark.parametrize("verification,reason", [
    (slip(success=False, message="Slip not readable"), "Slip not readable"),
    (slip(receiver="Somkiat Rakdee"), "Somkiat Rakdee"),
    (slip(amount="100"), "does not match"),
])
@pytest.mark.asyncio
async def test_bad_slips_leave_transaction_unconfirmed(shop, verification, reason):
    placed = await place(shop, ("Pad Krapow", 3))

    with pytest.raises(PaymentRejected) as exc:
        await shop.payments.apply_slip(placed.transaction.id, verification, ACCOUNTS)

    assert reason in exc.value.reason
    txn = await shop.payments.get_transaction(placed.transaction.id)
    assert txn.is_confirmed is False
    assert txn.slip is None
    assert await shop.pending.get(USER_ID, STORE_ID) == placed.transaction.id


@pytest.mark.asyncio
async def test_slip_reference_cannot_pay_twice(shop):
    first = await place(shop, ("Egg", 1), user_id="U-a")
    second = await place(shop, ("Egg", 1), user_id="U-b")
    await shop.payments.apply_slip(first.transaction.id, slip(amount="15"), ACCOUNTS)

    with pytest.raises(PaymentRejected, match="already been used"):
        await shop.payments.apply_slip(second.transaction.id, slip(amount="15"), ACCOUNTS)
