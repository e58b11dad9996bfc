"""
ChatShop - Payment slip helpers

Slip images are read and verified by an external service; this module only
defines what we consume from it and how OCR'd slip text is matched against the
store's receiving accounts.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Protocol

from pydantic import BaseModel

from chatshop.schemas.store import BankAccount

AMOUNT_KEYWORDS = ("Amount", "จำนวนเงิน", "จํานวนเงิน", "Total", "รวม")
_AMOUNT_AFTER_KEYWORD = re.compile(r"[:\s]*(?:THB|฿|บาท)?\s*([\d,]+(?:\.\d+)?)")


class SlipVerification(BaseModel):
    success: bool
    amount: Decimal | None = None
    receiver_name: str = ""
    sender_name: str = ""
    trans_ref: str = ""
    message: str = ""


class SlipVerifier(Protocol):
    async def verify(self, store_id: str, message_id: str, expected_amount: Decimal) -> SlipVerification: ...


def find_keyword(text: str, keywords: tuple[str, ...] = AMOUNT_KEYWORDS) -> tuple[int, str] | None:
    """Earliest position at which any keyword occurs, or None when none do."""
    hits = [(text.find(k), k) for k in keywords]
    found = [hit for hit in hits if hit[0] >= 0]
    return min(found) if found else None


def extract_amount(text: str) -> Decimal | None:
    text = " ".join(text.split())
    hit = find_keyword(text)
    if hit is None:
        return None
    index, keyword = hit
    match = _AMOUNT_AFTER_KEYWORD.match(text, index + len(keyword))
    if match is None:
        return None
    try:
        return Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return None


def _candidates(full_name: str) -> list[str]:
    """First name, and first name + last-name initial."""
    parts = full_name.casefold().split()
    if not parts:
        return []
    names = [parts[0]]
    if len(parts) > 1:
        names.append(f"{parts[0]} {parts[1][0]}")
    return names


def best_account_match(text: str, accounts: list[BankAccount]) -> BankAccount | None:
    """The account whose name shows up in `text` with the longest match."""
    haystack = " ".join(text.split()).casefold()
    best: tuple[int, BankAccount] | None = None
    for account in accounts:
        for name in (account.account_name_th, account.account_name_en):
            for candidate in _candidates(name):
                if candidate in haystack and (best is None or len(candidate) > best[0]):
                    best = (len(candidate), account)
    return best[1] if best else None


def match_receiver(slip_text: str, accounts: list[BankAccount]) -> BankAccount | None:
    """Slip text without any amount keyword is not a transfer slip and never matches."""
    if find_keyword(slip_text) is None:
        return None
    return best_account_match(slip_text, accounts)
