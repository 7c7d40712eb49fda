"""
Document-type classification by payment intent.

Scores OCR text on obligation cues (payment still owed) against
confirmation cues (already paid):

    score > 2   -> "invoice"
    score < -2  -> "receipt"
    otherwise   -> "unknown"
"""

from typing import Literal
from loguru import logger

DocumentType = Literal["receipt", "invoice", "unknown"]

ZERO_BALANCE = ("$0.00", "balance due 0", "no payment required")

# (weight, any of these phrases)
OBLIGATION_CUES: tuple[tuple[int, tuple[str, ...]], ...] = (
    (3, ("please remit", "please pay", "payment required")),
    (4, ("due date", "payment due")),
    (4, ("net 30", "net 60", "due upon receipt", "payment terms")),
    (3, ("remit to", "remit payment", "make payment to")),
    (3, ("bank details", "bsb", "account number", "eft details")),
    (3, ("wire transfer", "bpay", "direct deposit")),
    (2, ("invoice number", "invoice #", "invoice no", "invoice id")),
)

CONFIRMATION_CUES: tuple[tuple[int, tuple[str, ...]], ...] = (
    (3, ("thank you for your payment", "payment received")),
    (3, ("amount paid", "paid on", "date paid")),
    (3, ("payment history", "transaction history")),
    (3, ("your order is complete", "we appreciate your business")),
    (4, ZERO_BALANCE),
    (3, ("direct debit", "auto-recharge", "autopay")),
    (3, ("paypal", "stripe", "square")),
    (2, ("receipt number", "receipt #", "receipt no")),
    (2, ("tax invoice / receipt", "tax receipt")),
)

OUTSTANDING_CUES = ("amount due", "balance due", "total due")
CARD_BRANDS = ("visa", "mastercard")


def obligation_score(text: str) -> int:
    t = text.lower()
    zero_balance = any(z in t for z in ZERO_BALANCE)
    score = 0

    # Outstanding-balance phrases count only when the balance is not zero
    if not zero_balance:
        score += 3 * sum(1 for cue in OUTSTANDING_CUES if cue in t)

    for weight, phrases in OBLIGATION_CUES:
        if any(p in t for p in phrases):
            score += weight
    for weight, phrases in CONFIRMATION_CUES:
        if any(p in t for p in phrases):
            score -= weight

    if "invoice" in t and "receipt" not in t:
        score += 2
    if "receipt" in t and "invoice" not in t:
        score -= 2
    if any(brand in t for brand in CARD_BRANDS) and ("****" in t or "ending" in t):
        score -= 3

    return score


def classify_document_type(text: str | None) -> DocumentType:
    if not text:
        return "unknown"

    score = obligation_score(text)
    logger.debug(
        "Document obligation scoring",
        score=score,
        interpretation="invoice" if score > 2 else "receipt" if score < -2 else "unclear"
    )
    if score > 2:
        return "invoice"
    if score < -2:
        return "receipt"
    return "unknown"
