"""
Invoice field extraction from OCR text.

Fields are pulled with an ordered rule table: each ExtractionRule holds the
field name, its regex patterns (most specific first) and a parser for the
captured value. The first pattern that matches decides the field; a value
the parser rejects leaves the field unset.

New fields are added by appending a rule, not by adding control flow.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
from loguru import logger

from ..models.batch import Document
from ..models.invoice import Invoice, InvoiceStatus

DATE_FORMATS = (
    "%m/%d/%Y", "%m-%d-%Y", "%m/%d/%y", "%m-%d-%y",
    "%Y/%m/%d", "%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y",
    "%b %d, %Y", "%d %b %Y", "%B %d, %Y",
)

CURRENCY_CODES = ("USD", "AUD", "EUR", "GBP", "CAD", "JPY", "CNY", "NZD")
CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}

REQUIRED_FIELDS = ("invoice_number", "amount")

_SEP = r"[ \t]*[:\-]?[ \t]*"
_MARKER = r"[ \t]*(?:(?:#|(?:no|number|num)\b\.?)[ \t]*[:\-]?|[:\-])[ \t]*"
_IDENT = r"([A-Z0-9][A-Z0-9\-/]*)"
_MONEY = r"(?:[A-Z]{3}[ \t]*)?[$€£¥]?[ \t]*(\d[\d,.]*)"
_DATE = (
    r"(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}"
    r"|\d{4}[/-]\d{1,2}[/-]\d{1,2}"
    r"|[A-Z]{3,9}[ \t]+\d{1,2},[ \t]*\d{4}"
    r"|\d{1,2}[ \t]+[A-Z]{3,9}[ \t]+\d{4})"
)


def parse_amount(value: str) -> Optional[Decimal]:
    """'1,234.56' -> Decimal('1234.56'); None when not a number"""
    cleaned = value.replace(",", "").strip().rstrip(".")
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        logger.warning(f"Failed to parse amount: {value}")
        return None
    if not amount.is_finite():
        return None
    return amount


def parse_date(value: str) -> Optional[date]:
    """
    Try DATE_FORMATS in order. Two-digit years pivot at 30:
    00-29 -> 2000s, 30-99 -> 1900s.
    """
    text = " ".join(value.split())
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        if "%y" in fmt:
            yy = parsed.year % 100
            parsed = parsed.replace(year=2000 + yy if yy < 30 else 1900 + yy)
        return parsed

    logger.warning(f"Unable to parse date: {value}")
    return None


def parse_text(value: str) -> Optional[str]:
    cleaned = value.strip().rstrip(".,;:").strip()
    return cleaned or None


@dataclass(frozen=True)
class ExtractionRule:
    field: str
    patterns: tuple[re.Pattern, ...]
    parser: Callable[[str], Any]

    def apply(self, text: str) -> Any:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return self.parser(match.group(1))
        return None


def _rule(field: str, parser: Callable[[str], Any], *patterns: str) -> ExtractionRule:
    return ExtractionRule(
        field=field,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        parser=parser,
    )


DEFAULT_RULES: tuple[ExtractionRule, ...] = (
    _rule(
        "invoice_number", parse_text,
        # "INV-" opening an identifier is part of the number, not a label
        r"\b(?:invoice|bill|inv(?![\-A-Z0-9]))" + _MARKER + _IDENT,
        r"\binvoice[ \t]+((?=[A-Z0-9\-/]*\d)[A-Z0-9][A-Z0-9\-/]*)",
    ),
    _rule(
        "amount", parse_amount,
        r"\b(?:grand[ \t]+total|total[ \t]+due|amount[ \t]+due|balance[ \t]+due)\b" + _SEP + _MONEY,
        r"\btotal\b" + _SEP + _MONEY,
        r"\b(?:amount|balance|due)\b" + _SEP + _MONEY,
    ),
    _rule(
        "invoice_date", parse_date,
        r"\binvoice[ \t]+date\b" + _SEP + _DATE,
        r"(?<!due\s)\bdated?\b" + _SEP + _DATE,
    ),
    _rule(
        "due_date", parse_date,
        r"\b(?:due[ \t]+date|payment[ \t]+due|pay[ \t]+by)\b" + _SEP + _DATE,
    ),
    _rule(
        "vendor_name", parse_text,
        r"\b(?:from|vendor|supplier|company|sold[ \t]+by)\b" + _SEP + r"([A-Z0-9][A-Z0-9 \t&.,'\-]*?)[ \t]*(?:\n|$)",
    ),
    _rule(
        "po_number", parse_text,
        r"\b(?:p\.?o\.?|purchase[ \t]+order)" + _MARKER + _IDENT,
    ),
)


def detect_currency(text: str) -> Optional[str]:
    match = re.search(r"\b(" + "|".join(CURRENCY_CODES) + r")\b", text)
    if match:
        return match.group(1)
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    return None


class InvoiceExtractionEngine:
    """
    Turns OCR text into an Invoice.

    Never raises for malformed text: missing required fields produce an
    invoice in EXTRACTION_FAILED status with a note naming them.

    Usage:
        engine = InvoiceExtractionEngine(vendor_resolver=vendor_service.find_or_create)
        invoice = engine.extract_invoice(document, document.extracted_text)
    """

    def __init__(
        self,
        rules: tuple[ExtractionRule, ...] = DEFAULT_RULES,
        vendor_resolver: Optional[Callable[[str], Any]] = None,
    ):
        self.rules = rules
        self.vendor_resolver = vendor_resolver

    def extract_fields(self, text: str) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for rule in self.rules:
            value = rule.apply(text)
            if value is not None:
                fields[rule.field] = value
                logger.debug(f"Extracted {rule.field}", value=str(value))
        return fields

    def extract_invoice(self, document: Document, text: str | None) -> Invoice:
        invoice = Invoice(document_id=document.id)
        text = text or ""

        try:
            fields = self.extract_fields(text)
            invoice.invoice_number = fields.get("invoice_number")
            invoice.amount = fields.get("amount")
            invoice.invoice_date = fields.get("invoice_date")
            invoice.due_date = fields.get("due_date")
            invoice.vendor_name = fields.get("vendor_name")
            invoice.po_number = fields.get("po_number")
            invoice.extraction_confidence = round(len(fields) / len(self.rules), 4) if self.rules else 0.0
            if invoice.amount is not None:
                invoice.currency = detect_currency(text) or "USD"

            if invoice.po_number:
                invoice.add_note(f"PO Number: {invoice.po_number}")

            if invoice.vendor_name and self.vendor_resolver is not None:
                self._resolve_vendor(invoice)

            missing = [name for name in REQUIRED_FIELDS if fields.get(name) is None]
            if missing:
                invoice.status = InvoiceStatus.EXTRACTION_FAILED
                invoice.add_note("Missing required fields: " + ", ".join(m.replace("_", " ") for m in missing))
                logger.warning("Invoice extraction incomplete", document_id=document.id, missing=missing)
            else:
                invoice.status = InvoiceStatus.PENDING

        except Exception as e:
            logger.exception("Error extracting invoice data", document_id=document.id)
            invoice.status = InvoiceStatus.EXTRACTION_FAILED
            invoice.add_note(f"Extraction error: {e}")

        return invoice

    def _resolve_vendor(self, invoice: Invoice) -> None:
        try:
            vendor = self.vendor_resolver(invoice.vendor_name)
        except Exception as e:
            logger.warning(f"Vendor resolution failed: {e}", vendor_name=invoice.vendor_name)
            return
        if vendor is not None:
            invoice.vendor_id = vendor.id
            invoice.vendor_name = vendor.name
