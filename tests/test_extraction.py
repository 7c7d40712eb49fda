"""
Tests for invoice field extraction from OCR text.
"""

from datetime import date
from decimal import Decimal
import pytest

from src.models.batch import Document
from src.models.invoice import InvoiceStatus
from src.services.extraction import InvoiceExtractionEngine, parse_amount, parse_date
from src.services.storage import InMemoryRepository
from src.services.vendors import VendorService


@pytest.fixture
def document():
    return Document(batch_id="b1", file_name="inv.pdf", content_type="application/pdf", storage_key="k")


@pytest.fixture
def engine():
    return InvoiceExtractionEngine()


FULL_INVOICE = """ACME SUPPLIES LTD
Vendor: Acme Supplies Ltd
Invoice #: INV-2024-001
Invoice Date: 01/15/2024
Due Date: 02/14/2024
PO Number: PO-7781

Subtotal: 1,100.00
Tax: 150.00
Total Due: $1,250.00
"""


def test_extracts_all_fields(engine, document):
    invoice = engine.extract_invoice(document, FULL_INVOICE)

    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.document_id == document.id
    assert invoice.invoice_number == "INV-2024-001"
    assert invoice.amount == Decimal("1250.00")
    assert invoice.currency == "USD"
    assert invoice.invoice_date == date(2024, 1, 15)
    assert invoice.due_date == date(2024, 2, 14)
    assert invoice.vendor_name == "Acme Supplies Ltd"
    assert invoice.po_number == "PO-7781"
    assert "PO Number: PO-7781" in invoice.notes
    assert invoice.extraction_confidence == 1.0


def test_total_amount_with_thousands_separator(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nTotal: $1,234.56")
    assert invoice.amount == Decimal("1234.56")


def test_unparsable_amount_is_dropped(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nTotal: $abc")
    assert invoice.amount is None
    assert invoice.status == InvoiceStatus.EXTRACTION_FAILED
    assert "Missing required fields: amount" in invoice.notes


def test_malformed_number_is_dropped(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nTotal: 1.2.3")
    assert invoice.amount is None


def test_subtotal_is_not_the_total(engine, document):
    text = "Invoice No. 77\nSubtotal: 100.00\nTotal: 110.00"
    assert engine.extract_invoice(document, text).amount == Decimal("110.00")


def test_two_digit_year_is_normalized(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nDate: 01/15/24\nTotal: 5.00")
    assert invoice.invoice_date == date(2024, 1, 15)


def test_due_date_is_not_taken_as_invoice_date(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nDue Date: 03/01/2024\nTotal: 5")
    assert invoice.invoice_date is None
    assert invoice.due_date == date(2024, 3, 1)


def test_invoice_date_label_is_not_an_invoice_number(engine, document):
    invoice = engine.extract_invoice(document, "Invoice Date: 01/15/2024\nTotal: 10.00")
    assert invoice.invoice_number is None
    assert invoice.status == InvoiceStatus.EXTRACTION_FAILED
    assert "Missing required fields: invoice number" in invoice.notes


def test_unlabelled_invoice_number_keeps_its_prefix(engine, document):
    invoice = engine.extract_invoice(document, "Invoice INV-2024-001\nTotal: 10.00")
    assert invoice.invoice_number == "INV-2024-001"


def test_inv_abbreviation_is_still_a_label(engine, document):
    invoice = engine.extract_invoice(document, "Inv #: 7731\nTotal: 10.00")
    assert invoice.invoice_number == "7731"


def test_po_box_is_not_a_po_number(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nPO Box 123\nTotal: 10")
    assert invoice.po_number is None
    assert invoice.notes is None


def test_missing_everything(engine, document):
    invoice = engine.extract_invoice(document, "lorem ipsum dolor sit amet")
    assert invoice.status == InvoiceStatus.EXTRACTION_FAILED
    assert invoice.notes == "Missing required fields: invoice number, amount"
    assert invoice.extraction_confidence == 0.0


def test_empty_text_does_not_raise(engine, document):
    invoice = engine.extract_invoice(document, None)
    assert invoice.status == InvoiceStatus.EXTRACTION_FAILED


def test_extraction_is_deterministic(engine, document):
    first = engine.extract_invoice(document, FULL_INVOICE)
    second = engine.extract_invoice(document, FULL_INVOICE)
    fields = {"id", "created_at", "updated_at"}
    assert first.model_dump(exclude=fields) == second.model_dump(exclude=fields)


def test_currency_code_is_detected(engine, document):
    invoice = engine.extract_invoice(document, "Invoice #: A1\nAmount Due: AUD 385.00")
    assert invoice.amount == Decimal("385.00")
    assert invoice.currency == "AUD"


def test_vendor_resolution_reuses_existing_vendor(document):
    vendors = VendorService(InMemoryRepository())
    existing = vendors.find_or_create("Acme Supplies Ltd")
    engine = InvoiceExtractionEngine(vendor_resolver=vendors.find_or_create)

    invoice = engine.extract_invoice(document, FULL_INVOICE.replace("Acme Supplies Ltd", "ACME SUPPLIES LTD"))

    assert invoice.vendor_id == existing.id
    assert invoice.vendor_name == "Acme Supplies Ltd"
    assert len(vendors.list_vendors()) == 1


def test_vendor_resolver_failure_keeps_extracted_name(document):
    def broken(name):
        raise RuntimeError("database down")

    engine = InvoiceExtractionEngine(vendor_resolver=broken)
    invoice = engine.extract_invoice(document, FULL_INVOICE)

    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.vendor_id is None
    assert invoice.vendor_name == "Acme Supplies Ltd"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("01/15/2024", date(2024, 1, 15)),
        ("01-15-2024", date(2024, 1, 15)),
        ("01/15/24", date(2024, 1, 15)),
        ("12/31/45", date(1945, 12, 31)),
        ("2024-03-05", date(2024, 3, 5)),
        ("2024/03/05", date(2024, 3, 5)),
        ("25/12/2024", date(2024, 12, 25)),
        ("Jan 15, 2024", date(2024, 1, 15)),
        ("15 Jan 2024", date(2024, 1, 15)),
        ("January 15, 2024", date(2024, 1, 15)),
    ],
)
def test_parse_date_formats(value, expected):
    assert parse_date(value) == expected


def test_parse_date_rejects_garbage():
    assert parse_date("13/45/2024") is None


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1,234.56", Decimal("1234.56")),
        ("385", Decimal("385")),
        ("385.00.", Decimal("385.00")),
        ("1.2.3", None),
        ("", None),
    ],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected
