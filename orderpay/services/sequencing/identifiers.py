"""Human-readable identifiers: order ids and financial-year invoice numbers.

Order id: ``ODR-{DDMMYYYY}-{HHMMSS}-{serial}``. The time segment is cosmetic;
uniqueness comes from the daily serial.

Invoice number: ``{prefix}{state segment}{FY label}{serial}``, e.g. ``P092025261``.
The FY label is part of the counter's scope key, so numbering restarts at 1 in
every financial year without any reset job.
"""

from datetime import date, datetime
from typing import Callable, NamedTuple
from zoneinfo import ZoneInfo

from orderpay.common.config import settings
from orderpay.common.errors import InvalidOfficeConfig
from orderpay.services.sequencing.service import SequenceAllocator


PROFORMA = "PI"
TAX_INVOICE = "TAX_INVOICE"
INVOICE_TYPES = (PROFORMA, TAX_INVOICE)


class FinancialYear(NamedTuple):
    label: str
    start: date


class InvoiceNumber(NamedTuple):
    number: str
    sequence_number: int
    scope_key: str


def financial_year(day: date) -> FinancialYear:
    """Indian financial year (1 April - 31 March) containing `day`."""

    start_year = day.year if day.month >= 4 else day.year - 1
    return FinancialYear(f"{start_year}{(start_year + 1) % 100:02d}", date(start_year, 4, 1))


def format_serial(serial: int) -> str:
    """Zero-pad to 4 digits, widening to 5 and 6 as the daily count grows."""

    if serial > 99999:
        width = 6
    elif serial > 9999:
        width = 5
    else:
        width = 4
    return str(serial).zfill(width)


def business_now() -> datetime:
    return datetime.now(ZoneInfo(settings.business_timezone))


class OrderIdentifierGenerator:
    """Builds date-rooted order ids from a per-day counter."""

    def __init__(self, allocator: SequenceAllocator, clock: Callable[[], datetime] = business_now) -> None:
        self.allocator = allocator
        self.clock = clock

    def generate(self, now: datetime | None = None) -> str:
        now = now or self.clock()
        date_part = now.strftime("%d%m%Y")
        serial = self.allocator.next_value(f"ORDER:{date_part}")
        return f"ODR-{date_part}-{now.strftime('%H%M%S')}-{format_serial(serial)}"


class InvoiceNumberGenerator:
    """Builds invoice numbers from a type/state/FY-scoped counter."""

    def __init__(
        self,
        allocator: SequenceAllocator,
        default_state_code: str | None = None,
        no_segment_state_code: str | None = None,
    ) -> None:
        self.allocator = allocator
        self.default_state_code = (
            settings.invoice_office_state_code if default_state_code is None else default_state_code
        )
        self.no_segment_state_code = (
            settings.no_segment_state_code if no_segment_state_code is None else no_segment_state_code
        )

    def resolve_state_code(self, state_code: str | int | None) -> str:
        normalized = "" if state_code is None else str(state_code).strip()
        if not normalized:
            normalized = str(self.default_state_code or "").strip()
        if not normalized:
            raise InvalidOfficeConfig("invoice office has no state code and no default is configured")
        return normalized

    def composed_key(
        self,
        invoice_type: str,
        is_business_account: bool,
        fy_label: str,
        state_code: str | int | None = None,
    ) -> str:
        if invoice_type not in INVOICE_TYPES:
            raise ValueError(f"unknown invoice type {invoice_type!r}")
        if invoice_type == PROFORMA:
            prefix = "P"
        else:
            prefix = "B" if is_business_account else "R"
        normalized = self.resolve_state_code(state_code)
        segment = "" if normalized == self.no_segment_state_code else normalized
        return f"{prefix}{segment}{fy_label}"

    def generate(
        self,
        invoice_type: str,
        is_business_account: bool,
        fy: FinancialYear,
        state_code: str | int | None = None,
    ) -> InvoiceNumber:
        if financial_year(fy.start) != fy:
            raise ValueError(f"financial year label {fy.label} does not match start {fy.start}")
        key = self.composed_key(invoice_type, is_business_account, fy.label, state_code)
        serial = self.allocator.next_value(key)
        return InvoiceNumber(f"{key}{serial}", serial, key)
