"""
CSV statement parsing.

Bank exports differ only in column names, so each layout is a table of header aliases
rather than a parser of its own. The layout is detected from the header row unless the
caller names it. Amounts are signed in the file; the sign becomes the direction unless an
explicit debit/credit column says otherwise.
"""

import csv
import hashlib
import io
from typing import Optional

import structlog

from bankrecon.pipeline.amount_parser import parse_amount
from bankrecon.pipeline.date_parser import parse_date
from bankrecon.pipeline.errors import CsvParseError
from bankrecon.schemas.transactions import IncomingTransaction

logger = structlog.get_logger(__name__)

# Header aliases per bank layout, compared case- and accent-insensitively
LAYOUTS: dict[str, dict[str, tuple[str, ...]]] = {
    "erste": {
        "date": ("datum knjizenja", "datum valute", "datum"),
        "value_date": ("datum valute",),
        "amount": ("iznos",),
        "balance": ("stanje",),
        "counterparty_name": ("naziv primatelja/platitelja", "naziv"),
        "counterparty_iban": ("iban primatelja/platitelja", "iban"),
        "reference": ("poziv na broj", "model i poziv na broj"),
        "description": ("opis placanja", "opis"),
        "external_id": ("id transakcije", "broj transakcije"),
    },
    "pbz": {
        "date": ("datum", "datum valute"),
        "value_date": ("datum valute",),
        "amount": ("iznos", "promet"),
        "balance": ("stanje", "novo stanje"),
        "counterparty_name": ("primatelj/platitelj", "naziv"),
        "counterparty_iban": ("iban", "racun"),
        "reference": ("poziv na broj", "referenca"),
        "description": ("opis", "opis prometa"),
        "external_id": ("id", "broj dokumenta"),
    },
    "zaba": {
        "date": ("datum izvrsenja", "datum", "datum valute"),
        "value_date": ("datum valute",),
        "amount": ("iznos", "promet"),
        "balance": ("saldo", "stanje"),
        "counterparty_name": ("naziv", "naziv platitelja/primatelja"),
        "counterparty_iban": ("iban racun", "iban"),
        "reference": ("poziv na broj",),
        "description": ("svrha", "opis"),
        "external_id": ("referenca", "id transakcije"),
    },
    "generic": {
        "date": ("date", "booking date", "booking_date", "datum"),
        "value_date": ("value date", "value_date", "valuedate"),
        "amount": ("amount", "iznos"),
        "balance": ("balance", "balance_after", "stanje", "saldo"),
        "counterparty_name": ("counterparty_name", "counterpartyname", "counterparty", "payee", "name"),
        "counterparty_iban": ("counterparty_iban", "counterpartyiban", "iban"),
        "reference": ("reference", "ref", "poziv na broj"),
        "description": ("description", "details", "narrative", "opis"),
        "external_id": ("external_id", "externalid", "transaction id", "id"),
        "direction": ("direction", "type", "d/c", "dr/cr"),
        "debit": ("debit", "paid out", "money out", "isplata", "duguje"),
        "credit": ("credit", "paid in", "money in", "uplata", "potrazuje"),
        "currency": ("currency", "valuta"),
    },
}

# Headers only one layout uses, checked in this order
LAYOUT_MARKERS = (
    ("erste", ("datum knjizenja", "opis placanja", "naziv primatelja/platitelja")),
    ("zaba", ("datum izvrsenja", "svrha", "iban racun")),
    ("pbz", ("primatelj/platitelj", "opis prometa", "broj dokumenta")),
)

DEBIT_INDICATORS = {"D", "DR", "DEBIT", "DUGUJE", "OUTGOING", "OUT"}
CREDIT_INDICATORS = {"C", "CR", "CREDIT", "POTRAZUJE", "INCOMING", "IN"}

_ACCENTS = str.maketrans("čćđšžČĆĐŠŽ", "ccdszCCDSZ")


def normalize_header(header: str) -> str:
    return " ".join((header or "").translate(_ACCENTS).strip().lower().split())


def decode_csv(data: bytes) -> str:
    """UTF-8 (with or without BOM), then Windows-1250 as used by Croatian bank exports."""
    for encoding in ("utf-8-sig", "cp1250"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise CsvParseError("File is not valid UTF-8 or Windows-1250 text")


def sniff_delimiter(text: str) -> str:
    sample = "\n".join(text.splitlines()[:5])
    try:
        return csv.Sniffer().sniff(sample, delimiters=";,\t|").delimiter
    except csv.Error:
        return ";" if sample.count(";") > sample.count(",") else ","


def detect_layout(headers: list[str]) -> str:
    normalized = {normalize_header(h) for h in headers}
    for layout, markers in LAYOUT_MARKERS:
        if any(m in normalized for m in markers):
            return layout
    return "generic"


def _column_map(headers: list[str], layout: str) -> dict[str, str]:
    """Map canonical field -> actual header present in the file."""
    by_normalized = {normalize_header(h): h for h in headers}
    mapping: dict[str, str] = {}
    for field, aliases in LAYOUTS[layout].items():
        for alias in aliases:
            if alias in by_normalized:
                mapping[field] = by_normalized[alias]
                break
    return mapping


def _cell(row: dict[str, str], mapping: dict[str, str], field: str) -> Optional[str]:
    header = mapping.get(field)
    if header is None:
        return None
    value = (row.get(header) or "").strip()
    return value or None


def _direction(indicator: Optional[str], signed_negative: bool) -> str:
    if indicator:
        normalized = indicator.strip().upper()
        if normalized in DEBIT_INDICATORS:
            return "OUTGOING"
        if normalized in CREDIT_INDICATORS:
            return "INCOMING"
    return "OUTGOING" if signed_negative else "INCOMING"


def parse_row(
    row: dict[str, str],
    mapping: dict[str, str],
    row_number: int,
    decimal_hint: Optional[str] = None,
    default_currency: str = "EUR",
) -> IncomingTransaction:
    raw_date = _cell(row, mapping, "date")
    if raw_date is None:
        raise CsvParseError("Missing date", field="date", row_number=row_number)
    parsed_date = parse_date(raw_date).parsed_date
    if parsed_date is None:
        raise CsvParseError(f"Invalid date {raw_date!r}", field="date", value=raw_date,
                            row_number=row_number)

    raw_amount = _cell(row, mapping, "amount")
    if raw_amount is not None:
        amount = parse_amount(raw_amount, decimal_hint).amount
        if amount is None:
            raise CsvParseError(f"Invalid amount {raw_amount!r}", field="amount", value=raw_amount,
                                row_number=row_number)
        direction = _direction(_cell(row, mapping, "direction"), amount < 0)
    else:
        # Split debit / credit columns
        debit = parse_amount(_cell(row, mapping, "debit"), decimal_hint).amount
        credit = parse_amount(_cell(row, mapping, "credit"), decimal_hint).amount
        if debit:
            amount, direction = abs(debit), "OUTGOING"
        elif credit:
            amount, direction = abs(credit), "INCOMING"
        else:
            raise CsvParseError("Missing amount", field="amount", row_number=row_number)

    balance = None
    raw_balance = _cell(row, mapping, "balance")
    if raw_balance is not None:
        balance = parse_amount(raw_balance, decimal_hint).amount

    raw_value_date = _cell(row, mapping, "value_date")

    return IncomingTransaction(
        external_id=_cell(row, mapping, "external_id"),
        booking_date=parsed_date,
        value_date=parse_date(raw_value_date).parsed_date if raw_value_date else None,
        direction=direction,
        amount=amount,
        currency=_cell(row, mapping, "currency") or default_currency,
        counterparty_name=_cell(row, mapping, "counterparty_name"),
        counterparty_iban=_cell(row, mapping, "counterparty_iban"),
        description=_cell(row, mapping, "description"),
        reference=_cell(row, mapping, "reference"),
        balance_after=balance,
    )


def parse_csv(
    data: bytes,
    layout: Optional[str] = None,
    decimal_hint: Optional[str] = None,
    default_currency: str = "EUR",
) -> list[IncomingTransaction]:
    """
    Parse a bank CSV export into canonical rows.

    Raises CsvParseError (with the 1-based data row number) on the first bad row, or when
    the header has no recognisable date/amount columns.
    """
    text = decode_csv(data)
    if not text.strip():
        raise CsvParseError("CSV file is empty")

    delimiter = sniff_delimiter(text)
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    headers = reader.fieldnames or []

    layout = layout or detect_layout(headers)
    if layout not in LAYOUTS:
        raise CsvParseError(f"Unknown bank layout: {layout}")

    mapping = _column_map(headers, layout)
    if "date" not in mapping:
        raise CsvParseError("No date column found", field="date")
    if "amount" not in mapping and not ({"debit", "credit"} & mapping.keys()):
        raise CsvParseError("No amount column found", field="amount")

    # Croatian layouts always use the decimal comma
    if decimal_hint is None and layout != "generic":
        decimal_hint = ","

    rows = []
    for row_number, row in enumerate(reader, start=1):
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        rows.append(parse_row(row, mapping, row_number, decimal_hint, default_currency))

    logger.info("csv_parsed", layout=layout, delimiter=delimiter, rows=len(rows))
    return rows


def csv_checksum(rows: list[IncomingTransaction]) -> str:
    """SHA-256 over the canonical rows, so re-exports of the same data hash equal."""
    digest = hashlib.sha256()
    for row in rows:
        digest.update(row.canonical_line().encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()
