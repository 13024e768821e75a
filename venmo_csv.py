"""
Venmo Statement CSV Ingestion

Turns a Venmo statement export into received-payment transactions and helps map
each counterparty onto a known patient before the payments are imported.

The export is not a clean CSV: it opens with account banner lines, carries
summary/footer rows after the transactions, and quotes fields that contain
commas, quotes or line breaks. The header row is located by looking for the
ID / Datetime / Type columns rather than assuming it is the first line.
"""
import csv
import io
import logging
import re
from collections import Counter

import pandas as pd

logger = logging.getLogger(__name__)

# ------------------------- Parameters & Regex -------------------------

HEADER_TOKENS = ("id", "datetime", "type")  # all three must appear in the header row
PAYMENT_TYPE = "payment"
COMPLETE_STATUS = "complete"

NUMERIC_ID = re.compile(r"^\d+$")
AMOUNT_STRIP = re.compile(r"[$€£,\s]")

COLUMN_ALIASES = {
    "id": ["id"],
    "datetime": ["datetime", "date"],
    "type": ["type"],
    "status": ["status"],
    "note": ["note", "notes"],
    "from": ["from"],
    "to": ["to"],
    "amount": ["amount (total)", "amount total", "total amount", "amount"],
}
REQUIRED_COLUMNS = ["datetime", "amount"]


class CsvParseError(ValueError):
    """Raised when a statement cannot be turned into received payments."""


# ------------------------- Tokenizing -------------------------

def split_records(text):
    """
    Split raw CSV text into records of fields.

    Honors double-quote escaping (``""`` inside a quoted field), keeps line
    breaks that sit inside quotes as part of the field, and accepts ``\\n``,
    ``\\r\\n`` and bare ``\\r`` line endings. Blank records are dropped.

    Args:
        text: Full contents of the CSV file

    Returns:
        list of lists of strings
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text, newline=""))
    return [row for row in reader if any(cell.strip() for cell in row)]


def _norm_header(cell):
    return str(cell).strip().strip('"').strip().lower()


def find_header(records):
    """Return the index of the first record containing the ID, Datetime and Type columns."""
    for i, record in enumerate(records):
        cells = {_norm_header(c) for c in record}
        if all(token in cells for token in HEADER_TOKENS):
            return i
    return None


def map_columns(header):
    """
    Map logical column keys to positions in the header row.

    Exact alias matches win; the amount column otherwise falls back to the
    first column mentioning "amount" that is not a fee, tax or tip breakdown.

    Raises:
        CsvParseError: If a required column is missing
    """
    names = [_norm_header(h) for h in header]
    out = {}
    for key, aliases in COLUMN_ALIASES.items():
        pick = None
        for alias in aliases:
            if alias in names:
                pick = names.index(alias)
                break
        out[key] = pick

    if out["amount"] is None:
        for i, name in enumerate(names):
            if "amount" in name and not any(x in name for x in ("fee", "tax", "tip")):
                out["amount"] = i
                break

    missing = [key for key in REQUIRED_COLUMNS if out[key] is None]
    if missing:
        expected = "; ".join(f"{key}: one of {COLUMN_ALIASES[key]}" for key in missing)
        raise CsvParseError(
            f"Could not find required columns in CSV ({expected}). "
            f"Columns found: {[h for h in header if str(h).strip()]}"
        )
    return out


def parse_amount(value):
    """
    Parse a signed statement amount such as ``+ $1,250.00`` or ``- $25.00``.

    Returns:
        float, or None when the value is not a number
    """
    if value is None:
        return None
    s = AMOUNT_STRIP.sub("", str(value))
    if s.startswith("+"):
        s = s[1:]
    if not s:
        return None
    try:
        return round(float(s), 2)
    except ValueError:
        return None


def normalize_date(value):
    """Keep only the date portion of an ISO-like date-time."""
    s = str(value or "").strip()
    return s.split("T", 1)[0] if "T" in s else s


# ------------------------- Owner & Direction -------------------------

def infer_owner(rows):
    """
    Infer the statement owner's own display name.

    Every kept row involves the owner on one side, so the name seen most often
    across the From and To columns is taken to be the owner. Ties go to the
    name that most often sits in the role implied by the amount sign
    (recipient of money in, sender of money out), then to first appearance.

    Args:
        rows: DataFrame with ``from``, ``to`` and ``amount`` columns

    Returns:
        str or None when no names are present
    """
    seen = Counter()
    in_role = Counter()
    for _, row in rows.iterrows():
        sender = row["from"].strip()
        recipient = row["to"].strip()
        for name in (sender, recipient):
            if name:
                seen[name] += 1
        amt = row["amount"]
        if amt is None or pd.isna(amt):
            continue
        role_name = recipient if amt >= 0 else sender
        if role_name:
            in_role[role_name] += 1

    if not seen:
        return None
    top = max(seen.values())
    tied = [name for name in seen if seen[name] == top]
    if len(tied) > 1:
        logger.debug(f"Owner inference tie between {tied}; breaking by role")
    # max() keeps the first of equal keys, and `seen` preserves first appearance
    return max(tied, key=lambda name: in_role[name])


def counterparty_for(sender, recipient, owner):
    """Pick the side of a transaction that is not the owner."""
    owner_key = (owner or "").strip().lower()
    if owner_key:
        if sender.strip().lower() == owner_key and recipient.strip():
            return recipient.strip()
        if recipient.strip().lower() == owner_key:
            return sender.strip()
    return sender.strip()


# ------------------------- Parsing -------------------------

def _cell(record, idx):
    if idx is None or idx >= len(record):
        return ""
    return str(record[idx]).strip()


def parse_venmo_csv(text, owner=None):
    """
    Parse a Venmo statement into received, completed payments.

    Args:
        text: Raw CSV text
        owner: Optional owner display name; inferred from the rows when omitted

    Returns:
        tuple: (transactions_df, owner)
            transactions_df columns: id, datetime, date, type, status, note,
            from, to, amount, counterparty

    Raises:
        CsvParseError: If the header or required columns are missing, or if no
            received payment remains after filtering
    """
    records = split_records(text)
    if not records:
        raise CsvParseError("CSV file appears to be empty")

    header_idx = find_header(records)
    if header_idx is None:
        raise CsvParseError(
            "Could not find the header row in CSV (expected columns: "
            + ", ".join(HEADER_TOKENS) + ")"
        )
    header = records[header_idx]
    m = map_columns(header)
    if header_idx:
        logger.debug(f"Skipped {header_idx} banner line(s) before the header row")

    rows = []
    skipped_ids = 0
    for record in records[header_idx + 1:]:
        row_id = _cell(record, m["id"])
        if m["id"] is not None and not NUMERIC_ID.match(row_id):
            skipped_ids += 1
            continue
        rows.append({
            "id": row_id,
            "datetime": _cell(record, m["datetime"]),
            "type": _cell(record, m["type"]),
            "status": _cell(record, m["status"]),
            "note": _cell(record, m["note"]),
            "from": _cell(record, m["from"]),
            "to": _cell(record, m["to"]),
            "amount_raw": _cell(record, m["amount"]),
        })
    if skipped_ids:
        logger.debug(f"Skipped {skipped_ids} summary/footer row(s) without a numeric ID")

    columns = ["id", "datetime", "type", "status", "note", "from", "to", "amount_raw"]
    df = pd.DataFrame(rows, columns=columns)

    is_payment = df["type"].str.lower() == PAYMENT_TYPE
    is_complete = df["status"].str.lower() == COMPLETE_STATUS
    if m["status"] is None:
        is_complete = pd.Series(True, index=df.index)
    payment_rows = int(is_payment.sum())
    payments = df[is_payment & is_complete].copy()
    payments["amount"] = pd.to_numeric(payments["amount_raw"].map(parse_amount), errors="coerce")
    payments = payments[payments["amount"].notna()].copy()

    if owner is None:
        owner = infer_owner(payments)
    logger.info(f"Statement owner: {owner or 'unknown'}")

    received = payments[payments["amount"] >= 0].copy()
    positive_count = int((received["amount"] > 0).sum())

    if received.empty:
        raise CsvParseError(
            f"No received payments found in CSV: saw {payment_rows} 'payment' row(s), "
            f"{len(payments)} completed, {positive_count} with a positive (received) amount. "
            "Check that this is the statement of the account that receives patient payments."
        )

    received["date"] = received["datetime"].map(normalize_date)
    received["counterparty"] = [
        counterparty_for(s, r, owner) for s, r in zip(received["from"], received["to"])
    ]
    received["amount"] = received["amount"].astype(float)
    out = received[["id", "datetime", "date", "type", "status", "note", "from", "to",
                    "amount", "counterparty"]].reset_index(drop=True)
    logger.info(f"✓ Parsed {len(out)} received payment(s) from {out['counterparty'].nunique()} person(s)")
    return out, owner


# ------------------------- Patient Mapping -------------------------

def auto_map_counterparties(counterparties, known_patients):
    """
    Pre-fill mappings from counterparty names to known patients.

    A counterparty maps to the first known patient whose name contains it, or
    is contained by it, ignoring case.

    Args:
        counterparties: Iterable of counterparty names
        known_patients: list of {"name", "member_id"} dicts

    Returns:
        dict of counterparty -> {"name", "member_id", "auto": True}; the
        member ID may be blank when the matched patient has none on file
    """
    mappings = {}
    for cp in dict.fromkeys(counterparties):
        needle = str(cp or "").strip().lower()
        if not needle:
            continue
        for patient in known_patients:
            name = str(patient.get("name") or "").strip().lower()
            if name and (needle in name or name in needle):
                mappings[cp] = {"name": patient["name"], "member_id": patient.get("member_id") or "",
                                "auto": True}
                break
    unmapped = [cp for cp in dict.fromkeys(counterparties) if cp not in mappings]
    if unmapped:
        logger.warning(f"⚠️  {len(unmapped)} counterparty(ies) not mapped to a patient: {', '.join(unmapped)}")
    return mappings


def summarize_counterparties(transactions, mappings):
    """One row per counterparty with count, total and current mapping."""
    if transactions.empty:
        return pd.DataFrame(columns=["counterparty", "payments", "total", "patient_name", "member_id", "mapped"])
    summary = transactions.groupby("counterparty", sort=False).agg(
        payments=("amount", "size"),
        total=("amount", "sum"),
    ).reset_index()
    summary["total"] = summary["total"].round(2)
    summary["patient_name"] = summary["counterparty"].map(lambda c: mappings.get(c, {}).get("name", ""))
    summary["member_id"] = summary["counterparty"].map(lambda c: mappings.get(c, {}).get("member_id", ""))
    summary["mapped"] = summary["counterparty"].map(lambda c: is_mapped(mappings.get(c)))
    return summary


def is_mapped(mapping):
    """
    A mapping needs a patient name. Typed-in mappings also need a member ID;
    auto-matched ones take the known patient as is, blank member ID included.
    """
    if not mapping or not str(mapping.get("name") or "").strip():
        return False
    return bool(mapping.get("auto")) or bool(str(mapping.get("member_id") or "").strip())


def build_venmo_import(transactions, mappings):
    """
    Build Venmo payment records for mapped counterparties.

    Counterparties that are not mapped (see is_mapped) are skipped.

    Returns:
        list of {"patient_name", "member_subscriber_id", "amount", "date", "notes"}
    """
    payments = []
    for _, tx in transactions.iterrows():
        mapping = mappings.get(tx["counterparty"])
        if not is_mapped(mapping):
            continue
        payments.append({
            "patient_name": mapping["name"].strip(),
            "member_subscriber_id": mapping["member_id"].strip(),
            "amount": float(tx["amount"]),
            "date": normalize_date(tx["datetime"]),
            "notes": tx["note"] or f"Venmo from {tx['counterparty']}",
        })
    return payments
