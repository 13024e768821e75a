#!/usr/bin/env python3
"""
Patient Payment Reconciliation

Reconciles insurance carrier remittances against patient (Venmo) payments per
patient and reports what each patient still owes, using the member/subscriber
ID as the patient identity and the patient name only when no ID is on file.

Usage:
    python3 payment_recon.py --insurance <remittances.xlsx> [--venmo <statement.csv>] [--out <output.xlsx>]
"""
import argparse
import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path
from urllib.parse import quote

import pandas as pd

import venmo_csv

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(message)s'
)
logger = logging.getLogger(__name__)

# ------------------------- Parameters -------------------------

# Amount matching
AMOUNT_TOL = 0.005  # Half a cent; balances inside this band count as settled

PATIENT_TOKEN_SEP = "|||"  # memberID|||patientName in patient detail links
NAME_KEY_PREFIX = "name:"  # keeps name-based keys apart from member IDs

PAID_IN_FULL = "Paid in Full"
OUTSTANDING = "Outstanding"
OVERPAID = "Overpaid"
STATUS_FILTERS = {"all", "outstanding", "paid", "overpaid"}

INSURANCE_COLUMNS = [
    "id", "claim_status", "dates_of_service", "member_subscriber_id", "provider_name",
    "payment_date", "claim_number", "check_number", "check_eft_amount", "payee_name",
    "payee_address", "tracking_status",
]
VENMO_COLUMNS = ["id", "patient_name", "member_subscriber_id", "amount", "date", "notes"]

INSURANCE_ALIASES = {
    "claim_status": ["Claim status", "ClaimStatus", "Reasons"],
    "dates_of_service": ["Dates of service", "DatesOfService", "Service Date", "Service Dates"],
    "member_subscriber_id": ["Member subscriber ID", "MemberSubscriberID", "Member ID", "MemberID",
                             "Subscriber ID"],
    "provider_name": ["Provider name", "ProviderName", "Provider", "Doctor Name"],
    "payment_date": ["Payment date", "PaymentDate", "Record Date"],
    "claim_number": ["Claim number", "ClaimNumber", "Claim #", "Claim#"],
    "check_number": ["Check/EFT number", "Check number", "CheckNumber", "Check #", "Check#",
                     "EFT Number"],
    "check_eft_amount": ["Claim amount paid", "ClaimAmountPaid", "Check/EFT amount", "CheckEFTAmount",
                         "Amount", "Payment Amount"],
    "payee_name": ["Member Name", "MemberName", "Patient Name", "PatientName", "Patient"],
    "payee_address": ["Payee address", "PayeeAddress", "Address"],
}


def r2(x, nd=2):
    try:
        return round(float(x), nd)
    except (TypeError, ValueError):
        return None

# ------------------------- Loaders & Helpers -------------------------

def validate_file_exists(file_path):
    """
    Validate that the input file exists and is readable.

    Args:
        file_path: Path to the file to validate

    Raises:
        FileNotFoundError: If file doesn't exist
        PermissionError: If file isn't readable
    """
    path = Path(file_path)
    if not path.exists():
        logger.error(f"File not found: {file_path}")
        raise FileNotFoundError(f"Input file does not exist: {file_path}")
    if not path.is_file():
        logger.error(f"Path is not a file: {file_path}")
        raise ValueError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        logger.error(f"File is not readable: {file_path}")
        raise PermissionError(f"File is not readable: {file_path}")
    logger.info(f"✓ File validated: {path.name}")

def colmap(df, wanted_names, sheet_name="", required=None):
    """
    Map column names flexibly using aliases.

    Args:
        df: DataFrame to map columns for
        wanted_names: Dict of {key: [list of possible column names]}
        sheet_name: Name of sheet (for error messages)
        required: List of keys that are required (will raise error if missing)

    Returns:
        Dict mapping keys to actual column names (or None if not found)

    Raises:
        ValueError: If required columns are missing
    """
    low = {str(c).strip().lower(): c for c in df.columns}
    out = {}
    missing_required = []

    for key, aliases in wanted_names.items():
        pick = None
        for a in aliases:
            if a and a.lower() in low:
                pick = low[a.lower()]
                break
        out[key] = pick

        if required and key in required and pick is None:
            missing_required.append((key, aliases))

    if missing_required:
        sheet_msg = f" in sheet '{sheet_name}'" if sheet_name else ""
        error_msg = f"Missing required columns{sheet_msg}:\n"
        for key, aliases in missing_required:
            error_msg += f"  - {key}: Expected one of {aliases}\n"
        error_msg += f"\nAvailable columns: {list(df.columns)}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    return out

def normalize_amount(x):
    if x is None or (not isinstance(x, str) and pd.isna(x)):
        return None
    return r2(str(x).replace(",", "").replace("$", "").strip())

def format_cell(x):
    """Render a spreadsheet cell as text; dates become MM/DD/YYYY."""
    if x is None:
        return ""
    if isinstance(x, (pd.Timestamp, datetime, date)):
        return x.strftime("%m/%d/%Y")
    if isinstance(x, float):
        if pd.isna(x):
            return ""
        if x.is_integer():
            return str(int(x))
    return str(x).strip()

def load_insurance_sheet(path, sheet=None):
    """
    Load and normalize an insurance remittance export.

    Args:
        path: Path to an .xlsx workbook or a .csv file
        sheet: Sheet name for workbooks (first sheet when omitted)

    Returns:
        DataFrame with one row per remittance line, snake_case columns

    Raises:
        ValueError: If required columns are missing or the file type is unsupported
    """
    validate_file_exists(path)
    suffix = Path(path).suffix.lower()
    if suffix not in (".csv", ".xlsx", ".xlsm"):
        raise ValueError(f"Unsupported file type '{suffix}': expected an .xlsx workbook or a .csv file")
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        sheet_label = Path(path).name
    else:
        df = pd.read_excel(path, sheet_name=sheet if sheet else 0)
        sheet_label = sheet or "first sheet"
    logger.info(f"  Loaded {len(df)} rows from {sheet_label}")

    required = ["payee_name", "dates_of_service", "payment_date"]
    m = colmap(df, INSURANCE_ALIASES, sheet_name=sheet_label, required=required)

    out = pd.DataFrame(index=df.index)
    for key in INSURANCE_ALIASES:
        out[key] = df[m[key]].map(format_cell) if m[key] is not None else ""
    amounts = df[m["check_eft_amount"]].map(normalize_amount) if m["check_eft_amount"] is not None else None
    out["check_eft_amount"] = pd.to_numeric(amounts, errors="coerce") if amounts is not None else 0.0
    out["check_eft_amount"] = out["check_eft_amount"].fillna(0.0)

    keep = (out["payee_name"] != "") & (out["dates_of_service"] != "") & (out["payment_date"] != "")
    dropped = int((~keep).sum())
    if dropped:
        logger.info(f"  Skipped {dropped} row(s) missing payee name, service dates or payment date")
    out = out.loc[keep].reset_index(drop=True)
    return backfill_member_ids(out)

def backfill_member_ids(df):
    """
    Fill blank member IDs from other rows of the same patient name.

    Only names that carry exactly one distinct member ID are filled; a name
    seen with several IDs belongs to more than one person and is left alone.
    """
    df = df.copy()
    ids = df["member_subscriber_id"].fillna("").astype(str).str.strip()
    names = df["payee_name"].fillna("").astype(str).str.strip().str.lower()
    df["member_subscriber_id"] = ids

    ids_by_name = {}
    for name, mid in zip(names[ids != ""], ids[ids != ""]):
        ids_by_name.setdefault(name, {}).setdefault(mid.lower(), mid)

    filled = 0
    ambiguous = set()
    for i in df.index[ids == ""]:
        candidates = ids_by_name.get(names[i])
        if not candidates:
            continue
        if len(candidates) == 1:
            df.at[i, "member_subscriber_id"] = next(iter(candidates.values()))
            filled += 1
        else:
            ambiguous.add(df.at[i, "payee_name"])

    if filled:
        logger.info(f"📋 Filled {filled} blank member ID(s) from rows with the same patient name")
    if ambiguous:
        logger.warning(f"⚠️  Left member ID blank for names used with several IDs: {', '.join(sorted(ambiguous))}")
    return df

def insurance_frame(records):
    """Build an insurance DataFrame from stored records (dicts)."""
    df = pd.DataFrame(list(records), columns=INSURANCE_COLUMNS)
    for col in INSURANCE_COLUMNS:
        if col != "check_eft_amount":
            df[col] = df[col].fillna("").astype(str)
    df["check_eft_amount"] = pd.to_numeric(df["check_eft_amount"], errors="coerce").fillna(0.0)
    return df

def venmo_frame(records):
    """Build a Venmo DataFrame from stored records (dicts)."""
    df = pd.DataFrame(list(records), columns=VENMO_COLUMNS)
    for col in VENMO_COLUMNS:
        if col != "amount":
            df[col] = df[col].fillna("").astype(str)
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0.0)
    return df

def known_patients(insurance):
    """
    Distinct patients seen on insurance payments, for mapping and autocomplete.

    Keyed by lower-cased name; an entry carrying a member ID replaces one without.

    Returns:
        list of {"name", "member_id"} dicts
    """
    patients = {}
    for name, mid in zip(insurance["payee_name"], insurance["member_subscriber_id"]):
        name = str(name or "").strip()
        mid = str(mid or "").strip()
        if not name:
            continue
        key = name.lower()
        existing = patients.get(key)
        if existing is None or (not existing["member_id"] and mid):
            patients[key] = {"name": name, "member_id": mid}
    return list(patients.values())

# ------------------------- Patient Identity -------------------------

def patient_key(member_id, name):
    """
    Case-insensitive grouping key for a payment.

    The member ID identifies the patient whenever one is present. Without it the
    name is used, in its own namespace, so a blank-ID payment only ever groups
    with other blank-ID payments of the same name and never with a patient who
    has an ID.
    """
    mid = str(member_id or "").strip().lower()
    if mid:
        return mid
    return NAME_KEY_PREFIX + " ".join(str(name or "").split()).lower()

def make_patient_token(member_id, name):
    """Percent-encoded ``memberID|||patientName`` token for the patient detail lookup."""
    return quote(f"{member_id or ''}{PATIENT_TOKEN_SEP}{name or ''}", safe="")

def parse_patient_token(token):
    """
    Split a decoded patient token into (member_id, name).

    Accepts ``memberID`` or ``memberID|||patientName``.
    """
    token = str(token or "")
    if PATIENT_TOKEN_SEP in token:
        member_id, name = token.split(PATIENT_TOKEN_SEP, 1)
    else:
        member_id, name = token, ""
    return member_id.strip(), name.strip()

def _lower(series):
    return series.fillna("").astype(str).str.strip().str.lower()

def resolve_patient_rows(insurance, venmo, member_id, name=""):
    """
    Select one patient's insurance and Venmo payments.

    A member ID selects by ID. When the ID finds no insurance payment and a name
    was supplied, insurance and Venmo payments that have no member ID but carry
    that name are used instead. Payments under a different member ID are never
    pulled in by name. Without a member ID the lookup is by name over blank-ID
    payments only.

    Returns:
        tuple: (insurance_rows, venmo_rows, used_name_fallback)

    Raises:
        ValueError: If neither a member ID nor a name is given
    """
    mid = str(member_id or "").strip().lower()
    nm = " ".join(str(name or "").split()).lower()
    if not mid and not nm:
        raise ValueError("Member ID or patient name is required")

    ins_mid, ins_name = _lower(insurance["member_subscriber_id"]), _lower(insurance["payee_name"])
    ven_mid, ven_name = _lower(venmo["member_subscriber_id"]), _lower(venmo["patient_name"])
    ins_by_name = insurance[(ins_mid == "") & (ins_name == nm)]
    ven_by_name = venmo[(ven_mid == "") & (ven_name == nm)]

    if not mid:
        return ins_by_name, ven_by_name, False

    ins_rows = insurance[ins_mid == mid]
    ven_rows = venmo[ven_mid == mid]
    if ins_rows.empty and nm and not ins_by_name.empty:
        logger.info(f"No insurance payments under member ID {member_id}; using blank-ID payments for {name}")
        return ins_by_name, pd.concat([ven_rows, ven_by_name]), True
    return ins_rows, ven_rows, False

def _address_key(address):
    return " ".join(str(address or "").split()).lower()

def drop_ignored_addresses(insurance, ignored_addresses):
    """Remove insurance payments sent to ignored (provider) addresses."""
    ignored = {_address_key(a) for a in (ignored_addresses or []) if _address_key(a)}
    if not ignored or insurance.empty:
        return insurance
    mask = insurance["payee_address"].map(_address_key).isin(ignored)
    if mask.any():
        logger.info(f"Hiding {int(mask.sum())} insurance payment(s) sent to ignored addresses")
    return insurance.loc[~mask]

# ------------------------- Reconciliation -------------------------

def balance_status(balance):
    b = r2(balance) or 0.0
    if abs(b) < AMOUNT_TOL:
        return PAID_IN_FULL
    return OUTSTANDING if b > 0 else OVERPAID

def aggregate_patients(insurance, venmo):
    """
    Build one reconciliation record per patient.

    Args:
        insurance: DataFrame of insurance payments (see INSURANCE_COLUMNS)
        venmo: DataFrame of Venmo payments (see VENMO_COLUMNS)

    Returns:
        DataFrame with patient_key, member_id, name, total_insurance, total_paid,
        balance, status, insurance_count, venmo_count, patient_token; sorted by
        balance, largest first
    """
    ins = insurance.copy()
    ins["patient_key"] = [patient_key(m, n) for m, n in zip(ins["member_subscriber_id"], ins["payee_name"])]
    ins["check_eft_amount"] = pd.to_numeric(ins["check_eft_amount"], errors="coerce").fillna(0.0)
    ven = venmo.copy()
    ven["patient_key"] = [patient_key(m, n) for m, n in zip(ven["member_subscriber_id"], ven["patient_name"])]
    ven["amount"] = pd.to_numeric(ven["amount"], errors="coerce").fillna(0.0)

    # Insurance first: remittances carry the canonical name format
    ins_g = ins.groupby("patient_key", sort=False).agg(
        member_id=("member_subscriber_id", "first"),
        name=("payee_name", "first"),
        total_insurance=("check_eft_amount", "sum"),
        insurance_count=("check_eft_amount", "size"),
    ).reset_index()
    ven_g = ven.groupby("patient_key", sort=False).agg(
        member_id_venmo=("member_subscriber_id", "first"),
        name_venmo=("patient_name", "first"),
        total_paid=("amount", "sum"),
        venmo_count=("amount", "size"),
    ).reset_index()

    patients = ins_g.merge(ven_g, on="patient_key", how="outer")
    patients["member_id"] = patients["member_id"].fillna(patients["member_id_venmo"]).fillna("")
    patients["name"] = patients["name"].fillna(patients["name_venmo"]).fillna("")
    for col in ("total_insurance", "total_paid"):
        patients[col] = patients[col].fillna(0.0).astype(float).round(2)
    for col in ("insurance_count", "venmo_count"):
        patients[col] = patients[col].fillna(0).astype(int)

    patients["balance"] = (patients["total_insurance"] - patients["total_paid"]).round(2)
    patients["status"] = patients["balance"].map(balance_status)
    patients["patient_token"] = [make_patient_token(m, n) for m, n in zip(patients["member_id"], patients["name"])]

    cols = ["patient_key", "member_id", "name", "total_insurance", "total_paid", "balance", "status",
            "insurance_count", "venmo_count", "patient_token"]
    return patients[cols].sort_values("balance", ascending=False, kind="mergesort").reset_index(drop=True)

def filter_patients(patients, search="", status="all"):
    """Filter reconciliation records by name/member ID substring and balance status."""
    if status not in STATUS_FILTERS:
        raise ValueError(f"Unknown status filter '{status}'. Expected one of {sorted(STATUS_FILTERS)}")
    out = patients
    q = str(search or "").strip().lower()
    if q:
        hit = out["name"].astype(str).str.lower().str.contains(q, regex=False) | \
              out["member_id"].astype(str).str.lower().str.contains(q, regex=False)
        out = out[hit]
    if status == "outstanding":
        out = out[out["status"] == OUTSTANDING]
    elif status == "paid":
        out = out[out["status"] == PAID_IN_FULL]
    elif status == "overpaid":
        out = out[out["status"] == OVERPAID]
    return out.reset_index(drop=True)

def summary_stats(patients):
    outstanding = patients[patients["status"] == OUTSTANDING]
    overpaid = patients[patients["status"] == OVERPAID]
    return {
        "patients": len(patients),
        "outstanding_count": len(outstanding),
        "outstanding_total": r2(outstanding["balance"].sum()) or 0.0,
        "paid_in_full_count": int((patients["status"] == PAID_IN_FULL).sum()),
        "overpaid_count": len(overpaid),
        "overpaid_total": r2(abs(overpaid["balance"].sum())) or 0.0,
        "total_insurance": r2(patients["total_insurance"].sum()) or 0.0,
        "total_paid": r2(patients["total_paid"].sum()) or 0.0,
    }

def build_summary(patients, unmapped=None):
    stats = summary_stats(patients)
    metrics = [
        "Patients (count)",
        "Outstanding (count)",
        "Outstanding balance total",
        "Paid in full (count)",
        "Overpaid (count)",
        "Overpaid total",
        "Insurance received total",
        "Patient paid total",
    ]
    values = [
        stats["patients"], stats["outstanding_count"], stats["outstanding_total"],
        stats["paid_in_full_count"], stats["overpaid_count"], stats["overpaid_total"],
        stats["total_insurance"], stats["total_paid"],
    ]
    if unmapped is not None and not unmapped.empty:
        metrics.append("⚠️ Unmapped Venmo payments (count)")
        values.append(len(unmapped))
    return pd.DataFrame({"metric": metrics, "value": values})

# ------------------------- Coverage Allocation -------------------------

def allocate_coverage(items, total_paid, amount_col="check_eft_amount"):
    """
    Mark which insurance payments the patient's payments have settled.

    Payments are applied oldest debt first. ``items`` is in display order
    (newest first), so it is walked in reverse. Each item the remaining pool
    fully covers is marked ``full``; the first item the pool cannot cover is
    marked ``partial`` with the covered percentage, and every later item stays
    ``none``. At most one item is ever partial.

    Args:
        items: DataFrame of one patient's insurance payments, newest first
        total_paid: Sum of the patient's Venmo payments
        amount_col: Column holding each item's amount

    Returns:
        Copy of items with ``coverage`` and ``coverage_pct`` columns, same order
    """
    out = items.copy()
    out["coverage"] = "none"
    out["coverage_pct"] = 0.0

    remaining = r2(total_paid) or 0.0
    for idx in reversed(out.index.tolist()):
        if remaining <= AMOUNT_TOL:
            break
        amt = r2(out.at[idx, amount_col]) or 0.0
        if amt - remaining <= AMOUNT_TOL:
            out.at[idx, "coverage"] = "full"
            out.at[idx, "coverage_pct"] = 100.0
            remaining = r2(remaining - amt)
        else:
            out.at[idx, "coverage"] = "partial"
            out.at[idx, "coverage_pct"] = round(remaining / amt * 100, 2)
            break
    return out

# ------------------------- Output -------------------------

def export_reconciliation(out_path, patients, insurance, venmo, unmapped=None):
    """
    Write a reconciliation workbook.

    Sheets: Patients, Summary, Insurance_Payments, Venmo_Payments and, when
    given, Unmapped_Venmo.
    """
    summary = build_summary(patients, unmapped)
    money_cols = {
        "Patients": ["total_insurance", "total_paid", "balance"],
        "Insurance_Payments": ["check_eft_amount"],
        "Venmo_Payments": ["amount"],
        "Unmapped_Venmo": ["amount"],
    }
    sheets = [
        ("Patients", patients.drop(columns=["patient_key", "patient_token"], errors="ignore")),
        ("Summary", summary),
        ("Insurance_Payments", insurance.drop(columns=["id"], errors="ignore")),
        ("Venmo_Payments", venmo.drop(columns=["id"], errors="ignore")),
    ]
    if unmapped is not None and not unmapped.empty:
        sheets.append(("Unmapped_Venmo", unmapped))

    with pd.ExcelWriter(out_path, engine="xlsxwriter") as w:
        workbook = w.book
        currency_format = workbook.add_format({'num_format': '$#,##0.00'})
        header_format = workbook.add_format({'bold': True, 'bg_color': '#D7E4BC'})

        for name, df in sheets:
            df.to_excel(w, sheet_name=name, index=False)
            worksheet = w.sheets[name]
            for col_idx, col in enumerate(df.columns):
                worksheet.write(0, col_idx, col, header_format)
                width = 15 if col in money_cols.get(name, []) else 22
                fmt = currency_format if col in money_cols.get(name, []) else None
                worksheet.set_column(col_idx, col_idx, width, fmt)

    logger.info(f"✓ Reconciliation written to: {out_path}")

# ------------------------- Orchestration -------------------------

def run(insurance_path, out_path, venmo_path=None, sheet=None, owner=None, ignored_addresses=None):
    """
    Reconcile an insurance export against a Venmo statement.

    Venmo counterparties are auto-mapped onto the patients found in the
    insurance export; unmapped payments are reported, not reconciled.

    Args:
        insurance_path: Insurance remittance export (.xlsx/.csv)
        out_path: Path for output Excel file
        venmo_path: Optional Venmo statement CSV
        sheet: Optional sheet name in the insurance workbook
        owner: Optional statement owner name (inferred when omitted)
        ignored_addresses: Payee addresses to leave out of the reconciliation

    Returns:
        DataFrame of per-patient reconciliation records

    Raises:
        FileNotFoundError: If an input file doesn't exist
        ValueError: If required columns are missing or the statement has no payments
    """
    logger.info("="*70)
    logger.info("RECONCILIATION STARTING")
    logger.info("="*70)

    logger.info("\n--- Loading Data ---")
    insurance = load_insurance_sheet(insurance_path, sheet)
    insurance = insurance.reindex(columns=INSURANCE_COLUMNS, fill_value="")
    insurance["check_eft_amount"] = pd.to_numeric(insurance["check_eft_amount"], errors="coerce").fillna(0.0)
    insurance = drop_ignored_addresses(insurance, ignored_addresses)

    venmo = venmo_frame([])
    unmapped = None
    if venmo_path:
        validate_file_exists(venmo_path)
        text = Path(venmo_path).read_text(encoding="utf-8-sig", errors="replace")
        transactions, owner = venmo_csv.parse_venmo_csv(text, owner=owner)
        mappings = venmo_csv.auto_map_counterparties(transactions["counterparty"], known_patients(insurance))
        venmo = venmo_frame(venmo_csv.build_venmo_import(transactions, mappings))
        unmapped = transactions[~transactions["counterparty"].map(
            lambda c: venmo_csv.is_mapped(mappings.get(c)))][["date", "counterparty", "amount", "note"]]
        if not unmapped.empty:
            logger.warning(f"⚠️  {len(unmapped)} Venmo payment(s) left out - no matching patient")

    logger.info("\n--- Reconciling ---")
    patients = aggregate_patients(insurance, venmo)
    stats = summary_stats(patients)
    logger.info(f"Patients: {stats['patients']} | Outstanding: {stats['outstanding_count']} "
                f"(${stats['outstanding_total']:,.2f}) | Overpaid: {stats['overpaid_count']}")

    export_reconciliation(out_path, patients, insurance, venmo, unmapped)
    return patients

# ------------------------- CLI -------------------------

if __name__ == "__main__":
    ap = argparse.ArgumentParser(
        description="Reconcile insurance remittances against patient Venmo payments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 payment_recon.py --insurance remittances.xlsx
  python3 payment_recon.py --insurance remittances.xlsx --venmo venmo_statement.csv --out recon.xlsx
        """
    )
    ap.add_argument("--insurance", required=True, help="Insurance remittance export (.xlsx or .csv)")
    ap.add_argument("--sheet", default=None, help="Sheet name in the insurance workbook (default: first sheet)")
    ap.add_argument("--venmo", default=None, help="Venmo statement CSV")
    ap.add_argument("--owner", default=None, help="Venmo display name of the statement owner (default: inferred)")
    ap.add_argument("--ignore-address", action="append", default=[],
                    help="Payee address to leave out (provider payments); repeatable")
    default_out = f"Patient_Reconciliation-{date.today().isoformat()}.xlsx"
    ap.add_argument("--out", default=default_out, help="Output file path (default: auto-dated)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = ap.parse_args()

    if args.verbose:
        logger.setLevel(logging.DEBUG)
        logging.getLogger("venmo_csv").setLevel(logging.DEBUG)

    try:
        run(args.insurance, args.out, venmo_path=args.venmo, sheet=args.sheet, owner=args.owner,
            ignored_addresses=args.ignore_address)
        sys.exit(0)
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        logger.exception("Full traceback:")
        sys.exit(1)
