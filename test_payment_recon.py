#!/usr/bin/env python3
from urllib.parse import unquote

import pandas as pd
import pytest

import payment_recon
from payment_recon import (
    OUTSTANDING,
    OVERPAID,
    PAID_IN_FULL,
    aggregate_patients,
    allocate_coverage,
    backfill_member_ids,
    balance_status,
    drop_ignored_addresses,
    filter_patients,
    insurance_frame,
    known_patients,
    load_insurance_sheet,
    make_patient_token,
    parse_patient_token,
    patient_key,
    resolve_patient_rows,
    summary_stats,
    venmo_frame,
)


def ins(member_id, name, amount, **extra):
    row = {"member_subscriber_id": member_id, "payee_name": name, "check_eft_amount": amount}
    row.update(extra)
    return row


def ven(member_id, name, amount, **extra):
    row = {"member_subscriber_id": member_id, "patient_name": name, "amount": amount, "date": "2024-01-01"}
    row.update(extra)
    return row


def by_name(patients, name):
    return patients[patients["name"] == name].iloc[0]


# ------------------------- Aggregation -------------------------

def test_venmo_only_patient():
    """A patient with only Venmo payments has zero insurance and a negative balance"""
    patients = aggregate_patients(insurance_frame([]), venmo_frame([ven("V1", "Dana", 40.0), ven("v1", "Dana", 2.5)]))

    assert len(patients) == 1
    dana = patients.iloc[0]
    assert dana["total_insurance"] == 0
    assert dana["total_paid"] == pytest.approx(42.5)
    assert dana["balance"] == pytest.approx(-42.5)
    assert dana["status"] == OVERPAID
    assert dana["venmo_count"] == 2
    assert dana["insurance_count"] == 0


def test_status_labels():
    assert balance_status(0) == PAID_IN_FULL
    assert balance_status(0.001) == PAID_IN_FULL
    assert balance_status(12.5) == OUTSTANDING
    assert balance_status(-0.01) == OVERPAID


def test_groups_by_member_id_ignoring_case():
    """Member ID decides identity; the insurance spelling of the name wins"""
    insurance = insurance_frame([ins("ab12", "Alice Smith", 100.0), ins("AB12 ", "ALICE SMITH", 50.0)])
    venmo = venmo_frame([ven("Ab12", "alice", 150.0)])
    patients = aggregate_patients(insurance, venmo)

    assert len(patients) == 1
    alice = patients.iloc[0]
    assert alice["name"] == "Alice Smith"
    assert alice["total_insurance"] == pytest.approx(150.0)
    assert alice["balance"] == 0
    assert alice["status"] == PAID_IN_FULL


def test_blank_id_never_merges_with_member_id():
    """Name matching only applies between payments that both lack a member ID"""
    insurance = insurance_frame([ins("M1", "Sam Lee", 80.0), ins("", "sam lee", 20.0)])
    venmo = venmo_frame([ven("", "Sam Lee ", 5.0)])
    patients = aggregate_patients(insurance, venmo)

    assert len(patients) == 2
    with_id = patients[patients["member_id"] == "M1"].iloc[0]
    without_id = patients[patients["member_id"] == ""].iloc[0]
    assert with_id["balance"] == pytest.approx(80.0)
    assert without_id["total_insurance"] == pytest.approx(20.0)
    assert without_id["total_paid"] == pytest.approx(5.0)


def test_sorted_by_balance_descending():
    insurance = insurance_frame([ins("A", "Ann", 10.0), ins("B", "Ben", 300.0), ins("C", "Cy", 50.0)])
    venmo = venmo_frame([ven("D", "Dee", 20.0)])
    patients = aggregate_patients(insurance, venmo)

    assert list(patients["name"]) == ["Ben", "Cy", "Ann", "Dee"]


def test_patient_key():
    assert patient_key(" M1 ", "Anyone") == "m1"
    assert patient_key("", "  Jo   Doe ") == "name:jo doe"
    assert patient_key(None, "Jo") == "name:jo"


def test_filter_and_summary():
    insurance = insurance_frame([ins("A1", "Ann Ames", 100.0), ins("B1", "Ben Bo", 40.0), ins("C1", "Cy Cole", 10.0)])
    venmo = venmo_frame([ven("A1", "Ann", 30.0), ven("B1", "Ben", 40.0), ven("C1", "Cy", 25.0)])
    patients = aggregate_patients(insurance, venmo)

    assert list(filter_patients(patients, "ann")["name"]) == ["Ann Ames"]
    assert list(filter_patients(patients, "b1")["name"]) == ["Ben Bo"]
    assert list(filter_patients(patients, status="paid")["name"]) == ["Ben Bo"]
    assert list(filter_patients(patients, status="overpaid")["name"]) == ["Cy Cole"]
    assert list(filter_patients(patients, status="outstanding")["name"]) == ["Ann Ames"]
    with pytest.raises(ValueError):
        filter_patients(patients, status="late")

    stats = summary_stats(patients)
    assert stats["patients"] == 3
    assert stats["outstanding_count"] == 1
    assert stats["outstanding_total"] == pytest.approx(70.0)
    assert stats["paid_in_full_count"] == 1
    assert stats["overpaid_total"] == pytest.approx(15.0)
    assert stats["total_insurance"] == pytest.approx(150.0)
    assert stats["total_paid"] == pytest.approx(95.0)


# ------------------------- Coverage -------------------------

def test_coverage_oldest_first():
    """$120 paid against $100, $50, $30 (oldest to newest): full, 40% partial, none"""
    items = insurance_frame([
        ins("M1", "Pat", 30.0, payment_date="03/01/2024"),
        ins("M1", "Pat", 50.0, payment_date="02/01/2024"),
        ins("M1", "Pat", 100.0, payment_date="01/01/2024"),
    ])
    covered = allocate_coverage(items, 120.0)

    assert list(covered["check_eft_amount"]) == [30.0, 50.0, 100.0]
    assert list(covered["coverage"]) == ["none", "partial", "full"]
    assert covered.iloc[1]["coverage_pct"] == pytest.approx(40.0)
    assert covered.iloc[2]["coverage_pct"] == pytest.approx(100.0)


def test_coverage_exact_and_empty_pool():
    items = insurance_frame([ins("M1", "Pat", 25.0), ins("M1", "Pat", 75.0)])

    exact = allocate_coverage(items, 100.0)
    assert list(exact["coverage"]) == ["full", "full"]

    nothing = allocate_coverage(items, 0)
    assert list(nothing["coverage"]) == ["none", "none"]
    assert (nothing["coverage"] == "partial").sum() == 0


# ------------------------- Patient lookup -------------------------

def lookup_data():
    insurance = insurance_frame([
        ins("M1", "Ann", 10.0),
        ins("", "Bob", 20.0),
        ins("M9", "Bob", 30.0),
    ])
    venmo = venmo_frame([ven("", "bob", 5.0), ven("M9", "Bob", 7.0)])
    return insurance, venmo


def test_lookup_by_member_id():
    insurance, venmo = lookup_data()
    ins_rows, ven_rows, fallback = resolve_patient_rows(insurance, venmo, "m9", "")

    assert list(ins_rows["check_eft_amount"]) == [30.0]
    assert list(ven_rows["amount"]) == [7.0]
    assert fallback is False


def test_lookup_falls_back_to_blank_id_rows_with_name():
    """An unknown member ID with a name uses blank-ID rows of that name, never other IDs"""
    insurance, venmo = lookup_data()
    ins_rows, ven_rows, fallback = resolve_patient_rows(insurance, venmo, "M7", "Bob")

    assert list(ins_rows["check_eft_amount"]) == [20.0]
    assert list(ven_rows["amount"]) == [5.0]
    assert fallback is True


def test_lookup_by_name_only():
    insurance, venmo = lookup_data()
    ins_rows, ven_rows, _ = resolve_patient_rows(insurance, venmo, "", "BOB")

    assert list(ins_rows["check_eft_amount"]) == [20.0]
    assert list(ven_rows["amount"]) == [5.0]


def test_lookup_requires_id_or_name():
    insurance, venmo = lookup_data()
    with pytest.raises(ValueError, match="required"):
        resolve_patient_rows(insurance, venmo, "", " ")


def test_parse_patient_token():
    assert parse_patient_token("M1|||Ann Lee") == ("M1", "Ann Lee")
    assert parse_patient_token("M1") == ("M1", "")
    assert parse_patient_token("|||Ann") == ("", "Ann")


def test_patient_token_is_percent_encoded():
    token = make_patient_token("", "Ann %41 Lee")
    assert "%" in token and "|" not in token
    assert parse_patient_token(unquote(token)) == ("", "Ann %41 Lee")


# ------------------------- Loading helpers -------------------------

def test_backfill_only_unambiguous_names():
    df = pd.DataFrame({
        "payee_name": ["Ann", "ann ", "Cat", "Cat", "Cat", "Dan"],
        "member_subscriber_id": ["M1", "", "C1", "C2", "", ""],
    })
    out = backfill_member_ids(df)

    assert list(out["member_subscriber_id"]) == ["M1", "M1", "C1", "C2", "", ""]


def test_known_patients_prefers_member_id():
    insurance = insurance_frame([ins("", "Ann", 1.0), ins("M1", "ann", 1.0), ins("", "Bob", 1.0), ins("", " ", 1.0)])
    assert known_patients(insurance) == [
        {"name": "ann", "member_id": "M1"},
        {"name": "Bob", "member_id": ""},
    ]


def test_ignored_addresses_case_and_spacing():
    insurance = insurance_frame([
        ins("M1", "Ann", 10.0, payee_address="12 Main St"),
        ins("", "Clinic", 500.0, payee_address="PO Box 1,   Springfield"),
    ])
    kept = drop_ignored_addresses(insurance, ["po box 1, springfield "])

    assert list(kept["payee_name"]) == ["Ann"]
    assert len(drop_ignored_addresses(insurance, [])) == 2


def test_load_insurance_csv(tmp_path):
    """Aliased headers, money strings and incomplete rows"""
    path = tmp_path / "remits.csv"
    path.write_text(
        "Member Name,Member ID,Dates of Service,Payment Date,Check/EFT number,Check/EFT amount,Payee Address\n"
        "Alice Smith,M1,01/02/2024,01/20/2024,CHK1,\"$1,100.00\",12 Main St\n"
        "Alice Smith,,01/09/2024,01/27/2024,CHK2,50.00,12 Main St\n"
        "Carl,,,01/21/2024,CHK5,10.00,\n"
    )
    df = load_insurance_sheet(str(path))

    assert len(df) == 2
    assert list(df["check_eft_amount"]) == [1100.0, 50.0]
    assert list(df["member_subscriber_id"]) == ["M1", "M1"]
    assert df.iloc[0]["check_number"] == "CHK1"
    assert df.iloc[0]["claim_status"] == ""


def test_load_insurance_xlsx_dates(tmp_path):
    path = tmp_path / "remits.xlsx"
    pd.DataFrame({
        "Patient Name": ["Bob Jones"],
        "Subscriber ID": [12345],
        "Service Dates": ["01/03/2024 - 01/04/2024"],
        "Record Date": [pd.Timestamp("2024-02-01")],
        "Amount": [75.5],
    }).to_excel(path, index=False)
    df = load_insurance_sheet(str(path))

    row = df.iloc[0]
    assert row["payment_date"] == "02/01/2024"
    assert row["member_subscriber_id"] == "12345"
    assert row["check_eft_amount"] == pytest.approx(75.5)


def test_load_insurance_missing_columns(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("Name,Amount\nAnn,10\n")
    with pytest.raises(ValueError, match="Missing required columns"):
        load_insurance_sheet(str(path))


def test_load_missing_file():
    with pytest.raises(FileNotFoundError):
        load_insurance_sheet("/nonexistent/remits.xlsx")


def test_load_rejects_legacy_xls(tmp_path):
    path = tmp_path / "remits.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0")
    with pytest.raises(ValueError, match="Unsupported file type '.xls'"):
        load_insurance_sheet(path)


# ------------------------- End to end -------------------------

def test_run_writes_workbook(tmp_path):
    insurance_path = tmp_path / "remits.csv"
    insurance_path.write_text(
        "Member Name,Member ID,Dates of Service,Payment Date,Check/EFT amount,Payee Address\n"
        "Alice Smith,M1,01/02/2024,01/20/2024,100.00,12 Main St\n"
        "Alice Smith,,01/09/2024,01/27/2024,50.00,12 Main St\n"
        "Bob Jones,B7,01/03/2024,01/21/2024,\"1,200.00\",9 Elm St\n"
        "Dr Office,,01/03/2024,01/21/2024,300.00,PO Box 1\n"
    )
    venmo_path = tmp_path / "venmo.csv"
    venmo_path.write_text(
        "ID,Datetime,Type,Status,Note,From,To,Amount (total)\n"
        "1,2024-01-22T10:00:00,Payment,Complete,copay,Alice Smith,Owner,+ $120.00\n"
        "2,2024-01-23T10:00:00,Payment,Complete,,Bob Jones,Owner,+ $200.00\n"
        "3,2024-01-24T10:00:00,Payment,Complete,pizza,Zed,Owner,+ $5.00\n"
    )
    out_path = tmp_path / "recon.xlsx"

    patients = payment_recon.run(str(insurance_path), str(out_path), venmo_path=str(venmo_path),
                                 ignored_addresses=["po box 1"])

    assert list(patients["name"]) == ["Bob Jones", "Alice Smith"]
    assert by_name(patients, "Alice Smith")["balance"] == pytest.approx(30.0)
    assert by_name(patients, "Bob Jones")["balance"] == pytest.approx(1000.0)

    sheets = pd.ExcelFile(out_path).sheet_names
    assert sheets == ["Patients", "Summary", "Insurance_Payments", "Venmo_Payments", "Unmapped_Venmo"]
    unmapped = pd.read_excel(out_path, sheet_name="Unmapped_Venmo")
    assert list(unmapped["counterparty"]) == ["Zed"]


def test_run_credits_patient_without_member_id(tmp_path):
    insurance_path = tmp_path / "remits.csv"
    insurance_path.write_text(
        "Member Name,Member ID,Dates of Service,Payment Date,Check/EFT amount\n"
        "Carl Diaz,,01/02/2024,01/20/2024,100.00\n"
    )
    venmo_path = tmp_path / "venmo.csv"
    venmo_path.write_text(
        "ID,Datetime,Type,Status,Note,From,To,Amount (total)\n"
        "1,2024-01-22T10:00:00,Payment,Complete,copay,Carl Diaz,Owner,+ $60.00\n"
    )

    patients = payment_recon.run(str(insurance_path), str(tmp_path / "recon.xlsx"), venmo_path=str(venmo_path))

    carl = by_name(patients, "Carl Diaz")
    assert carl["total_paid"] == pytest.approx(60.0)
    assert carl["balance"] == pytest.approx(40.0)
    assert "Unmapped_Venmo" not in pd.ExcelFile(tmp_path / "recon.xlsx").sheet_names


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
