#!/usr/bin/env python3
"""
Patient Payment Tracker - Streamlit Interface
"""

import logging
import os
import tempfile
import traceback
from datetime import date, datetime
from io import BytesIO

import pandas as pd
import streamlit as st

import payment_recon
import venmo_csv
from tracker_api import PaymentTracker, TrackerError
from tracker_schemas import TrackingStatus

logging.basicConfig(
    level=os.environ.get("PAYMENT_TRACKER_LOG_LEVEL", "INFO").upper(),
    format='%(levelname)s: %(message)s'
)
logger = logging.getLogger(__name__)

PAGES = ["👥 Patients", "🏥 Insurance Payments", "💸 Venmo Payments", "⚙️ Settings"]
STATUS_FILTER_LABELS = {
    "All patients": "all",
    "Outstanding": "outstanding",
    "Paid in full": "paid",
    "Overpaid": "overpaid",
}
COVERAGE_COLORS = {"full": "#d4edda", "partial": "#fff3cd", "none": ""}


@st.cache_resource
def get_tracker():
    return PaymentTracker()


def inject_custom_css():
    """Inject custom CSS for branding and styling"""
    st.markdown("""
    <style>
    @import url('https://fonts.googleapis.com/css2?family=Outfit:wght@300..900&display=swap');

    :root {
        --ink: #101721;
        --teal-dark: #123C40;
        --accent: #178CC4;
        --accent-light: #68BCE4;
        --sky: #BEDFEE;
        --sand: #E6E4E1;
        --cloud: #F1F1F1;
    }

    html, body, [class*="appview-container"] {
        font-family: 'Outfit', system-ui, -apple-system, Segoe UI, Roboto, 'Helvetica Neue', Arial, sans-serif !important;
        color: var(--ink) !important;
    }

    .main .block-container {
        padding-top: 2rem !important;
        max-width: 1200px !important;
    }

    .pt-header {
        background: linear-gradient(135deg, var(--teal-dark), var(--accent));
        color: white;
        padding: 1.5rem 2rem;
        border-radius: 16px;
        margin-bottom: 1.5rem;
    }
    .pt-header h1 { color: white !important; margin: 0; font-weight: 800; }
    .pt-header p { margin: 0.25rem 0 0 0; opacity: 0.9; }

    .pill {
        display: inline-block;
        padding: 0.2rem 0.75rem;
        border-radius: 999px;
        font-size: 0.85rem;
        font-weight: 600;
        margin-right: 0.5rem;
    }
    .pill-info { background: var(--sky); color: var(--teal-dark); }
    .pill-success { background: #d4edda; color: #155724; }
    .pill-warning { background: #fff3cd; color: #856404; }
    .pill-danger { background: #f8d7da; color: #721c24; }
    </style>
    """, unsafe_allow_html=True)


def show_header():
    """Display the branded header"""
    st.markdown("""
    <div class="pt-header">
        <h1>Patient Payment Tracker</h1>
        <p>Match insurance remittances with what each patient has paid.</p>
    </div>
    """, unsafe_allow_html=True)


def create_status_pill(text, pill_type="info"):
    """Create a styled status pill"""
    return f'<span class="pill pill-{pill_type}">{text}</span>'


def status_pill(status):
    kind = {
        payment_recon.PAID_IN_FULL: "success",
        payment_recon.OUTSTANDING: "warning",
        payment_recon.OVERPAID: "danger",
    }.get(status, "info")
    return create_status_pill(status, kind)


def show_error(e):
    """Show a tracker error; unexpected errors get the traceback expander."""
    if isinstance(e, TrackerError):
        st.error(f"❌ {e}")
        return
    logger.exception("Unexpected error")
    st.error(f"An unexpected error occurred: {str(e)}")
    with st.expander("🔍 Technical Details (for debugging)"):
        st.code(traceback.format_exc())


def current_account(tracker):
    """Sign in through the identity provider and return the account context."""
    if not st.user.is_logged_in:
        st.info("Please sign in to see your payments.")
        if st.button("🔐 Sign in", type="primary"):
            st.login()
        st.stop()
    if "account" not in st.session_state:
        st.session_state["account"] = tracker.provision_user(st.user.to_dict())
    return st.session_state["account"]


def money(x):
    return f"${x:,.2f}"


# ------------------------- Patients -------------------------

def show_patients(tracker, ctx):
    st.subheader("👥 Patients")

    col1, col2 = st.columns([3, 2])
    with col1:
        search = st.text_input("Search by name or member ID", "")
    with col2:
        label = st.selectbox("Status", list(STATUS_FILTER_LABELS))

    result = tracker.list_patients(ctx, search=search, status=STATUS_FILTER_LABELS[label])
    stats = result["summary"]

    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Patients", stats["patients"])
    m2.metric("Outstanding", money(stats["outstanding_total"]), f"{stats['outstanding_count']} patients",
              delta_color="off")
    m3.metric("Paid in full", stats["paid_in_full_count"])
    m4.metric("Overpaid", money(stats["overpaid_total"]), f"{stats['overpaid_count']} patients",
              delta_color="off")

    patients = pd.DataFrame(result["patients"])
    if patients.empty:
        st.info("No patients match. Import insurance payments to get started.")
        return

    st.dataframe(
        patients[["name", "member_id", "total_insurance", "total_paid", "balance", "status"]],
        column_config={
            "name": "Patient",
            "member_id": "Member ID",
            "total_insurance": st.column_config.NumberColumn("Insurance", format="$%.2f"),
            "total_paid": st.column_config.NumberColumn("Patient paid", format="$%.2f"),
            "balance": st.column_config.NumberColumn("Balance", format="$%.2f"),
            "status": "Status",
        },
        hide_index=True,
        use_container_width=True,
    )

    labels = {row["patient_token"]: f"{row['name']} ({row['member_id'] or 'no member ID'})"
              for row in result["patients"]}
    token = st.selectbox("Open patient", list(labels), format_func=labels.get)
    if token:
        show_patient_detail(tracker, ctx, token)

    output = BytesIO()
    tracker.export_workbook(ctx, output)
    st.download_button(
        label="📥 Download Reconciliation",
        data=output.getvalue(),
        file_name=f"Patient_Reconciliation-{datetime.now().strftime('%Y-%m-%d')}.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        use_container_width=True
    )


def show_patient_detail(tracker, ctx, token):
    detail = tracker.get_patient(ctx, token)

    st.markdown(f"### {detail['name']}")
    st.markdown(
        create_status_pill(f"Member ID: {detail['member_id'] or 'none'}", "info") + status_pill(detail["status"]),
        unsafe_allow_html=True
    )
    if detail["used_name_fallback"]:
        st.caption("No insurance payments carry this member ID; showing payments recorded under the name only.")

    c1, c2, c3 = st.columns(3)
    c1.metric("Insurance received", money(detail["total_insurance"]))
    c2.metric("Patient paid", money(detail["total_paid"]))
    c3.metric("Balance", money(detail["balance"]))

    items = pd.DataFrame(detail["insurance_payments"])
    if not items.empty:
        st.markdown("**Insurance payments** (green: paid by the patient, yellow: partly paid)")
        shown = items[["payment_date", "dates_of_service", "provider_name", "check_number",
                       "check_eft_amount", "tracking_status", "coverage", "coverage_pct"]]

        def highlight(row):
            color = COVERAGE_COLORS.get(row["coverage"], "")
            return [f"background-color: {color}" if color else ""] * len(row)

        st.dataframe(shown.style.apply(highlight, axis=1), hide_index=True, use_container_width=True)

    venmo = pd.DataFrame(detail["venmo_payments"])
    if not venmo.empty:
        st.markdown("**Venmo payments**")
        st.dataframe(venmo[["date", "amount", "notes"]], hide_index=True, use_container_width=True)


# ------------------------- Insurance -------------------------

def show_insurance(tracker, ctx):
    st.subheader("🏥 Insurance Payments")

    uploaded_file = st.file_uploader(
        "Drag and drop your insurance remittance export here",
        type=['xlsx', 'csv'],
        help="Excel or CSV export with member name, member ID, dates of service, payment date and amount columns"
    )
    sheet = st.text_input("Sheet name (leave blank for the first sheet)", "")

    if uploaded_file and st.button("📤 Import Payments", type="primary", use_container_width=True):
        import_insurance_file(tracker, ctx, uploaded_file, sheet or None)

    payments = pd.DataFrame(tracker.list_insurance(ctx))
    if payments.empty:
        st.info("No insurance payments yet.")
        return

    st.markdown(f"{len(payments)} payment(s)")
    st.dataframe(payments.drop(columns=["id"]), hide_index=True, use_container_width=True)

    with st.expander("✏️ Update tracking status"):
        labels = {row["id"]: f"{row['payee_name']} · {row['dates_of_service']} · {money(row['check_eft_amount'])}"
                  for row in payments.to_dict("records")}
        payment_id = st.selectbox("Payment", list(labels), format_func=labels.get)
        status = st.selectbox("Tracking status", [t.value for t in TrackingStatus])
        col1, col2 = st.columns([1, 1])
        if col1.button("Save status", use_container_width=True):
            tracker.update_insurance_status(ctx, payment_id, status)
            st.rerun()
        if col2.button("🗑️ Delete payment", use_container_width=True):
            tracker.delete_insurance(ctx, payment_id)
            st.rerun()

    with st.expander("⚠️ Danger zone"):
        if st.button("Delete all insurance payments"):
            result = tracker.clear_insurance(ctx)
            st.success(f"Deleted {result['deleted']} payment(s)")
            st.rerun()


def import_insurance_file(tracker, ctx, uploaded_file, sheet):
    """Save the upload to a temp file, load it and import it."""
    suffix = os.path.splitext(uploaded_file.name)[1] or ".xlsx"
    try:
        with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp_input:
            tmp_input.write(uploaded_file.getvalue())
            input_path = tmp_input.name

        with st.spinner("Reading remittance export..."):
            df = payment_recon.load_insurance_sheet(input_path, sheet)
        if df.empty:
            st.warning("⚠️ No payment rows found in the file.")
            return
        result = tracker.import_insurance(ctx, df.to_dict("records"))
        st.success(f"🎉 Imported {result['total']} payment(s): {result['created']} new, {result['updated']} updated")
    except (ValueError, TrackerError) as e:
        st.error(f"❌ {e}")
    finally:
        if 'input_path' in locals():
            os.unlink(input_path)


# ------------------------- Venmo -------------------------

def show_venmo(tracker, ctx):
    st.subheader("💸 Venmo Payments")

    known = tracker.known_patients(ctx)
    tab_csv, tab_manual = st.tabs(["📄 Import statement", "✍️ Add payment"])

    with tab_csv:
        show_venmo_import(tracker, ctx, known)

    with tab_manual:
        with st.form("manual_venmo", clear_on_submit=True):
            names = [""] + sorted(p["name"] for p in known)
            picked = st.selectbox("Known patient", names)
            patient_name = st.text_input("Patient name (if not listed)")
            member_id = st.text_input("Member ID")
            amount = st.number_input("Amount", min_value=0.0, step=1.0, format="%.2f")
            paid_on = st.date_input("Date", value=date.today())
            notes = st.text_input("Notes")
            if st.form_submit_button("Add payment", type="primary"):
                name = patient_name or picked
                if picked and not member_id:
                    member_id = next((p["member_id"] for p in known if p["name"] == picked), "")
                tracker.create_venmo(ctx, [{
                    "patient_name": name,
                    "member_subscriber_id": member_id,
                    "amount": amount,
                    "date": paid_on.isoformat(),
                    "notes": notes,
                }])
                st.success(f"✓ Recorded {money(amount)} from {name}")

    payments = pd.DataFrame(tracker.list_venmo(ctx))
    if payments.empty:
        st.info("No Venmo payments yet.")
        return
    st.dataframe(payments.drop(columns=["id"]), hide_index=True, use_container_width=True)

    with st.expander("🗑️ Delete payments"):
        labels = {row["id"]: f"{row['patient_name']} · {row['date']} · {money(row['amount'])}"
                  for row in payments.to_dict("records")}
        payment_id = st.selectbox("Payment", list(labels), format_func=labels.get)
        if st.button("Delete payment"):
            tracker.delete_venmo(ctx, payment_id)
            st.rerun()
        if st.button("Delete all Venmo payments"):
            result = tracker.clear_venmo(ctx)
            st.success(f"Deleted {result['deleted']} payment(s)")
            st.rerun()


def show_venmo_import(tracker, ctx, known):
    uploaded_file = st.file_uploader("Venmo statement CSV", type=['csv'])
    owner = st.text_input("Your Venmo name (leave blank to detect)", "")
    if uploaded_file is None:
        return

    text = uploaded_file.getvalue().decode("utf-8-sig", errors="replace")
    transactions, mappings, owner = tracker.parse_venmo_statement(ctx, text, owner=owner or None)
    st.markdown(create_status_pill(f"Statement owner: {owner or 'unknown'}", "info") +
                create_status_pill(f"{len(transactions)} received payment(s)", "success"),
                unsafe_allow_html=True)

    summary = venmo_csv.summarize_counterparties(transactions, mappings)
    st.markdown("Map each person to a patient. Typed-in rows need a patient name and member ID.")
    edited = st.data_editor(
        summary[["counterparty", "payments", "total", "patient_name", "member_id"]],
        column_config={
            "counterparty": st.column_config.TextColumn("Paid by", disabled=True),
            "payments": st.column_config.NumberColumn("Payments", disabled=True),
            "total": st.column_config.NumberColumn("Total", format="$%.2f", disabled=True),
            "patient_name": st.column_config.TextColumn("Patient name"),
            "member_id": st.column_config.TextColumn("Member ID"),
        },
        hide_index=True,
        use_container_width=True,
        key=f"venmo_map_{uploaded_file.name}",
    )

    final = {}
    for row in edited.to_dict("records"):
        entry = {"name": row["patient_name"] or "", "member_id": row["member_id"] or ""}
        auto = mappings.get(row["counterparty"], {})
        # an untouched auto match stays importable without a member ID
        if auto.get("auto") and auto["name"] == entry["name"] and auto["member_id"] == entry["member_id"]:
            entry["auto"] = True
        final[row["counterparty"]] = entry
    mapped = sum(venmo_csv.is_mapped(m) for m in final.values())
    if st.button(f"📥 Import payments from {mapped} mapped person(s)", type="primary", use_container_width=True):
        result = tracker.import_venmo_statement(ctx, transactions, final)
        st.success(f"🎉 Imported {result['count']} Venmo payment(s)")


# ------------------------- Settings -------------------------

def show_settings(tracker, ctx):
    st.subheader("⚙️ Settings")
    st.markdown("Insurance payments sent to these addresses are payments to providers and are left out "
                "of patient balances.")
    current = tracker.get_settings(ctx)["ignored_addresses"]
    text = st.text_area("Ignored payee addresses (one per line)", "\n".join(current), height=160)
    if st.button("Save settings", type="primary"):
        saved = tracker.update_settings(ctx, {"ignored_addresses": text.splitlines()})
        st.success(f"✓ Saved {len(saved['ignored_addresses'])} ignored address(es)")


def main():
    """Main application interface"""
    inject_custom_css()
    show_header()

    tracker = get_tracker()
    ctx = current_account(tracker)

    with st.sidebar:
        st.markdown(f"Signed in as **{ctx.email or ctx.user_id}**")
        page = st.radio("Go to", PAGES)
        if st.button("Sign out"):
            st.session_state.pop("account", None)
            st.logout()

    try:
        if page == PAGES[0]:
            show_patients(tracker, ctx)
        elif page == PAGES[1]:
            show_insurance(tracker, ctx)
        elif page == PAGES[2]:
            show_venmo(tracker, ctx)
        else:
            show_settings(tracker, ctx)
    except Exception as e:
        show_error(e)


if __name__ == "__main__":
    # Configure page
    st.set_page_config(
        page_title="Patient Payment Tracker",
        page_icon="💳",
        layout="wide",
        initial_sidebar_state="expanded"
    )

    # Run main app
    main()
