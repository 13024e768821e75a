"""
tracker_api.py - Payment tracker operations

Every operation takes an explicit AccountContext for the signed-in account and
only ever reads or changes that account's rows. Failures are raised as
TrackerError subclasses carrying an HTTP-like status:

    UnauthorizedError  401  no signed-in account
    InvalidInputError  400  malformed input, unparseable statement
    NotFoundError      404  record absent or owned by another account
    StorageError       500  unexpected store failure (details are logged only)
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from urllib.parse import unquote

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

import payment_recon
import venmo_csv
from tracker_schemas import (
    InsurancePaymentIn,
    InsurancePaymentUpdate,
    RegisterIn,
    SettingsIn,
    TrackingStatus,
    VenmoPaymentIn,
)
from tracker_store import InsurancePayment, Store, User, UserSetting, VenmoPayment

logger = logging.getLogger(__name__)

# ------------------------- Parameters -------------------------

INTERNAL_EMAIL_DOMAIN = "internal.local"


# ------------------------- Errors -------------------------

class TrackerError(Exception):
    status = 500


class UnauthorizedError(TrackerError):
    status = 401


class InvalidInputError(TrackerError):
    status = 400


class NotFoundError(TrackerError):
    status = 404


class StorageError(TrackerError):
    status = 500


def _validation_message(err):
    """Flatten a pydantic ValidationError into one readable line."""
    parts = []
    for e in err.errors():
        field = ".".join(str(p) for p in e["loc"]) or "input"
        parts.append(f"{field}: {e['msg']}")
    return "; ".join(parts)


def _validate(schema, payload, label=""):
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        prefix = f"{label}: " if label else ""
        raise InvalidInputError(prefix + _validation_message(e))


@dataclass(frozen=True)
class AccountContext:
    """The signed-in account an operation runs for."""
    user_id: str
    email: str = ""


class PaymentTracker:
    """
    Storage API of the payment tracker.

    Args:
        store: tracker_store.Store (a default one is created from the
            configured database URL when omitted)
    """

    def __init__(self, store=None):
        self.store = store if store is not None else Store()

    @contextmanager
    def _session(self, action):
        try:
            with self.store.session() as session:
                yield session
        except SQLAlchemyError:
            logger.exception(f"Store failure while trying to {action}")
            raise StorageError(f"Failed to {action}")

    @staticmethod
    def _require(ctx):
        if ctx is None or not getattr(ctx, "user_id", None):
            raise UnauthorizedError("Unauthorized")
        return ctx.user_id

    # ------------------------- Accounts -------------------------

    def register(self, payload, create_identity):
        """
        Create a username-only account.

        Args:
            payload: dict with username, password and optional name
            create_identity: callable(email, password, username, name) that
                creates the credentials at the identity provider and returns
                its user id; raises ValueError when the provider refuses

        Returns:
            dict with user_id and the internal e-mail address

        Raises:
            InvalidInputError: If the username is malformed or already taken
        """
        if not payload or not payload.get("username") or not payload.get("password"):
            raise InvalidInputError("Username and password are required")
        data = _validate(RegisterIn, payload)
        username = data.username.lower()
        email = f"{username}@{INTERNAL_EMAIL_DOMAIN}"
        name = data.name or data.username

        with self._session("check username") as s:
            if s.query(User).filter(User.username == username).first() is not None:
                raise InvalidInputError("Username already taken")

        try:
            user_id = create_identity(email=email, password=data.password, username=username, name=name)
        except ValueError as e:
            raise InvalidInputError(str(e))
        if not user_id:
            raise StorageError("Failed to create user")

        with self._session("create account") as s:
            user = s.get(User, user_id) or User(id=user_id)
            user.email = email
            user.username = username
            user.name = name
            s.add(user)
        logger.info(f"✓ Registered account {username}")
        return {"user_id": user_id, "email": email}

    def lookup_email(self, username):
        """Resolve a username to the e-mail used to sign in with the identity provider."""
        username = str(username or "").strip().lower()
        if not username:
            raise InvalidInputError("Username is required")
        with self._session("look up user") as s:
            user = s.query(User).filter(User.username == username).first()
            if user is None:
                raise NotFoundError("User not found")
            return user.email

    def provision_user(self, claims):
        """
        Get or create the local user record for identity-provider claims.

        When no record exists for the provider's user id but one exists with the
        same e-mail (an account created under the previous provider), its
        payments and settings are moved onto the new id and the old record is
        removed, all in one transaction.

        Args:
            claims: dict with "sub" (provider user id), "email" and optional
                "name"/"username"

        Returns:
            AccountContext

        Raises:
            UnauthorizedError: If the claims carry no user id
        """
        user_id = str((claims or {}).get("sub") or "").strip()
        if not user_id:
            raise UnauthorizedError("Unauthorized")
        email = str(claims.get("email") or "").strip().lower() or None
        name = claims.get("name") or ""

        with self._session("provision user") as s:
            user = s.get(User, user_id)
            if user is not None:
                if email and user.email != email:
                    user.email = email
                return AccountContext(user_id=user_id, email=user.email or "")

            old = s.query(User).filter(User.email == email).first() if email else None
            username = claims.get("username")
            if old is not None:
                username = username or old.username
                name = name or old.name
                # free the unique email/username before the new row takes them
                old.email = None
                old.username = None
                s.flush()

            user = User(id=user_id, email=email, username=username, name=name)
            s.add(user)
            s.flush()

            if old is not None:
                moved_ins = s.query(InsurancePayment).filter(InsurancePayment.user_id == old.id) \
                    .update({InsurancePayment.user_id: user_id}, synchronize_session=False)
                moved_ven = s.query(VenmoPayment).filter(VenmoPayment.user_id == old.id) \
                    .update({VenmoPayment.user_id: user_id}, synchronize_session=False)
                s.query(UserSetting).filter(UserSetting.user_id == old.id) \
                    .update({UserSetting.user_id: user_id}, synchronize_session=False)
                s.delete(old)
                logger.info(f"📋 Migrated account {email}: {moved_ins} insurance and {moved_ven} Venmo payment(s) "
                            f"moved to the new sign-in")
            else:
                logger.info(f"✓ Created local user for {email or user_id}")
            return AccountContext(user_id=user_id, email=email or "")

    # ------------------------- Insurance payments -------------------------

    def list_insurance(self, ctx):
        """All insurance payments of the account, newest first."""
        uid = self._require(ctx)
        with self._session("fetch payments") as s:
            rows = s.query(InsurancePayment).filter(InsurancePayment.user_id == uid) \
                .order_by(InsurancePayment.created_at.desc(), InsurancePayment.id.desc()).all()
            return [r.to_dict() for r in rows]

    def import_insurance(self, ctx, payments):
        """
        Import insurance payments, updating lines that were imported before.

        A line matches an existing one on member ID, payee name (any case),
        dates of service, check number and payment date. Matches are updated
        in place and keep their tracking status. Every record is committed as
        it is written; an error stops the batch and earlier records stay.

        Returns:
            dict with created, updated, total and ids

        Raises:
            InvalidInputError: If payments is not a non-empty list or a record is malformed
        """
        uid = self._require(ctx)
        if not isinstance(payments, list) or not payments:
            raise InvalidInputError("No payments provided")
        records = [_validate(InsurancePaymentIn, p, f"payment {i + 1}") for i, p in enumerate(payments)]

        created = updated = 0
        ids = []
        with self._session("import payments") as s:
            for rec in records:
                fields = rec.model_dump(exclude={"tracking_status"})
                existing = s.query(InsurancePayment).filter(
                    InsurancePayment.user_id == uid,
                    InsurancePayment.member_subscriber_id == rec.member_subscriber_id,
                    func.lower(InsurancePayment.payee_name) == rec.payee_name.lower(),
                    InsurancePayment.dates_of_service == rec.dates_of_service,
                    InsurancePayment.check_number == rec.check_number,
                    InsurancePayment.payment_date == rec.payment_date,
                ).first()
                if existing is not None:
                    for key, value in fields.items():
                        setattr(existing, key, value)
                    row = existing
                    updated += 1
                else:
                    row = InsurancePayment(user_id=uid, tracking_status=rec.tracking_status, **fields)
                    s.add(row)
                    created += 1
                s.commit()
                ids.append(row.id)

        logger.info(f"✓ Insurance import: {created} created, {updated} updated")
        return {"created": created, "updated": updated, "total": created + updated, "ids": ids}

    def _owned_insurance(self, s, uid, payment_id):
        row = s.query(InsurancePayment).filter(InsurancePayment.id == payment_id,
                                               InsurancePayment.user_id == uid).first()
        if row is None:
            raise NotFoundError("Payment not found")
        return row

    def update_insurance_status(self, ctx, payment_id, status):
        """Move an insurance payment to another tracking stage."""
        uid = self._require(ctx)
        try:
            new_status = TrackingStatus(status)
        except ValueError:
            allowed = ", ".join(t.value for t in TrackingStatus)
            raise InvalidInputError(f"Invalid tracking status '{status}'. Expected one of: {allowed}")
        with self._session("update payment") as s:
            row = self._owned_insurance(s, uid, payment_id)
            row.tracking_status = new_status
            s.flush()
            return row.to_dict()

    def update_insurance(self, ctx, payment_id, fields):
        """Edit fields of an insurance payment; fields not given are left unchanged."""
        uid = self._require(ctx)
        data = _validate(InsurancePaymentUpdate, fields or {})
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            raise InvalidInputError("No fields to update")
        with self._session("update payment") as s:
            row = self._owned_insurance(s, uid, payment_id)
            for key, value in changes.items():
                setattr(row, key, value)
            s.flush()
            return row.to_dict()

    def delete_insurance(self, ctx, payment_id):
        uid = self._require(ctx)
        with self._session("delete payment") as s:
            s.delete(self._owned_insurance(s, uid, payment_id))
        return {"success": True}

    def delete_insurance_many(self, ctx, payment_ids):
        """Delete the listed payments that belong to the account; others are ignored."""
        uid = self._require(ctx)
        if not isinstance(payment_ids, (list, tuple)) or not payment_ids:
            raise InvalidInputError("No payment ids provided")
        with self._session("delete payments") as s:
            deleted = s.query(InsurancePayment).filter(
                InsurancePayment.user_id == uid,
                InsurancePayment.id.in_(list(payment_ids)),
            ).delete(synchronize_session=False)
        logger.info(f"Deleted {deleted} of {len(payment_ids)} requested insurance payment(s)")
        return {"deleted": deleted}

    def clear_insurance(self, ctx):
        uid = self._require(ctx)
        with self._session("delete payments") as s:
            deleted = s.query(InsurancePayment).filter(InsurancePayment.user_id == uid) \
                .delete(synchronize_session=False)
        return {"deleted": deleted}

    # ------------------------- Venmo payments -------------------------

    def list_venmo(self, ctx):
        """All Venmo payments of the account, newest first."""
        uid = self._require(ctx)
        with self._session("fetch payments") as s:
            rows = s.query(VenmoPayment).filter(VenmoPayment.user_id == uid) \
                .order_by(VenmoPayment.created_at.desc(), VenmoPayment.id.desc()).all()
            return [r.to_dict() for r in rows]

    def create_venmo(self, ctx, payments):
        """
        Record Venmo payments. Every record is validated before anything is written.

        Returns:
            dict with count and ids
        """
        uid = self._require(ctx)
        if not isinstance(payments, list) or not payments:
            raise InvalidInputError("No payments provided")
        records = [_validate(VenmoPaymentIn, p, f"payment {i + 1}") for i, p in enumerate(payments)]
        with self._session("create payments") as s:
            rows = [VenmoPayment(user_id=uid, **rec.model_dump()) for rec in records]
            s.add_all(rows)
            s.flush()
            ids = [r.id for r in rows]
        logger.info(f"✓ Recorded {len(ids)} Venmo payment(s)")
        return {"count": len(ids), "ids": ids}

    def delete_venmo(self, ctx, payment_id):
        uid = self._require(ctx)
        with self._session("delete payment") as s:
            row = s.query(VenmoPayment).filter(VenmoPayment.id == payment_id,
                                               VenmoPayment.user_id == uid).first()
            if row is None:
                raise NotFoundError("Payment not found")
            s.delete(row)
        return {"success": True}

    def clear_venmo(self, ctx):
        uid = self._require(ctx)
        with self._session("delete payments") as s:
            deleted = s.query(VenmoPayment).filter(VenmoPayment.user_id == uid) \
                .delete(synchronize_session=False)
        return {"deleted": deleted}

    # ------------------------- Venmo statement import -------------------------

    def known_patients(self, ctx):
        """Patients from the account's insurance payments, for mapping and autocomplete."""
        insurance = payment_recon.insurance_frame(self.list_insurance(ctx))
        return payment_recon.known_patients(insurance)

    def parse_venmo_statement(self, ctx, text, owner=None):
        """
        Parse a Venmo statement and pre-map its counterparties onto known patients.

        Returns:
            tuple: (transactions_df, mappings, owner)

        Raises:
            InvalidInputError: If the statement cannot be parsed
        """
        self._require(ctx)
        try:
            transactions, owner = venmo_csv.parse_venmo_csv(text, owner=owner)
        except venmo_csv.CsvParseError as e:
            raise InvalidInputError(str(e))
        mappings = venmo_csv.auto_map_counterparties(transactions["counterparty"], self.known_patients(ctx))
        return transactions, mappings, owner

    def import_venmo_statement(self, ctx, transactions, mappings):
        """Record the statement payments of mapped counterparties."""
        payments = venmo_csv.build_venmo_import(transactions, mappings)
        if not payments:
            raise InvalidInputError("No payments to import: map at least one person to a patient")
        return self.create_venmo(ctx, payments)

    # ------------------------- Settings -------------------------

    def get_settings(self, ctx):
        uid = self._require(ctx)
        with self._session("fetch settings") as s:
            setting = s.get(UserSetting, uid)
            return setting.to_dict() if setting is not None else {"ignored_addresses": []}

    def update_settings(self, ctx, payload):
        """Replace the account's ignored payee addresses."""
        uid = self._require(ctx)
        if not isinstance(payload, dict) or not isinstance(
                payload.get("ignored_addresses", payload.get("ignoredAddresses")), list):
            raise InvalidInputError("ignoredAddresses must be an array")
        data = _validate(SettingsIn, payload)
        with self._session("update settings") as s:
            setting = s.get(UserSetting, uid)
            if setting is None:
                setting = UserSetting(user_id=uid)
                s.add(setting)
            setting.ignored_addresses = data.ignored_addresses
            s.flush()
            return setting.to_dict()

    # ------------------------- Reconciliation -------------------------

    def _frames(self, ctx):
        insurance = payment_recon.insurance_frame(self.list_insurance(ctx))
        venmo = payment_recon.venmo_frame(self.list_venmo(ctx))
        ignored = self.get_settings(ctx)["ignored_addresses"]
        return payment_recon.drop_ignored_addresses(insurance, ignored), venmo

    def reconcile(self, ctx):
        """
        Per-patient reconciliation of the account.

        Returns:
            tuple: (patients_df, insurance_df, venmo_df)
        """
        insurance, venmo = self._frames(ctx)
        return payment_recon.aggregate_patients(insurance, venmo), insurance, venmo

    def list_patients(self, ctx, search="", status="all"):
        """
        Reconciliation records, filtered, with summary statistics over all patients.

        Returns:
            dict with patients (list of dicts) and summary
        """
        self._require(ctx)
        if status not in payment_recon.STATUS_FILTERS:
            raise InvalidInputError(f"Unknown status filter '{status}'. "
                                    f"Expected one of {sorted(payment_recon.STATUS_FILTERS)}")
        patients, _, _ = self.reconcile(ctx)
        shown = payment_recon.filter_patients(patients, search, status)
        return {"patients": shown.to_dict("records"), "summary": payment_recon.summary_stats(patients)}

    def get_patient(self, ctx, token):
        """
        One patient's payments with coverage marks.

        Args:
            token: percent-encoded ``memberID`` or ``memberID|||patientName``

        Returns:
            dict with member_id, name, totals, balance, status, insurance_payments
            (newest first, each with coverage and coverage_pct), venmo_payments
            and used_name_fallback

        Raises:
            InvalidInputError: If the token names neither a member ID nor a name
            NotFoundError: If the patient has no payments
        """
        member_id, name = payment_recon.parse_patient_token(unquote(str(token or "")))
        insurance, venmo = self._frames(ctx)
        try:
            ins_rows, ven_rows, fallback = payment_recon.resolve_patient_rows(insurance, venmo, member_id, name)
        except ValueError as e:
            raise InvalidInputError(str(e))
        if ins_rows.empty and ven_rows.empty:
            raise NotFoundError("Patient not found")

        total_insurance = payment_recon.r2(ins_rows["check_eft_amount"].sum()) or 0.0
        total_paid = payment_recon.r2(ven_rows["amount"].sum()) or 0.0
        balance = payment_recon.r2(total_insurance - total_paid) or 0.0
        covered = payment_recon.allocate_coverage(ins_rows.reset_index(drop=True), total_paid)

        if not ins_rows.empty:
            display_name = ins_rows["payee_name"].iloc[0]
            display_id = ins_rows["member_subscriber_id"].iloc[0]
        else:
            display_name = ven_rows["patient_name"].iloc[0]
            display_id = ven_rows["member_subscriber_id"].iloc[0]

        return {
            "member_id": display_id or member_id,
            "name": display_name or name,
            "total_insurance": total_insurance,
            "total_paid": total_paid,
            "balance": balance,
            "status": payment_recon.balance_status(balance),
            "insurance_payments": covered.to_dict("records"),
            "venmo_payments": ven_rows.to_dict("records"),
            "used_name_fallback": fallback,
        }

    def export_workbook(self, ctx, out):
        """Write the account's reconciliation workbook to a path or binary buffer."""
        patients, insurance, venmo = self.reconcile(ctx)
        payment_recon.export_reconciliation(out, patients, insurance, venmo)
        return out
