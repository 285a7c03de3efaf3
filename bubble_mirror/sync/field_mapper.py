"""Declarative remote -> local field mapping and value coercion.

Each entity type has a table of ``{remote field name: FieldSpec}``. Several
remote names may feed the same column (the first non-empty value in table
order wins). Keys without a declared mapping are returned in
``MappedRecord.unmapped`` so the schema reflector can pick them up.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, NamedTuple

from ..models import (
    Agent,
    Customer,
    Invoice,
    InvoiceItem,
    InvoiceTemplate,
    Payment,
    Registration,
    SubmittedPayment,
    User,
)
from .errors import MappingError

ID_KEYS = ("_id", "unique id")

AGENT = "agent"
USER = "user"
CUSTOMER = "Customer_Profile"
INVOICE = "invoice"
INVOICE_ITEM = "invoice_item"
REGISTRATION = "seda_registration"
TEMPLATE = "invoice_template"
PAYMENT = "payment"
SUBMITTED_PAYMENT = "submit_payment"

ENTITY_ALIASES: dict[str, str] = {
    "customer": CUSTOMER,
    "customer_profile": CUSTOMER,
    "seda": REGISTRATION,
    "registration": REGISTRATION,
    "submitted_payment": SUBMITTED_PAYMENT,
    "template": TEMPLATE,
    "item": INVOICE_ITEM,
    "line_item": INVOICE_ITEM,
}


class FieldKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    ARRAY = "array"
    JSON = "json"


class FieldSpec(NamedTuple):
    column: str
    kind: FieldKind = FieldKind.STRING
    # Remote entity type the stored id(s) point at, if this is a relation.
    relation: str | None = None


def _text(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.STRING)


def _int(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.INTEGER)


def _num(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.NUMERIC)


def _bool(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.BOOLEAN)


def _ts(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.TIMESTAMP)


def _arr(column: str) -> FieldSpec:
    return FieldSpec(column, FieldKind.ARRAY)


def _rel(column: str, target: str | None = None) -> FieldSpec:
    return FieldSpec(column, FieldKind.STRING, target)


def _rels(column: str, target: str | None = None) -> FieldSpec:
    return FieldSpec(column, FieldKind.ARRAY, target)


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}
_NUMERIC_NOISE = re.compile(r"[^0-9eE+\-.]")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_text(value: Any) -> str | None:
    if _is_blank(value):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    return str(value)


def to_numeric(value: Any) -> Decimal | None:
    """Parse permissively: thousands separators and currency noise are stripped."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (Decimal, float)):
        parsed = value if isinstance(value, Decimal) else Decimal(repr(value))
        return parsed if parsed.is_finite() else None
    if isinstance(value, str):
        cleaned = _NUMERIC_NOISE.sub("", value.strip())
        if not cleaned:
            return None
        try:
            parsed = Decimal(cleaned)
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def to_integer(value: Any) -> int | None:
    """Integers truncate decimals (``2.9 -> 2``, ``-2.9 -> -2``)."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    number = to_numeric(value)
    if number is None:
        return None
    return int(number)


def to_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch milliseconds into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(raw[:10])
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_array(value: Any) -> list[str] | None:
    """Lists pass through, scalars are wrapped, comma strings are split."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        items = [to_text(v) for v in value]
    elif isinstance(value, str):
        items = value.split(",")
    else:
        items = [to_text(value)]
    cleaned = [item.strip() for item in items if isinstance(item, str) and item.strip()]
    return cleaned or None


def to_json_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


COERCERS: dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.STRING: to_text,
    FieldKind.INTEGER: to_integer,
    FieldKind.NUMERIC: to_numeric,
    FieldKind.BOOLEAN: to_boolean,
    FieldKind.TIMESTAMP: parse_timestamp,
    FieldKind.ARRAY: to_array,
    FieldKind.JSON: to_json_text,
}


def coerce(kind: FieldKind, value: Any) -> Any:
    return COERCERS[kind](value)


# ---------------------------------------------------------------------------
# Entity tables
# ---------------------------------------------------------------------------

_SYSTEM_FIELDS: dict[str, FieldSpec] = {
    "Modified Date": _ts("modified_date"),
    "Created Date": _ts("created_date"),
    "Created By": _rel("created_by", USER),
}

AGENT_FIELDS: dict[str, FieldSpec] = {
    "Name": _text("name"),
    "email": _text("email"),
    "Email": _text("email"),
    "Contact": _text("contact"),
    "Agent Type": _text("agent_type"),
    "Slug": _text("slug"),
    "Address": _text("address"),
    "bankin_account": _text("bankin_account"),
    "banker": _text("banker"),
    "Commission": _int("commission"),
    "TREE SEED": _text("tree_seed"),
    "IC Front": _text("ic_front"),
    "ic_front": _text("ic_front"),
    "IC Back": _text("ic_back"),
    "ic_back": _text("ic_back"),
    "Intro Youtube": _text("intro_youtube"),
    "Last Update Annual Sales": _ts("last_update_annual_sales"),
    "Current Annual Sales": _int("current_annual_sales"),
    "Annual Collection": _int("annual_collection"),
    "Linked User Login": _rel("linked_user_login", USER),
}

USER_FIELDS: dict[str, FieldSpec] = {
    "authentication": FieldSpec("authentication", FieldKind.JSON),
    "Email": _text("email"),
    "user_signed_up": _bool("user_signed_up"),
    "User Signed Up": _bool("user_signed_up"),
    "Dealership": _text("dealership"),
    "Profile Picture": _text("profile_picture"),
    "Access Level": _arr("access_level"),
    "Linked Agent Profile": _rel("linked_agent_profile", AGENT),
    "check in report today": _text("check_in_report_today"),
    "agent_code": _text("agent_code"),
    "Agent Code": _text("agent_code"),
}

CUSTOMER_FIELDS: dict[str, FieldSpec] = {
    "Name": _text("name"),
    "Email": _text("email"),
    "Contact": _text("phone"),
    "Whatsapp": _text("phone"),
    "Address": _text("address"),
    "City": _text("city"),
    "State": _text("state"),
    "Postcode": _text("postcode"),
    "IC Number": _text("ic_number"),
    "IC No": _text("ic_number"),
    "Linked Agent": _rel("linked_agent", AGENT),
}

INVOICE_FIELDS: dict[str, FieldSpec] = {
    "Invoice ID": _int("invoice_id"),
    "Invoice Number": _text("invoice_number"),
    "Amount": _num("amount"),
    "Total Amount": _num("total_amount"),
    "1st Payment %": _int("first_payment_percent"),
    "1st Payment Date": _ts("first_payment_date"),
    "2nd Payment %": _int("second_payment_percent"),
    "Amount Eligible for Comm": _num("amount_eligible_for_comm"),
    "Full Payment Date": _ts("full_payment_date"),
    "Last Payment Date": _ts("last_payment_date"),
    "Invoice Date": _ts("invoice_date"),
    "Status": _text("status"),
    "Type": _text("type"),
    "Version": _int("version"),
    "Approval Status": _text("approval_status"),
    "Case Status": _text("case_status"),
    "Stock Status INV": _text("stock_status_inv"),
    "Paid?": _bool("paid"),
    "Need Approval": _bool("need_approval"),
    "Locked Package?": _bool("locked_package"),
    "Commission Paid?": _bool("commission_paid"),
    "Normal Commission": _num("normal_commission"),
    "Performance Tier Month": _int("performance_tier_month"),
    "Performance Tier Year": _int("performance_tier_year"),
    "Panel Qty": _int("panel_qty"),
    "Stamp Cash Price": _num("stamp_cash_price"),
    "Dealercode": _text("dealercode"),
    "Logs": _text("logs"),
    "Eligible Amount Description": _text("eligible_amount_description"),
    "visit": _int("visit"),
    "Linked Customer": _rel("linked_customer", CUSTOMER),
    "Linked Agent": _rel("linked_agent", AGENT),
    "Linked Payment": _rels("linked_payment", PAYMENT),
    "Linked SEDA registration": _rel("linked_seda_registration", REGISTRATION),
    "Linked SEDA Registration": _rel("linked_seda_registration", REGISTRATION),
    "Linked Invoice Item": _rels("linked_invoice_item", INVOICE_ITEM),
    "Linked Package": _rel("linked_package"),
    "Linked Agreement": _rel("linked_agreement"),
    "Linked Stock Transaction": _rels("linked_stock_transaction"),
}

INVOICE_ITEM_FIELDS: dict[str, FieldSpec] = {
    "DESCRIPTION": _text("description"),
    "Description": _text("description"),
    "QTY": _int("qty"),
    "Qty": _int("qty"),
    "AMOUNT": _num("amount"),
    "Amount": _num("amount"),
    "UNIT PRICE": _num("unit_price"),
    "Unit Price": _num("unit_price"),
    "is a Package?": _bool("is_a_package"),
    "Is a Package": _bool("is_a_package"),
    "Item Type": _text("inv_item_type"),
    "Inv Item Type": _text("inv_item_type"),
    "EPP": _int("epp"),
    "Sort": _int("sort"),
    "Voucher Remark": _text("voucher_remark"),
    "Invoice": _rel("linked_invoice", INVOICE),
    "Linked Invoice": _rel("linked_invoice", INVOICE),
    "Package": _rel("linked_package"),
    "Linked Package": _rel("linked_package"),
    "Voucher": _rel("linked_voucher"),
    "Linked Voucher": _rel("linked_voucher"),
}

REGISTRATION_FIELDS: dict[str, FieldSpec] = {
    "CITY": _text("city"),
    "City": _text("city"),
    "STATE": _text("state"),
    "State": _text("state"),
    "Installation Address": _text("installation_address"),
    "Email": _text("email"),
    "IC No": _text("ic_no"),
    "Project Price": _num("project_price"),
    "System Size": _int("system_size"),
    "System Size in FORM kWp": _int("system_size_in_form_kwp"),
    "??SunPeak Hours": _num("sunpeak_hours"),
    "Reg Status": _text("reg_status"),
    "Redex-Status": _text("redex_status"),
    "SEDA Status": _text("seda_status"),
    "Phase Type": _text("phase_type"),
    "TNB Account No": _text("tnb_account_no"),
    "NEM Application No": _text("nem_application_no"),
    "Special Remark": _text("special_remark"),
    "Drawing (SYSTEM) Submitted": _bool("drawing_system_submitted"),
    "Customer Signature": _text("customer_signature"),
    "IC Copy Front": _text("ic_copy_front"),
    "IC Copy Back": _text("ic_copy_back"),
    "TNB Bill 1": _text("tnb_bill_1"),
    "TNB Bill 2": _text("tnb_bill_2"),
    "TNB Bill 3": _text("tnb_bill_3"),
    "Roof Images": _arr("roof_images"),
    "Site Images": _arr("site_images"),
    "Agent": _rel("agent", AGENT),
    "Linked Customer": _rel("linked_customer", CUSTOMER),
    "Linked Invoice": _rels("linked_invoice", INVOICE),
}

TEMPLATE_FIELDS: dict[str, FieldSpec] = {
    "Template Name": _text("template_name"),
    "Company Name": _text("company_name"),
    "Company Address": _text("company_address"),
    "Company Phone": _text("company_phone"),
    "Company Email": _text("company_email"),
    "SST Registration No": _text("sst_registration_no"),
    "Bank Name": _text("bank_name"),
    "Bank Account No": _text("bank_account_no"),
    "Bank Account Name": _text("bank_account_name"),
    "Logo URL": _text("logo_url"),
    "Terms and Conditions": _text("terms_and_conditions"),
    "Disclaimer": _text("disclaimer"),
    "Active": _bool("active"),
    "Is Default": _bool("is_default"),
    "Apply SST": _bool("apply_sst"),
}

PAYMENT_FIELDS: dict[str, FieldSpec] = {
    "Amount": _num("amount"),
    "Payment Date": _ts("payment_date"),
    "Payment Method": _text("payment_method"),
    "Payment Method V2": _text("payment_method_v2"),
    "Payment Method v2": _text("payment_method_v2"),
    "Payment Index": _int("payment_index"),
    "EPP Month": _int("epp_month"),
    "EPP Type": _text("epp_type"),
    "Bank Charges": _int("bank_charges"),
    "Issuer Bank": _text("issuer_bank"),
    "Terminal": _text("terminal"),
    "Remark": _text("remark"),
    "Attachment": _arr("attachment"),
    "Verified By": _rel("verified_by", USER),
    "Linked Agent": _rel("linked_agent", AGENT),
    "Linked Customer": _rel("linked_customer", CUSTOMER),
    "Linked Invoice": _rel("linked_invoice", INVOICE),
}

SUBMITTED_PAYMENT_FIELDS: dict[str, FieldSpec] = {
    **PAYMENT_FIELDS,
    "PAYMENT DATE": _ts("payment_date"),
    "Status": _text("status"),
}


def _finalize_invoice(record: dict[str, Any], values: dict[str, Any]) -> None:
    if values.get("total_amount") is None and values.get("amount") is not None:
        values["total_amount"] = values["amount"]
    if values.get("invoice_number") is None and values.get("invoice_id") is not None:
        values["invoice_number"] = str(values["invoice_id"])


def _finalize_user(record: dict[str, Any], values: dict[str, Any]) -> None:
    auth = record.get("authentication")
    email = None
    if isinstance(auth, dict):
        email_block = auth.get("email")
        if isinstance(email_block, dict):
            email = email_block.get("email")
    if isinstance(email, str) and email:
        if values.get("email") is None:
            values["email"] = email
    else:
        values["authentication"] = None


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    model: type
    id_column: str
    fields: dict[str, FieldSpec]
    # Known remote keys whose local destination is undecided; kept in the overflow bucket.
    unmapped: frozenset[str] = frozenset()
    finalize: Callable[[dict[str, Any], dict[str, Any]], None] | None = None

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    @property
    def columns(self) -> list[str]:
        return list(dict.fromkeys(spec.column for spec in self.fields.values()))

    @property
    def relations(self) -> dict[str, str]:
        """Map of column -> related remote entity type."""
        return {spec.column: spec.relation for spec in self.fields.values() if spec.relation}


def _spec(entity_type, model, fields, *, id_column="bubble_id", unmapped=(), finalize=None):
    merged = {**fields, **_SYSTEM_FIELDS}
    return EntitySpec(
        entity_type=entity_type,
        model=model,
        id_column=id_column,
        fields=merged,
        unmapped=frozenset(unmapped),
        finalize=finalize,
    )


ENTITY_SPECS: dict[str, EntitySpec] = {
    AGENT: _spec(AGENT, Agent, AGENT_FIELDS),
    USER: _spec(USER, User, USER_FIELDS, finalize=_finalize_user),
    CUSTOMER: _spec(CUSTOMER, Customer, CUSTOMER_FIELDS, id_column="customer_id"),
    INVOICE: _spec(
        INVOICE,
        Invoice,
        INVOICE_FIELDS,
        unmapped=("Percent of Total Amount",),
        finalize=_finalize_invoice,
    ),
    INVOICE_ITEM: _spec(INVOICE_ITEM, InvoiceItem, INVOICE_ITEM_FIELDS),
    REGISTRATION: _spec(REGISTRATION, Registration, REGISTRATION_FIELDS),
    TEMPLATE: _spec(TEMPLATE, InvoiceTemplate, TEMPLATE_FIELDS),
    PAYMENT: _spec(PAYMENT, Payment, PAYMENT_FIELDS),
    SUBMITTED_PAYMENT: _spec(
        SUBMITTED_PAYMENT,
        SubmittedPayment,
        SUBMITTED_PAYMENT_FIELDS,
        unmapped=("Linked Installment",),
    ),
}


def resolve_entity_type(name: str) -> str:
    """Normalize an entity type name or alias to its remote type name."""
    if name in ENTITY_SPECS:
        return name
    alias = ENTITY_ALIASES.get(name.strip().lower()) if isinstance(name, str) else None
    if alias:
        return alias
    raise MappingError(f"Unknown entity type: {name}")


def get_spec(entity_type: str) -> EntitySpec:
    return ENTITY_SPECS[resolve_entity_type(entity_type)]


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


@dataclass
class MappedRecord:
    entity_type: str
    remote_id: str
    values: dict[str, Any]
    unmapped: dict[str, Any] = field(default_factory=dict)

    @property
    def modified_at(self) -> datetime | None:
        return self.values.get("modified_date")

    def relation_ids(self, target: str) -> list[str]:
        """Remote ids this record references for one related entity type."""
        spec = get_spec(self.entity_type)
        ids: list[str] = []
        for column, related in spec.relations.items():
            if related != target:
                continue
            value = self.values.get(column)
            if isinstance(value, list):
                ids.extend(v for v in value if v)
            elif value:
                ids.append(value)
        return list(dict.fromkeys(ids))


def extract_remote_id(record: Any) -> str | None:
    if not isinstance(record, dict):
        return None
    for key in ID_KEYS:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def map_record(entity_type: str, record: Any) -> MappedRecord:
    """Translate one remote record into local column values.

    Every declared column is present in ``values`` (``None`` when absent).
    Raises ``MappingError`` when the record has no identifier.
    """
    spec = get_spec(entity_type)
    if not isinstance(record, dict):
        raise MappingError(f"{spec.entity_type} record is not an object")
    remote_id = extract_remote_id(record)
    if remote_id is None:
        raise MappingError(f"{spec.entity_type} record missing '_id' or 'unique id' field")

    values: dict[str, Any] = {column: None for column in spec.columns}
    for remote_key, field_spec in spec.fields.items():
        if remote_key not in record:
            continue
        if values.get(field_spec.column) is not None:
            continue
        values[field_spec.column] = coerce(field_spec.kind, record[remote_key])
    values[spec.id_column] = remote_id

    if spec.finalize is not None:
        spec.finalize(record, values)

    unmapped = {
        key: value
        for key, value in record.items()
        if key not in spec.fields and key not in ID_KEYS
    }
    return MappedRecord(
        entity_type=spec.entity_type,
        remote_id=remote_id,
        values=values,
        unmapped=unmapped,
    )
