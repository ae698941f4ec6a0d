"""
InvoiceSync Data Mapper — Bidirectional Schema Mapping.

Translates between canonical entities and platform payloads:
- Inbound: ordered candidate names per field (first non-null wins),
  dot-notation paths for nested shapes, type coercion (dates, money,
  status vocabularies)
- Outbound: static canonical -> remote field names, ISO date-only output,
  money rounded to 2 decimals at this boundary only

Mapping already-mapped canonical data again yields the same result: every
default candidate list includes the canonical field name itself.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable
import logging
import re

from dateutil import parser as date_parser

from sync_core.errors import ConfigurationError, ValidationError
from sync_core.integrations.canonical import Direction, EntityType

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Mapping rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MappingRule:
    """One canonical field and where to find it in a remote record."""
    field: str                        # Canonical field name
    candidates: tuple[str, ...] = ()  # Remote names / dot paths, in priority order
    transform: str | None = None      # Key into TRANSFORMS
    default: Any = None
    extension: bool = False           # Stored under `extensions` instead of top level
    parts: tuple[tuple[str, ...], ...] = ()  # Composite field: join each part's first hit
    joiner: str = ", "


@dataclass(frozen=True)
class EntityMapping:
    """Inbound rules + outbound field names for one entity type."""
    entity_type: EntityType
    inbound: tuple[MappingRule, ...] = ()
    outbound: dict[str, str] = field(default_factory=dict)  # canonical path -> remote path

    def rule_for(self, name: str) -> MappingRule | None:
        for rule in self.inbound:
            if rule.field == name:
                return rule
        return None

    def extend(
        self,
        candidates: dict[str, tuple[str, ...]] | None = None,
        extensions: Iterable[MappingRule] = (),
        outbound: dict[str, str] | None = None,
        rules: Iterable[MappingRule] = (),
    ) -> "EntityMapping":
        """
        Platform variant: extra candidates are tried before the defaults.

        `rules` replace the default rule for the same field outright; their
        candidate lists still get the default names appended so canonical
        data maps onto itself.
        """
        candidates = candidates or {}
        replacements = {rule.field: rule for rule in rules}
        merged = []
        for rule in self.inbound:
            if rule.field in replacements:
                custom = replacements[rule.field]
                merged.append(replace(custom, candidates=custom.candidates + rule.candidates))
            else:
                merged.append(
                    replace(rule, candidates=candidates.get(rule.field, ()) + rule.candidates)
                )
        rules = merged
        rules.extend(replace(rule, extension=True) for rule in extensions)
        return EntityMapping(
            entity_type=self.entity_type,
            inbound=tuple(rules),
            outbound=dict(outbound) if outbound is not None else dict(self.outbound),
        )


@dataclass
class MappedRecord:
    index: int
    raw: dict[str, Any]
    data: dict[str, Any]


@dataclass
class MappingFailure:
    index: int
    raw: dict[str, Any]
    errors: list[str]
    external_id: str | None = None


@dataclass
class BatchMapResult:
    mapped: list[MappedRecord] = field(default_factory=list)
    failures: list[MappingFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.mapped) + len(self.failures)


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

INVOICE_STATUSES = {
    "draft": "draft",
    "pending": "pending",
    "sent": "sent",
    "paid": "paid",
    "overdue": "overdue",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "void": "cancelled",
}

PROJECT_STATUSES = {
    "active": "active",
    "completed": "completed",
    "on_hold": "on_hold",
    "cancelled": "cancelled",
    "archived": "archived",
}

TASK_STATUSES = {
    "todo": "todo",
    "in_progress": "in_progress",
    "done": "done",
    "completed": "done",
    "cancelled": "cancelled",
}

PRIORITIES = {
    "low": "low",
    "medium": "medium",
    "high": "high",
    "urgent": "high",
}


def _vocabulary(table: dict[str, str], default: str) -> Callable[[Any], str]:
    def normalize(value: Any) -> str:
        if value is None or value == "":
            return default
        key = re.sub(r"[\s\-]+", "_", str(value).strip().lower())
        return table.get(key, default)
    return normalize


def parse_money(value: Any) -> Decimal | None:
    """'€1,234.50', '1.234,50', 99, 12.5 -> Decimal. Never rounds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a monetary amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))

    text = re.sub(r"[^\d,.\-]", "", str(value))
    if not re.search(r"\d", text):
        raise ValueError(f"not a monetary amount: {value!r}")

    if "," in text and "." in text:
        # The right-most separator is the decimal one
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if text.count(",") == 1 and len(tail) in (1, 2):
            text = f"{head}.{tail}"
        else:
            text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"not a monetary amount: {value!r}") from exc


def parse_datetime(value: Any) -> datetime | None:
    """ISO strings, free-form dates, epoch seconds / milliseconds -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        ts = float(value)
        if ts > 1e11:  # milliseconds
            ts /= 1000
        parsed = datetime.fromtimestamp(ts, tz=timezone.utc)
    else:
        parsed = date_parser.parse(str(value))

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: Any) -> date | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip()


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "str": _as_str,
    "lowercase": lambda v: str(v).strip().lower() if v else None,
    "money": parse_money,
    "date": parse_date,
    "datetime": parse_datetime,
    "invoice_status": _vocabulary(INVOICE_STATUSES, "draft"),
    "project_status": _vocabulary(PROJECT_STATUSES, "active"),
    "task_status": _vocabulary(TASK_STATUSES, "todo"),
    "priority": _vocabulary(PRIORITIES, "medium"),
}


def format_money(value: Any) -> str | None:
    if value is None:
        return None
    amount = value if isinstance(value, Decimal) else parse_money(value)
    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def format_date(value: Any) -> str | None:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


# Outbound formatting is keyed by the field's inbound transform
OUTBOUND_FORMATTERS: dict[str, Callable[[Any], Any]] = {
    "money": format_money,
    "date": format_date,
    "datetime": format_date,
}


def register_transform(
    name: str,
    inbound: Callable[[Any], Any],
    outbound: Callable[[Any], Any] | None = None,
) -> None:
    """Add a platform coercion (e.g. a CRM stage vocabulary) usable from MappingRule.transform."""
    TRANSFORMS[name] = inbound
    if outbound is not None:
        OUTBOUND_FORMATTERS[name] = outbound


# ---------------------------------------------------------------------------
# Default mappings
# ---------------------------------------------------------------------------

_EXTERNAL_ID = MappingRule("external_id", ("external_id", "id", "externalId", "recordId"), "str")
_CREATED_AT = MappingRule("created_at", ("created_at", "createdAt", "dateCreated", "created"), "datetime")
_UPDATED_AT = MappingRule(
    "updated_at",
    ("updated_at", "updatedAt", "dateModified", "modified", "lastModified"),
    "datetime",
)

ADDRESS_PARTS = (
    ("address", "street", "address1"),
    ("address2", "addressLine2"),
    ("city", "locality"),
    ("state", "region", "province"),
    ("postalCode", "zipCode", "zip"),
    ("country", "countryCode"),
)

DEFAULT_MAPPINGS: dict[EntityType, EntityMapping] = {
    EntityType.CLIENT: EntityMapping(
        entity_type=EntityType.CLIENT,
        inbound=(
            MappingRule("name", ("name", "companyName", "displayName", "title"), "str"),
            MappingRule("email", ("email", "emailAddress", "primaryEmail"), "lowercase"),
            MappingRule("phone", ("phone", "phoneNumber", "primaryPhone", "mobile"), "str"),
            MappingRule("company", ("company", "companyName", "organization"), "str"),
            MappingRule("website", ("website", "url", "websiteUrl"), "str"),
            MappingRule("notes", ("notes", "description", "comments"), "str"),
            MappingRule("address", parts=ADDRESS_PARTS),
            _EXTERNAL_ID,
            _CREATED_AT,
            _UPDATED_AT,
        ),
        outbound={
            "name": "name",
            "email": "email",
            "phone": "phone",
            "company": "company",
            "website": "website",
            "notes": "notes",
        },
    ),
    EntityType.INVOICE: EntityMapping(
        entity_type=EntityType.INVOICE,
        inbound=(
            MappingRule("invoice_number", ("invoice_number", "invoiceNumber", "number"), "str"),
            MappingRule("client_name", ("client_name", "clientName", "customerName", "accountName"), "str"),
            MappingRule("amount", ("amount", "total", "totalAmount"), "money"),
            MappingRule("currency", ("currency", "currencyCode"), "str", default="EUR"),
            MappingRule("status", ("status", "state"), "invoice_status"),
            MappingRule("due_date", ("due_date", "dueDate", "paymentDue", "dueDatetime"), "date"),
            MappingRule("issue_date", ("issue_date", "issueDate", "invoiceDate", "dateIssued"), "date"),
            MappingRule("description", ("description", "memo", "notes"), "str"),
            _EXTERNAL_ID,
            _CREATED_AT,
            _UPDATED_AT,
        ),
        outbound={
            "invoice_number": "invoiceNumber",
            "client_name": "clientName",
            "amount": "amount",
            "currency": "currency",
            "status": "status",
            "due_date": "dueDate",
            "issue_date": "issueDate",
            "description": "description",
        },
    ),
    EntityType.PROJECT: EntityMapping(
        entity_type=EntityType.PROJECT,
        inbound=(
            MappingRule("name", ("name", "title", "projectName"), "str"),
            MappingRule("description", ("description", "notes", "summary"), "str"),
            MappingRule("status", ("status", "state"), "project_status"),
            MappingRule("start_date", ("start_date", "startDate", "dateStarted"), "date"),
            MappingRule("end_date", ("end_date", "endDate", "dueDate", "completedAt"), "date"),
            MappingRule("client_id", ("client_id", "clientId", "customerId", "accountId"), "str"),
            _EXTERNAL_ID,
            _CREATED_AT,
            _UPDATED_AT,
        ),
        outbound={
            "name": "name",
            "description": "description",
            "status": "status",
            "start_date": "startDate",
            "end_date": "endDate",
        },
    ),
    EntityType.TASK: EntityMapping(
        entity_type=EntityType.TASK,
        inbound=(
            MappingRule("title", ("title", "name", "summary"), "str"),
            MappingRule("description", ("description", "notes", "content"), "str"),
            MappingRule("status", ("status", "state"), "task_status"),
            MappingRule("priority", ("priority", "importance"), "priority"),
            MappingRule("due_date", ("due_date", "dueDate", "deadline", "dueOn"), "date"),
            MappingRule("assignee", ("assignee", "assignedTo", "owner"), "str"),
            MappingRule("project_id", ("project_id", "projectId", "boardId", "listId"), "str"),
            _EXTERNAL_ID,
            _CREATED_AT,
            _UPDATED_AT,
        ),
        outbound={
            "title": "title",
            "description": "description",
            "status": "status",
            "priority": "priority",
            "due_date": "dueDate",
            "assignee": "assignee",
        },
    ),
}


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------

def _validate_client(data: dict[str, Any]) -> list[str]:
    if not data.get("name") and not data.get("email"):
        return ["Client must have either name or email"]
    return []


def _validate_invoice(data: dict[str, Any]) -> list[str]:
    errors = []
    if not data.get("invoice_number"):
        errors.append("Invoice must have invoice_number")
    try:
        amount = parse_money(data.get("amount"))
    except ValueError:
        amount = None
    if amount is None or amount <= 0:
        errors.append("Invoice must have valid amount")
    return errors


def _validate_project(data: dict[str, Any]) -> list[str]:
    return [] if data.get("name") else ["Project must have name"]


def _validate_task(data: dict[str, Any]) -> list[str]:
    return [] if data.get("title") else ["Task must have title"]


VALIDATORS: dict[EntityType, Callable[[dict[str, Any]], list[str]]] = {
    EntityType.CLIENT: _validate_client,
    EntityType.INVOICE: _validate_invoice,
    EntityType.PROJECT: _validate_project,
    EntityType.TASK: _validate_task,
}


# ---------------------------------------------------------------------------
# DataMapper
# ---------------------------------------------------------------------------

class DataMapper:
    """Maps records between one platform's schema and canonical entities."""

    def __init__(
        self,
        platform: str,
        mappings: dict[EntityType, EntityMapping] | None = None,
    ):
        self.platform = platform
        self._mappings: dict[EntityType, EntityMapping] = dict(DEFAULT_MAPPINGS)
        if mappings:
            self._mappings.update(mappings)

    def mapping_for(self, entity_type: EntityType | str) -> EntityMapping:
        try:
            return self._mappings[EntityType(entity_type)]
        except (KeyError, ValueError):
            raise ConfigurationError(
                f"Unsupported entity type: {entity_type}", platform=self.platform
            ) from None

    def map(
        self,
        record: dict[str, Any],
        entity_type: EntityType | str,
        direction: Direction | str = Direction.INBOUND,
    ) -> dict[str, Any]:
        """Map one record. Raises ValidationError if a field cannot be coerced."""
        if not isinstance(record, dict):
            raise ValidationError(f"Expected a mapping, got {type(record).__name__}", platform=self.platform)
        mapping = self.mapping_for(entity_type)
        if Direction(direction) == Direction.INBOUND:
            return self._map_inbound(record, mapping)
        return self._map_outbound(record, mapping)

    def validate(self, mapped: dict[str, Any], entity_type: EntityType | str) -> list[str]:
        """Return the list of violated required-field rules (empty when valid)."""
        validator = VALIDATORS.get(EntityType(entity_type))
        return validator(mapped) if validator else []

    def map_batch(
        self,
        records: list[dict[str, Any]],
        entity_type: EntityType | str,
        direction: Direction | str = Direction.INBOUND,
    ) -> BatchMapResult:
        """Map and validate every record; failures are collected, never raised."""
        if not isinstance(records, list):
            raise ValidationError("Data must be a list for batch mapping", platform=self.platform)

        direction = Direction(direction)
        result = BatchMapResult()
        for index, raw in enumerate(records):
            try:
                if direction == Direction.OUTBOUND:
                    errors = self.validate(raw, entity_type)
                    data = self.map(raw, entity_type, direction) if not errors else {}
                else:
                    data = self.map(raw, entity_type, direction)
                    errors = self.validate(data, entity_type)
            except ValidationError as exc:
                errors, data = exc.errors, {}
            except (ValueError, ArithmeticError, TypeError) as exc:
                errors, data = [str(exc) or type(exc).__name__], {}

            if errors:
                external_id = raw.get("external_id") or raw.get("id") if isinstance(raw, dict) else None
                logger.warning(
                    "[%s] %s record #%d rejected: %s",
                    self.platform, EntityType(entity_type).value, index, "; ".join(errors),
                )
                result.failures.append(MappingFailure(
                    index=index,
                    raw=raw if isinstance(raw, dict) else {"value": raw},
                    errors=errors,
                    external_id=str(external_id) if external_id is not None else None,
                ))
            else:
                result.mapped.append(MappedRecord(index=index, raw=raw, data=data))
        return result

    # --- Inbound ---

    def _map_inbound(self, record: dict[str, Any], mapping: EntityMapping) -> dict[str, Any]:
        result: dict[str, Any] = {}
        extensions: dict[str, Any] = dict(record.get("extensions") or {})
        errors: list[str] = []

        for rule in mapping.inbound:
            value = self._compose(record, rule.parts, rule.joiner) if rule.parts else None
            if value is None:
                value = self._first_value(record, rule.candidates)
            if value is None and rule.extension:
                value = extensions.get(rule.field)

            if rule.transform:
                try:
                    value = TRANSFORMS[rule.transform](value)
                except (ValueError, TypeError, OverflowError) as exc:
                    errors.append(f"{rule.field}: {exc}")
                    continue
            if value is None:
                value = rule.default
            if value is None:
                continue

            if rule.extension:
                extensions[rule.field] = value
            else:
                result[rule.field] = value

        if errors:
            raise ValidationError(
                f"Failed to map {mapping.entity_type.value}", errors=errors, platform=self.platform
            )

        if extensions:
            result["extensions"] = extensions
        result["platform"] = self.platform
        return result

    @classmethod
    def _first_value(cls, record: dict[str, Any], candidates: tuple[str, ...]) -> Any:
        for name in candidates:
            value = record.get(name)
            if value is None and "." in name:
                value = cls._get_nested(record, name)
            if value is not None and value != "":
                return value
        return None

    @classmethod
    def _compose(
        cls, record: dict[str, Any], parts: tuple[tuple[str, ...], ...], joiner: str = ", "
    ) -> str | None:
        values = []
        for candidates in parts:
            value = cls._first_value(record, candidates)
            if value is not None and not isinstance(value, (dict, list)):
                values.append(str(value).strip())
        joined = joiner.join(v for v in values if v)
        return joined or None

    # --- Outbound ---

    def _map_outbound(self, local: dict[str, Any], mapping: EntityMapping) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for local_path, remote_path in mapping.outbound.items():
            value = self._get_nested(local, local_path)
            if value is None:
                continue
            rule = mapping.rule_for(local_path.split(".")[-1])
            formatter = OUTBOUND_FORMATTERS.get(rule.transform) if rule and rule.transform else None
            if formatter:
                value = formatter(value)
            elif isinstance(value, (date, datetime)):
                value = format_date(value)
            elif isinstance(value, Decimal):
                value = format_money(value)
            self._set_nested(result, remote_path, value)
        return result

    # --- Paths ---

    @staticmethod
    def _get_nested(data: dict[str, Any], path: str) -> Any:
        """Access nested dict values via dot notation (e.g. 'properties.email')."""
        current: Any = data
        for part in path.split("."):
            if isinstance(current, dict):
                current = current.get(part)
            else:
                return None
            if current is None:
                return None
        return current

    @staticmethod
    def _set_nested(data: dict[str, Any], path: str, value: Any) -> None:
        parts = path.split(".")
        current = data
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value
