import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from autolot.exceptions import MappingError, ValidationError
from autolot.imports.models import FieldMapping, FileFormatSettings
from autolot.imports.transforms import TransformContext, TransformError, apply_rules

logger = logging.getLogger(__name__)

_STRIP_NUMERIC = re.compile(r"[\s$€£¥ ]")
_PLAIN_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_VIN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
_TIME_DIRECTIVES = ("%H", "%I", "%M", "%S", "%p", "%f", "%X", "%c")

TRUE_WORDS = frozenset({"true", "t", "yes", "y", "1", "on", "x"})
FALSE_WORDS = frozenset({"false", "f", "no", "n", "0", "off"})

NON_NEGATIVE_FIELDS = (
    "price",
    "msrp",
    "other_price",
    "dealer_discount",
    "consumer_rebate",
    "dealer_accessories",
    "total_customer_savings",
    "total_dealer_rebate",
    "odometer",
)


@dataclass
class FieldIssue:
    field: str
    message: str
    kind: str = "mapping"


@dataclass
class MappingResult:
    record: Dict[str, Any] = field(default_factory=dict)
    errors: List[FieldIssue] = field(default_factory=list)
    warnings: List[FieldIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def parse_decimal(text: str) -> Decimal:
    """
    Locale-agnostic numeric parsing.
    "$1,234.50", "1.234,50", "1 234" and "(12)" all parse; the rightmost of '.'/','
    is the decimal mark when both occur, and a lone separator followed by exactly
    three digits groups thousands.
    """
    cleaned = _STRIP_NUMERIC.sub("", str(text))
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]
    if not cleaned:
        raise ValueError("empty number")

    has_dot = "." in cleaned
    has_comma = "," in cleaned
    if has_dot and has_comma:
        decimal_mark = "." if cleaned.rfind(".") > cleaned.rfind(",") else ","
        group_mark = "," if decimal_mark == "." else "."
        cleaned = cleaned.replace(group_mark, "").replace(decimal_mark, ".")
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        head, *tail = cleaned.split(sep)
        digits_head = head.lstrip("+-")
        if len(tail) > 1:
            if not all(len(part) == 3 for part in tail):
                raise ValueError(f"ambiguous separators in '{text}'")
            cleaned = head + "".join(tail)
        elif len(tail[0]) == 3 and digits_head not in ("", "0"):
            cleaned = head + tail[0]
        else:
            cleaned = f"{head}.{tail[0]}"

    if not _PLAIN_NUMBER.match(cleaned):
        raise ValueError(f"'{text}' is not a number")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"'{text}' is not a number") from exc
    return -value if negative else value


def parse_integer(text: str) -> int:
    value = parse_decimal(text)
    if value != value.to_integral_value():
        raise ValueError(f"'{text}' is not a whole number")
    return int(value)


def parse_boolean(text: str) -> bool:
    word = str(text).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"'{text}' is not a recognised boolean")


def has_time_part(date_format: str) -> bool:
    return any(d in date_format for d in _TIME_DIRECTIVES)


def parse_date(text: str, date_format: str) -> date | datetime:
    try:
        parsed = datetime.strptime(str(text).strip(), date_format)
    except ValueError as exc:
        raise ValueError(f"'{text}' does not match date format '{date_format}'") from exc
    return parsed if has_time_part(date_format) else parsed.date()


def coerce(value: str, field_type: str, file_format: FileFormatSettings) -> Any:
    if field_type == "integer":
        return parse_integer(value)
    if field_type == "decimal":
        return parse_decimal(value)
    if field_type == "boolean":
        return parse_boolean(value)
    if field_type == "date":
        return parse_date(value, file_format.date_format)
    return str(value).strip()


def render(value: Any, field_type: str, file_format: FileFormatSettings) -> Optional[str]:
    """Inverse of coerce: renders a typed value back to source text that coerces to an equal value."""
    if value is None:
        return None
    if field_type == "boolean":
        return "true" if value else "false"
    if field_type == "date":
        return value.strftime(file_format.date_format)
    if field_type == "decimal":
        text = format(Decimal(value), "f")
        # Three fraction digits would read back as a thousands group.
        if "." in text and len(text.split(".", 1)[1]) == 3:
            text += "0"
        return text
    return str(value)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def effective_mappings(mappings: Iterable[FieldMapping]) -> List[FieldMapping]:
    """
    Mappings in application order with duplicate targets dropped.
    Ordered by field_order, stable on declaration order; the first mapping to
    name a target claims it and later ones are ignored.
    """
    ordered = sorted(enumerate(mappings), key=lambda pair: (pair[1].field_order, pair[0]))
    claimed: set[str] = set()
    winners: List[FieldMapping] = []
    for _, mapping in ordered:
        if mapping.target_field in claimed:
            continue
        claimed.add(mapping.target_field)
        winners.append(mapping)
    return winners


class FieldMappingEngine:
    """
    Converts one raw row into a canonical vehicle record.
    Pure: no I/O, the only state is the optional lookup side tables used by rules.
    """

    def __init__(self, lookups: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self.lookups = dict(lookups or {})

    def map(
        self,
        raw_row: Mapping[str, Any],
        mappings: Iterable[FieldMapping],
        file_format: FileFormatSettings,
        validate_data: bool = True,
    ) -> MappingResult:
        result = MappingResult()
        ctx = TransformContext(self.lookups, file_format.multi_value_delimiter)
        failed: list[MappingError] = []
        mappings = list(mappings)
        winners = effective_mappings(mappings)
        # A target is required when any mapping naming it says so, winner or not.
        required = {m.target_field for m in mappings if m.is_required}

        for mapping in winners:
            target = mapping.target_field
            raw = raw_row.get(mapping.source_field)
            if _blank(raw):
                raw = mapping.default_value
            if _blank(raw):
                continue
            try:
                value = self._map_value(raw, mapping, file_format, ctx)
            except MappingError as exc:
                failed.append(exc)
                if not validate_data:
                    result.record[target] = None
                continue
            result.record[target] = value

        errored = {exc.field for exc in failed}
        for mapping in winners:
            if mapping.target_field not in required or mapping.target_field in errored:
                continue
            if result.record.get(mapping.target_field) is None:
                failed.append(MappingError(mapping.target_field, "required value is missing"))
                if not validate_data:
                    result.record[mapping.target_field] = None

        for exc in failed:
            issue = FieldIssue(exc.field, exc.message, "mapping")
            (result.errors if validate_data else result.warnings).append(issue)

        self._normalize_vin(result.record)
        errored = {issue.field for issue in result.errors}
        for exc in self.check_business_rules(result.record, validate_data, skip=errored):
            result.errors.append(FieldIssue(exc.field, exc.message, "validation"))
        return result

    def _map_value(self, raw: Any, mapping: FieldMapping, file_format: FileFormatSettings, ctx: TransformContext) -> Any:
        try:
            value = coerce(raw, mapping.field_type, file_format)
        except ValueError as exc:
            raise MappingError(mapping.target_field, str(exc)) from exc
        if mapping.transformation_rule is None:
            return value
        try:
            return apply_rules(value, mapping.transformation_rule, ctx)
        except (TransformError, ValueError, TypeError, ArithmeticError) as exc:
            raise MappingError(mapping.target_field, f"transformation failed: {exc}") from exc

    @staticmethod
    def _normalize_vin(record: Dict[str, Any]) -> None:
        vin = record.get("vin")
        if isinstance(vin, str):
            record["vin"] = vin.strip().upper() or None

    @staticmethod
    def check_business_rules(
        record: Mapping[str, Any], validate_data: bool = True, skip: Iterable[str] = ()
    ) -> List[ValidationError]:
        skip = set(skip)
        issues: List[ValidationError] = []
        vin = record.get("vin")
        if "vin" not in skip:
            if not vin:
                # Duplicate resolution is keyed by VIN, so this holds with validation off too.
                issues.append(ValidationError("vin", "VIN is required"))
            elif validate_data and not _VIN.match(str(vin)):
                issues.append(ValidationError("vin", f"'{vin}' is not a valid 17-character VIN"))
        if not validate_data:
            return issues

        year = record.get("year")
        if "year" not in skip and isinstance(year, int):
            latest = date.today().year + 2
            if not 1900 <= year <= latest:
                issues.append(ValidationError("year", f"model year {year} outside 1900..{latest}"))

        for name in NON_NEGATIVE_FIELDS:
            value = record.get(name)
            if name in skip or value is None or isinstance(value, bool):
                continue
            if isinstance(value, (int, Decimal, float)) and value < 0:
                issues.append(ValidationError(name, f"{name} must not be negative"))
        return issues

    def project(
        self,
        record: Mapping[str, Any],
        mappings: Iterable[FieldMapping],
        file_format: FileFormatSettings,
    ) -> Dict[str, Optional[str]]:
        """
        Inverse target -> source projection for mappings without a transformation rule.
        Re-mapping the projected row reproduces each projected typed value.
        """
        source: Dict[str, Optional[str]] = {}
        for mapping in effective_mappings(mappings):
            if mapping.transformation_rule is not None or mapping.target_field not in record:
                continue
            source[mapping.source_field] = render(record[mapping.target_field], mapping.field_type, file_format)
        return source
