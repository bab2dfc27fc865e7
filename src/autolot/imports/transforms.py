"""
Post-coercion transformation rules for field mappings.

A rule is a dict with a ``type`` key (``{"type": "multiply", "factor": 1.609}``),
a bare rule name (``"uppercase"``), or a list of either applied left to right.
Rules are pure: they see the coerced value plus optional lookup side tables.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional


class TransformError(ValueError):
    pass


RuleFn = Callable[[Any, dict, "TransformContext"], Any]


class TransformContext:
    def __init__(self, lookups: Optional[Mapping[str, Mapping[str, Any]]] = None, multi_value_delimiter: str = "|"):
        self.lookups = lookups or {}
        self.multi_value_delimiter = multi_value_delimiter


def _as_text(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TransformError("numeric rule applied to a boolean")
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise TransformError(f"'{value}' is not numeric") from exc


def _keep_kind(original: Any, result: Decimal) -> Any:
    # Integer fields stay integers after arithmetic rules.
    if isinstance(original, int) and not isinstance(original, bool):
        return int(result.to_integral_value(rounding=ROUND_HALF_UP))
    return result


def _trim(value, rule, ctx):
    return _as_text(value).strip()


def _uppercase(value, rule, ctx):
    return _as_text(value).upper()


def _lowercase(value, rule, ctx):
    return _as_text(value).lower()


def _title(value, rule, ctx):
    return _as_text(value).title()


def _replace(value, rule, ctx):
    find = rule.get("find")
    if find is None:
        raise TransformError("replace rule needs 'find'")
    repl = str(rule.get("replace", ""))
    if rule.get("regex", True):
        try:
            return re.sub(str(find), repl, _as_text(value))
        except re.error as exc:
            raise TransformError(f"invalid pattern '{find}': {exc}") from exc
    return _as_text(value).replace(str(find), repl)


def _lookup(value, rule, ctx):
    table = rule.get("values")
    if table is None:
        name = rule.get("table")
        if name not in ctx.lookups:
            raise TransformError(f"unknown lookup table '{name}'")
        table = ctx.lookups[name]
    key = _as_text(value)
    if key in table:
        return table[key]
    if not rule.get("case_sensitive", False):
        folded = {str(k).lower(): v for k, v in table.items()}
        if key.lower() in folded:
            return folded[key.lower()]
    if "default" in rule:
        return rule["default"]
    if rule.get("strict", False):
        raise TransformError(f"no lookup entry for '{key}'")
    return value


def _multiply(value, rule, ctx):
    factor = _as_decimal(rule.get("factor", 1))
    return _keep_kind(value, _as_decimal(value) * factor)


def _divide(value, rule, ctx):
    divisor = _as_decimal(rule.get("divisor", 1))
    if divisor == 0:
        raise TransformError("divide rule with zero divisor")
    return _keep_kind(value, _as_decimal(value) / divisor)


def _round(value, rule, ctx):
    digits = int(rule.get("digits", 0))
    result = _as_decimal(value).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    return _keep_kind(value, result)


def _prefix(value, rule, ctx):
    return f"{rule.get('value', '')}{_as_text(value)}"


def _suffix(value, rule, ctx):
    return f"{_as_text(value)}{rule.get('value', '')}"


def _split_list(value, rule, ctx):
    if isinstance(value, list):
        return value
    sep = rule.get("delimiter") or ctx.multi_value_delimiter
    return [part.strip() for part in _as_text(value).split(sep) if part.strip()]


def _url_list(value, rule, ctx):
    if isinstance(value, list):
        return value
    text = _as_text(value).strip()
    if text.startswith("{") and text.endswith("}"):
        text = text[1:-1]
    sep = rule.get("delimiter")
    parts = text.split(sep) if sep else re.split(r"[|,\s]+", text)
    return [p.strip() for p in parts if p.strip()]


def _clean(value, rule, ctx):
    text = _as_text(value).replace("*", "")
    return re.sub(r"\s+", " ", text).strip()


RULES: dict[str, RuleFn] = {
    "trim": _trim,
    "uppercase": _uppercase,
    "lowercase": _lowercase,
    "title": _title,
    "replace": _replace,
    "lookup": _lookup,
    "map": _lookup,
    "multiply": _multiply,
    "divide": _divide,
    "round": _round,
    "prefix": _prefix,
    "suffix": _suffix,
    "split": _split_list,
    "pipe_list": _split_list,
    "url_list": _url_list,
    "clean": _clean,
}


def normalize_rules(rule: Any) -> list[dict]:
    if rule is None:
        return []
    if isinstance(rule, str):
        return [{"type": rule}]
    if isinstance(rule, dict):
        if "rules" in rule and "type" not in rule:
            return normalize_rules(rule["rules"])
        return [rule]
    if isinstance(rule, list):
        out: list[dict] = []
        for item in rule:
            out.extend(normalize_rules(item))
        return out
    raise TransformError(f"unsupported transformation rule: {rule!r}")


def apply_rules(value: Any, rule: Any, ctx: Optional[TransformContext] = None) -> Any:
    """Applies a transformation rule (or chain) to an already-coerced value."""
    ctx = ctx or TransformContext()
    result = value
    for step in normalize_rules(rule):
        name = str(step.get("type", "")).strip().lower()
        fn = RULES.get(name)
        if fn is None:
            raise TransformError(f"unknown transformation '{name}'")
        if result is None:
            break
        result = fn(result, step, ctx)
    return result


def validate_rule(rule: Any) -> None:
    """Raises TransformError when a rule names an unknown transformation."""
    for step in normalize_rules(rule):
        name = str(step.get("type", "")).strip().lower()
        if name not in RULES:
            raise TransformError(f"unknown transformation '{name}'")
