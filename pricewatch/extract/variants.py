"""Variant enumeration from DOM option controls."""

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from selectolax.parser import HTMLParser

from pricewatch.db.models import StockStatus
from pricewatch.extract.payloads import normalize_attribute_name
from pricewatch.extract.shell import VariantCandidate

logger = logging.getLogger(__name__)

MAX_VARIANTS = 100

PLACEHOLDER_RE = re.compile(r"^(?:select|choose|pick|please\s+select|--)", re.I)
SOLD_OUT_SUFFIX_RE = re.compile(r"\s*[-–(]?\s*(?:sold\s*out|unavailable|out\s+of\s+stock)\)?\s*$", re.I)

# Form fields that are never product options
NON_VARIANT_FIELDS = (
    "quantity", "qty", "country", "currency", "sort", "language", "locale",
    "region", "shipping", "state", "province", "rating", "search",
)
MASTER_SELECT_NAMES = {"id", "variant_id", "variant"}


@dataclass
class OptionValue:
    value: str
    available: Optional[bool] = None


@dataclass
class OptionGroup:
    name: str
    values: List[OptionValue] = field(default_factory=list)


def _clean_value(text: str) -> str:
    return " ".join(SOLD_OUT_SUFFIX_RE.sub("", text).split())


def _is_variant_field(name: str) -> bool:
    if not name or name in MASTER_SELECT_NAMES:
        return False
    return not any(token in name for token in NON_VARIANT_FIELDS)


def _label_for(node) -> str:
    attrs = node.attributes
    for key in ("data-option-name", "aria-label", "data-name", "name", "id"):
        if attrs.get(key):
            return attrs[key]
    return ""


def _select_groups(tree: HTMLParser) -> List[OptionGroup]:
    groups = []
    labels = {}
    for label in tree.css("label[for]"):
        target = label.attributes.get("for")
        text = label.text(strip=True)
        if target and text:
            labels.setdefault(target, text)

    for select in tree.css("select"):
        name = labels.get(select.attributes.get("id")) or _label_for(select)
        name = normalize_attribute_name(name)
        if not _is_variant_field(name):
            continue

        values = []
        for option in select.css("option"):
            text = option.text(strip=True)
            raw_value = (option.attributes.get("value") or "").strip()
            if not text or not raw_value or PLACEHOLDER_RE.match(text):
                continue
            sold_out = "disabled" in option.attributes or bool(SOLD_OUT_SUFFIX_RE.search(text))
            values.append(OptionValue(value=_clean_value(text), available=not sold_out))
        if values:
            groups.append(OptionGroup(name=name, values=values))
    return groups


def _radio_groups(tree: HTMLParser) -> List[OptionGroup]:
    by_name: Dict[str, OptionGroup] = {}
    for radio in tree.css('input[type="radio"]'):
        attrs = radio.attributes
        name = normalize_attribute_name(attrs.get("data-option-name") or attrs.get("name") or "")
        value = (attrs.get("value") or "").strip()
        if not _is_variant_field(name) or not value or PLACEHOLDER_RE.match(value):
            continue
        group = by_name.setdefault(name, OptionGroup(name=name))
        if all(v.value != value for v in group.values):
            group.values.append(OptionValue(value=value, available="disabled" not in attrs))
    return [g for g in by_name.values() if g.values]


def _swatch_groups(tree: HTMLParser) -> List[OptionGroup]:
    by_name: Dict[str, OptionGroup] = {}
    for node in tree.css("[data-option-name][data-option-value]"):
        if node.tag in ("select", "input", "option"):
            continue
        attrs = node.attributes
        name = normalize_attribute_name(attrs.get("data-option-name") or "")
        value = " ".join((attrs.get("data-option-value") or "").split())
        if not _is_variant_field(name) or not value:
            continue
        group = by_name.setdefault(name, OptionGroup(name=name))
        if all(v.value != value for v in group.values):
            unavailable = "disabled" in attrs or "unavailable" in (attrs.get("class") or "")
            group.values.append(OptionValue(value=value, available=not unavailable))
    return [g for g in by_name.values() if g.values]


def dom_option_groups(tree: HTMLParser) -> List[OptionGroup]:
    """Collect option groups from selects, radio groups and swatches (first wins per name)."""
    groups: Dict[str, OptionGroup] = {}
    for group in _select_groups(tree) + _radio_groups(tree) + _swatch_groups(tree):
        groups.setdefault(group.name, group)
    return list(groups.values())


def combine_option_groups(
    groups: List[OptionGroup], max_variants: int = MAX_VARIANTS
) -> List[VariantCandidate]:
    """
    Cartesian product of option groups, capped at ``max_variants``.

    Per-value availability is only meaningful for single-dimension products;
    multi-dimension combinations inherit the product-level stock later.
    """
    if not groups:
        return []

    candidates = []
    combos = itertools.product(*(g.values for g in groups))
    for combo in itertools.islice(combos, max_variants):
        attributes = {g.name: v.value for g, v in zip(groups, combo)}
        candidate = VariantCandidate(attributes=attributes, source="dom:options")
        if len(groups) == 1 and combo[0].available is False:
            candidate.stock_status = StockStatus.OUT_OF_STOCK
        candidates.append(candidate)
    return candidates
