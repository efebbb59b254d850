"""Quantity distribution rules used by bulk allocation. Pure functions."""

import math
from typing import Optional

from allocator.errors import AllocationError, ErrorCode

EQUAL_DISTRIBUTION = "EQUAL_DISTRIBUTION"
PERCENTAGE_SPLIT = "PERCENTAGE_SPLIT"
TEMPLATE_BASED = "TEMPLATE_BASED"
CUSTOM = "CUSTOM"

STRATEGY_TYPES = (EQUAL_DISTRIBUTION, PERCENTAGE_SPLIT, TEMPLATE_BASED, CUSTOM)

TEMPLATE_KEYS = ("location_percentages", "location_fixed_amounts", "rules")


def _invalid(message: str) -> AllocationError:
    return AllocationError(ErrorCode.INVALID_INPUT, message)


def _amount(value, what: str):
    """A non-negative int or float; anything else is INVALID_INPUT."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise _invalid(f"{what} must be a non-negative number")
    return value


def _non_zero(pairs: list[tuple[str, int]]) -> list[tuple[str, int]]:
    return [(loc, qty) for loc, qty in pairs if qty > 0]


def equal_split(ordered: int, location_ids: list[str]) -> list[tuple[str, int]]:
    """
    ordered // n to each location; the ordered % n leftover units go one
    each to the first locations. Locations that end up with 0 are dropped.
    """
    if not location_ids:
        raise _invalid("Equal distribution needs at least one location")
    base, leftover = divmod(ordered, len(location_ids))
    return _non_zero([
        (loc, base + (1 if i < leftover else 0))
        for i, loc in enumerate(location_ids)
    ])


def percentage_split(ordered: int, percentages: dict) -> list[tuple[str, int]]:
    if not percentages:
        raise _invalid("Percentage split needs location percentages")
    for loc, pct in percentages.items():
        _amount(pct, f"Percentage for location {loc}")
    total = sum(percentages.values())
    if total > 100:
        raise _invalid(f"Location percentages sum to {total}, more than 100")
    return _non_zero([
        (loc, math.floor(ordered * pct / 100)) for loc, pct in percentages.items()
    ])


def fixed_amounts(ordered: int, amounts: dict) -> list[tuple[str, int]]:
    """Each fixed amount capped at the ordered quantity."""
    if not amounts:
        raise _invalid("Fixed amounts need at least one location")
    for loc, amount in amounts.items():
        _amount(amount, f"Fixed amount for location {loc}")
    return _non_zero([(loc, min(int(amount), ordered)) for loc, amount in amounts.items()])


def custom_rules(ordered: int, rules: list[dict]) -> list[tuple[str, int]]:
    """
    Rules run in order against a remainder starting at the ordered quantity.
    A percentage rule takes floor(ordered * pct / 100), a fixed rule its
    quantity, both capped at what remains. A rule with neither takes the
    whole remainder.
    """
    if not rules:
        raise _invalid("Custom strategy needs at least one rule")

    remainder = ordered
    out = []
    for rule in rules:
        location_id = rule.get("location_id")
        if not location_id:
            raise _invalid("Every custom rule needs a location_id")
        percentage: Optional[float] = rule.get("percentage")
        fixed: Optional[int] = rule.get("fixed_quantity")
        if percentage is not None:
            _amount(percentage, f"Percentage for location {location_id}")
        if fixed is not None:
            _amount(fixed, f"Fixed quantity for location {location_id}")

        if percentage is not None:
            wanted = math.floor(ordered * percentage / 100)
        elif fixed is not None:
            wanted = int(fixed)
        else:
            wanted = remainder
        quantity = min(wanted, remainder)
        remainder -= quantity
        out.append((str(location_id), quantity))
    return _non_zero(out)


def validate_template_data(data: dict) -> None:
    if not isinstance(data, dict):
        raise _invalid("Template data must be an object")
    present = [k for k in TEMPLATE_KEYS if data.get(k)]
    if len(present) != 1:
        raise _invalid(
            "Template data must define exactly one of "
            "location_percentages, location_fixed_amounts or rules"
        )
    key = present[0]
    if key == "rules":
        if not isinstance(data[key], list):
            raise _invalid("Template rules must be a list")
        for rule in data[key]:
            if not isinstance(rule, dict) or not rule.get("location_id"):
                raise _invalid("Every template rule needs a location_id")
            for field in ("percentage", "fixed_quantity"):
                if rule.get(field) is not None:
                    _amount(rule[field], f"Rule {field} for location {rule['location_id']}")
        return
    if not isinstance(data[key], dict):
        raise _invalid(f"Template {key} must map location ids to numbers")
    for loc, value in data[key].items():
        _amount(value, f"Template value for location {loc}")
    if key == "location_percentages" and sum(data[key].values()) > 100:
        raise _invalid("Template percentages sum to more than 100")


def template_locations(data: dict) -> list[str]:
    if data.get("rules"):
        return [str(r["location_id"]) for r in data["rules"]]
    for key in ("location_percentages", "location_fixed_amounts"):
        if data.get(key):
            return [str(loc) for loc in data[key]]
    return []


def resolve_template(data: dict, ordered: int) -> list[tuple[str, int]]:
    validate_template_data(data)
    if data.get("location_percentages"):
        return percentage_split(ordered, data["location_percentages"])
    if data.get("location_fixed_amounts"):
        return fixed_amounts(ordered, data["location_fixed_amounts"])
    return custom_rules(ordered, data["rules"])


def restrict(pairs: list[tuple[str, int]], location_ids: list[str]) -> list[tuple[str, int]]:
    """Keep only the listed locations; an empty list keeps everything."""
    if not location_ids:
        return pairs
    wanted = {str(loc) for loc in location_ids}
    return [(loc, qty) for loc, qty in pairs if loc in wanted]
