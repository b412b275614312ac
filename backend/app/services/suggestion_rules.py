"""
Suggestion rules - prefill unit, category, K FO / K MO and labour role of a
new line from keywords found in its title.

A rule's match_value is a comma-separated keyword list ("carrelage, faience").
Rules are tried by ascending position; the first active rule having one
keyword contained in the title wins. Matching ignores case and accents.
"""
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

MATCH_TYPE_KEYWORD = "keyword"

# Line fields a rule can prefill
SUGGESTED_FIELDS = ("unit", "category_id", "k_fo", "k_mo", "labor_role_id")


@dataclass
class SuggestionRule:
    id: str
    name: str
    match_value: str
    position: int = 0
    is_active: bool = True
    match_type: str = MATCH_TYPE_KEYWORD
    unit: Optional[str] = None
    category_id: Optional[str] = None
    k_fo: Optional[float] = None
    k_mo: Optional[float] = None
    labor_role_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "SuggestionRule":
        return cls(**{name: getattr(row, name) for name in cls.__dataclass_fields__})


def normalize_keywords(value: Optional[str]) -> str:
    """'  a,, b ,c ' -> 'a, b, c'"""
    parts = (part.strip() for part in (value or "").split(","))
    return ", ".join(part for part in parts if part)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def rule_keywords(rule: SuggestionRule) -> List[str]:
    return [_fold(keyword) for keyword in normalize_keywords(rule.match_value).split(", ") if keyword]


def find_matching_rule(title: Optional[str], rules: Iterable[SuggestionRule]) -> Optional[SuggestionRule]:
    folded_title = _fold(title or "").strip()
    if not folded_title:
        return None
    for rule in sorted(rules, key=lambda r: r.position):
        if not rule.is_active or rule.match_type != MATCH_TYPE_KEYWORD:
            continue
        if any(keyword in folded_title for keyword in rule_keywords(rule)):
            return rule
    return None


def suggest_line_fields(title: Optional[str], rules: Iterable[SuggestionRule]) -> Dict[str, Any]:
    """Non-null fields of the winning rule, keyed like estimate_items columns."""
    rule = find_matching_rule(title, rules)
    if rule is None:
        return {}
    suggestion = {}
    for field in SUGGESTED_FIELDS:
        value = getattr(rule, field)
        if value is not None:
            suggestion["description" if field == "unit" else field] = value
    return suggestion


def next_rule_position(rules: Iterable[SuggestionRule], requested: Optional[int] = None) -> int:
    if requested and requested > 0:
        return requested
    return max((rule.position for rule in rules), default=0) + 1
