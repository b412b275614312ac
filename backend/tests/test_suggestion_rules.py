"""
test_suggestion_rules.py - Keyword rules that prefill new estimate lines.

Tests cover:
  - normalize_keywords clean-up
  - find_matching_rule: position order, inactive rules, accents and case
  - suggest_line_fields output keys (unit -> description)
  - next_rule_position

All tests are pure unit tests; no database or external services required.
"""

import pytest

from app.services.suggestion_rules import (
    SuggestionRule,
    find_matching_rule,
    next_rule_position,
    normalize_keywords,
    suggest_line_fields,
)


@pytest.fixture
def rules():
    return [
        SuggestionRule(id="r-peinture", name="Peinture", match_value="peinture, enduit", position=2,
                       unit="m2", k_fo=1.1, labor_role_id="role-peintre"),
        SuggestionRule(id="r-carrelage", name="Carrelage", match_value="carrelage,faïence", position=1,
                       unit="m2", category_id="cat-mat", k_mo=1.3),
        SuggestionRule(id="r-off", name="Ancienne regle", match_value="peinture", position=0,
                       is_active=False, unit="u"),
    ]


# ===========================================================================
# Keywords
# ===========================================================================

class TestNormalizeKeywords:

    @pytest.mark.parametrize("raw,expected", [
        ("  a,, b ,c ", "a, b, c"),
        ("carrelage", "carrelage"),
        (" , ,", ""),
        (None, ""),
    ])
    def test_values(self, raw, expected):
        assert normalize_keywords(raw) == expected


# ===========================================================================
# Matching
# ===========================================================================

class TestFindMatchingRule:

    def test_keyword_in_title(self, rules):
        assert find_matching_rule("Peinture murs chambre", rules).id == "r-peinture"

    def test_inactive_rule_is_skipped(self, rules):
        """r-off has the lowest position but is inactive."""
        assert find_matching_rule("peinture", rules).id == "r-peinture"

    def test_lowest_position_wins(self, rules):
        assert find_matching_rule("Carrelage + enduit de ragreage", rules).id == "r-carrelage"

    def test_accents_and_case_are_ignored(self, rules):
        assert find_matching_rule("FAIENCE salle de bain", rules).id == "r-carrelage"
        assert find_matching_rule("Enduit de lissage", rules).id == "r-peinture"

    @pytest.mark.parametrize("title", [None, "", "   ", "Plomberie"])
    def test_no_match(self, rules, title):
        assert find_matching_rule(title, rules) is None


class TestSuggestLineFields:

    def test_non_null_fields_only(self, rules):
        assert suggest_line_fields("pose carrelage", rules) == {
            "description": "m2", "category_id": "cat-mat", "k_mo": 1.3,
        }

    def test_labour_role_is_suggested(self, rules):
        suggestion = suggest_line_fields("peinture plafond", rules)
        assert suggestion["labor_role_id"] == "role-peintre"
        assert suggestion["k_fo"] == 1.1

    def test_no_match_is_empty(self, rules):
        assert suggest_line_fields("Electricite", rules) == {}


class TestNextRulePosition:

    def test_after_last(self, rules):
        assert next_rule_position(rules) == 3

    def test_requested_position_is_kept(self, rules):
        assert next_rule_position(rules, 10) == 10

    def test_empty(self):
        assert next_rule_position([]) == 1
