"""
conftest.py - Shared pytest fixtures for the Achats & Chiffrage backend test suite.

No database or external service fixtures are defined here.  The estimate
editor is exercised against FakeEstimateStore, an in-memory implementation
of the EstimateStore protocol that can be told to fail on demand.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import itertools
from datetime import date

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# In-memory estimate store
# ---------------------------------------------------------------------------

class FakeEstimateStore:
    """
    Dict-backed EstimateStore.

    ``fail_on`` maps a method name to an error message; the next calls of
    that method raise StoreError(message) without touching the data.
    ``fail_item_ids`` makes update_item fail only for the listed rows.
    Every call is recorded in ``calls`` as (method, args).
    """

    def __init__(self, version, items=(), labor_roles=(), categories=()):
        self.version = dict(version)
        self.items = {item["id"]: dict(item) for item in items}
        self.labor_roles = {role["id"]: dict(role) for role in labor_roles}
        self.categories = {cat["id"]: dict(cat) for cat in categories}
        self.fail_on = {}
        self.fail_item_ids = set()
        self.calls = []
        self._ids = itertools.count(1)

    def _check(self, method, *args):
        from app.services.errors import StoreError
        self.calls.append((method, args))
        if method in self.fail_on:
            raise StoreError(self.fail_on[method])

    def calls_to(self, method):
        return [args for name, args in self.calls if name == method]

    async def get_version(self, version_id):
        self._check("get_version", version_id)
        return dict(self.version)

    async def list_items(self, version_id):
        self._check("list_items", version_id)
        return [dict(item) for item in self.items.values()]

    async def list_labor_roles(self):
        self._check("list_labor_roles")
        return [dict(role) for role in self.labor_roles.values()]

    async def list_categories(self):
        self._check("list_categories")
        return [dict(cat) for cat in self.categories.values()]

    async def insert_item(self, row):
        self._check("insert_item", row)
        created = {"id": f"item-new-{next(self._ids)}", **row}
        self.items[created["id"]] = created
        return dict(created)

    async def update_item(self, item_id, fields):
        from app.services.errors import StoreError
        self._check("update_item", item_id, fields)
        if item_id in self.fail_item_ids:
            raise StoreError("update failed")
        self.items[item_id].update(fields)

    async def delete_items(self, item_ids):
        self._check("delete_items", list(item_ids))
        for item_id in item_ids:
            self.items.pop(item_id, None)

    async def update_version(self, version_id, fields):
        self._check("update_version", version_id, fields)
        self.version.update(fields)

    async def update_labor_role(self, role_id, fields):
        self._check("update_labor_role", role_id, fields)
        self.labor_roles[role_id].update(fields)
        return dict(self.labor_roles[role_id])

    async def insert_category(self, row):
        self._check("insert_category", row)
        created = {"id": f"cat-new-{next(self._ids)}", **row}
        self.categories[created["id"]] = created
        return dict(created)


# ---------------------------------------------------------------------------
# Sample chiffrage data
# ---------------------------------------------------------------------------

@pytest.fixture
def draft_version():
    """
    A draft version with margin x1.2, 20 % VAT, no discount, no rounding and
    no stored totals yet.
    """
    return {
        "id": "v1",
        "project_id": "p1",
        "version_number": 1,
        "status": "draft",
        "title": "Renovation cuisine",
        "date_devis": date(2026, 1, 15),
        "validite_jours": 30,
        "margin_multiplier": 1.2,
        "discount_bp": 0,
        "tax_rate_bp": 2000,
        "rounding_mode": "none",
        "rounding_step_cents": 1,
        "total_ht_cents": None,
        "total_tax_cents": None,
        "total_ttc_cents": None,
    }


@pytest.fixture
def labor_roles():
    """Two roles: Macon at 45,00 €/h and Peintre at 38,00 €/h."""
    return [
        {"id": "role-macon", "name": "Macon", "hourly_rate_cents": 4500, "is_active": True, "position": 1},
        {"id": "role-peintre", "name": "Peintre", "hourly_rate_cents": 3800, "is_active": True, "position": 2},
    ]


@pytest.fixture
def categories():
    return [
        {"id": "cat-mat", "name": "Materiaux", "color": None, "position": 1},
        {"id": "cat-mo", "name": "Main d'oeuvre", "color": None, "position": 2},
    ]


@pytest.fixture
def chiffrage_items():
    """
    One section with two lines and a sub-section holding a third line.

      s1  Gros oeuvre
        l1  Parpaings     qty 10 × 2,50 €, no labour
        s2  Fondations
          l3  Coffrage    qty 2 × 10,00 €, 3 h Macon
        l2  Enduit        qty 4 × 5,00 €, k_fo 1.5

    Stored derived cents are left empty so loading a draft normalises them.
    """
    base = {
        "version_id": "v1", "description": None, "tax_rate_bp": 2000,
        "pu_ht_cents": None, "category_id": None, "labor_role_id": None,
        "line_total_ht_cents": None, "line_tax_cents": None, "line_total_ttc_cents": None,
        "k_fo": None, "h_mo": None, "k_mo": None, "quantity": None, "unit_price_ht_cents": None,
    }
    return [
        {**base, "id": "s1", "parent_id": None, "item_type": "section", "position": 1, "title": "Gros oeuvre"},
        {**base, "id": "l1", "parent_id": "s1", "item_type": "line", "position": 1, "title": "Parpaings",
         "quantity": 10, "unit_price_ht_cents": 250},
        {**base, "id": "s2", "parent_id": "s1", "item_type": "section", "position": 2, "title": "Fondations"},
        {**base, "id": "l3", "parent_id": "s2", "item_type": "line", "position": 1, "title": "Coffrage",
         "quantity": 2, "unit_price_ht_cents": 1000, "h_mo": 3, "labor_role_id": "role-macon"},
        {**base, "id": "l2", "parent_id": "s1", "item_type": "line", "position": 3, "title": "Enduit",
         "quantity": 4, "unit_price_ht_cents": 500, "k_fo": 1.5},
    ]


@pytest.fixture
def make_store(draft_version, chiffrage_items, labor_roles, categories):
    """Factory building a FakeEstimateStore; keyword overrides replace the version fields."""
    def _make(items=None, **version_overrides):
        return FakeEstimateStore(
            {**draft_version, **version_overrides},
            chiffrage_items if items is None else items,
            labor_roles,
            categories,
        )
    return _make
