"""
test_import_safety.py - Import safety and layering checks.

Verifies that:
  1. Every service, model and route module imports without a database
     connection (the engine is created lazily by SQLAlchemy, never connected).
  2. The pricing calculators stay pure: no database, web framework or store
     imports in their namespace.
  3. The editor depends on the EstimateStore protocol only, not on the
     SQLAlchemy implementation.

No database, network, or external services are required.
"""

import importlib

import pytest


_SERVICE_MODULES = [
    "app.services.money",
    "app.services.order_calculations",
    "app.services.estimate_calculations",
    "app.services.estimate_editor",
    "app.services.estimate_store",
    "app.services.estimate_export",
    "app.services.document_engine",
    "app.services.devis_storage",
    "app.services.file_validation",
    "app.services.reference",
    "app.services.suggestion_rules",
    "app.services.errors",
    "app.services.logging_config",
    "app.services.middleware",
]

_MODEL_AND_ROUTE_MODULES = [
    "app.models.orm_models",
    "app.models.schemas",
    "app.api.deps",
    "app.api.auth_routes",
    "app.api.catalog_routes",
    "app.api.purchase_order_routes",
    "app.api.devis_routes",
    "app.api.estimate_routes",
]


class TestModuleImports:
    """Each module must import on its own, in any order."""

    @pytest.mark.parametrize("module_path", _SERVICE_MODULES)
    def test_service_module_imports(self, module_path):
        mod = importlib.import_module(module_path)
        assert mod is not None, f"Module {module_path} is None after import"

    @pytest.mark.parametrize("module_path", _MODEL_AND_ROUTE_MODULES)
    def test_model_and_route_modules_import(self, module_path):
        """Model/route modules must import without DB connection."""
        mod = importlib.import_module(module_path)
        assert mod is not None

    def test_every_router_is_mounted(self):
        from app.main import app
        paths = {route.path for route in app.routes}
        for expected in (
            "/health",
            "/api/auth/login",
            "/api/catalog/suppliers",
            "/api/purchase-orders",
            "/api/purchase-orders/{order_id}/devis",
            "/api/devis/download",
            "/api/estimates/projects",
        ):
            assert expected in paths, f"{expected} is not routed"


class TestPureCalculators:
    """The calculators run on every keystroke; they must not reach for I/O."""

    @pytest.mark.parametrize("module_path", [
        "app.services.money",
        "app.services.order_calculations",
        "app.services.estimate_calculations",
        "app.services.suggestion_rules",
    ])
    def test_no_io_layers_in_namespace(self, module_path):
        mod = importlib.import_module(module_path)
        for name in ("sqlalchemy", "fastapi", "AsyncSession", "get_db", "estimate_store"):
            assert name not in dir(mod), f"{module_path} imports {name}"

    def test_editor_does_not_import_sqlalchemy_store(self):
        import app.services.estimate_editor as editor
        assert "SqlAlchemyEstimateStore" not in dir(editor)
        assert "AsyncSession" not in dir(editor)
