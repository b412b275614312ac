"""
Estimate (chiffrage) routes.

Covers:
  - projects: create (with version 1 and default categories), list
  - versions: editor snapshot, settings, status, duplication, XLSX / CSV export
  - items: add, patch, delete subtree, reorder siblings
  - labour roles, categories, suggestion rules (+ title-based suggestion)

Version and item mutations go through EstimateEditor, loaded per request on
top of SqlAlchemyEstimateStore; the pending totals autosave is flushed before
the response so the stored totals always match what is returned.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.db import get_db
from app.models.orm_models import (
    EstimateCategory, EstimateItem, EstimateProject, EstimateSuggestionRule, EstimateVersion,
    LaborRole, User, gen_uuid, row_to_dict,
)
from app.models.schemas import (
    CategoryEnsure, ItemCreate, ItemPatch, ItemReorder, LaborRoleCreate, LaborRoleUpdate,
    ProjectCreate, SuggestionRuleIn, VersionSettingsUpdate, VersionStatusUpdate,
)
from app.services.errors import NotFoundError
from app.services.estimate_editor import EstimateEditor, clone_item_rows, depth_first
from app.services.estimate_export import (
    build_export_filename, build_line_rows, build_recap_row, write_estimate_workbook, write_lines_csv,
)
from app.services.estimate_store import SqlAlchemyEstimateStore
from app.services.suggestion_rules import (
    SuggestionRule, next_rule_position, normalize_keywords, suggest_line_fields,
)

router = APIRouter(prefix="/api/estimates", tags=["Estimates"])
logger = logging.getLogger("achats-estimates")

DEFAULT_CATEGORIES = (("Materiaux", 1), ("Main d'oeuvre", 2), ("Sous-traitance", 3))

# Version columns copied verbatim when a version is duplicated
_COPIED_VERSION_FIELDS = (
    "title", "date_devis", "validite_jours", "margin_multiplier", "currency", "discount_bp",
    "tax_rate_bp", "rounding_mode", "rounding_step_cents",
    "total_ht_cents", "total_tax_cents", "total_ttc_cents",
)


@asynccontextmanager
async def open_editor(db: AsyncSession, version_id: str, user: User) -> AsyncIterator[EstimateEditor]:
    editor = await EstimateEditor.load(SqlAlchemyEstimateStore(db, user.id), version_id)
    try:
        yield editor
        await editor.flush_totals()
    finally:
        await editor.close()


async def _load_rules(db: AsyncSession) -> List[SuggestionRule]:
    result = await db.execute(
        select(EstimateSuggestionRule).order_by(EstimateSuggestionRule.position)
    )
    return [SuggestionRule.from_row(rule) for rule in result.scalars().all()]


# ── PROJECTS ──────────────────────────────────────────────────────────────────

@router.get("/projects")
async def list_projects(
    include_archived: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(EstimateProject).order_by(EstimateProject.created_at.desc())
    if not include_archived:
        stmt = stmt.where(EstimateProject.is_archived.is_(False))
    projects = (await db.execute(stmt)).scalars().all()

    versions = (await db.execute(
        select(EstimateVersion).order_by(EstimateVersion.version_number)
    )).scalars().all()
    by_project = {}
    for version in versions:
        by_project.setdefault(version.project_id, []).append({
            "id": version.id,
            "version_number": version.version_number,
            "status": version.status,
            "title": version.title,
            "total_ttc_cents": version.total_ttc_cents,
        })
    return [{**row_to_dict(p), "versions": by_project.get(p.id, [])} for p in projects]


@router.post("/projects", status_code=201)
async def create_project(
    req: ProjectCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Le nom du projet est obligatoire.")

    project = EstimateProject(
        user_id=user.id,
        name=name,
        reference=(req.reference or "").strip() or None,
        client_name=(req.client_name or "").strip() or None,
        notes=(req.notes or "").strip() or None,
        is_archived=False,
    )
    db.add(project)
    await db.flush()

    version = EstimateVersion(
        project_id=project.id,
        version_number=1,
        status="draft",
        title=(req.title or "").strip() or None,
        date_devis=req.date_devis,
        validite_jours=req.validite_jours,
        margin_multiplier=req.margin_multiplier,
        discount_bp=0,
        tax_rate_bp=req.tax_rate_bp,
        rounding_mode="none",
        rounding_step_cents=1,
    )
    db.add(version)

    existing = {
        existing_name.lower()
        for existing_name in (await db.execute(select(EstimateCategory.name))).scalars().all()
    }
    for category_name, position in DEFAULT_CATEGORIES:
        if category_name.lower() not in existing:
            db.add(EstimateCategory(user_id=user.id, name=category_name, position=position, color=None))
    await db.flush()

    logger.info(f"Estimate project created: {project.name}", extra={"version_id": version.id})
    return {"project_id": project.id, "version_id": version.id}


@router.get("/projects/{project_id}/versions")
async def list_versions(
    project_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EstimateVersion)
        .where(EstimateVersion.project_id == project_id)
        .order_by(EstimateVersion.version_number)
    )
    return [row_to_dict(v) for v in result.scalars().all()]


# ── VERSIONS ──────────────────────────────────────────────────────────────────

@router.get("/versions/{version_id}")
async def get_version(
    version_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        snapshot = editor.snapshot()
    snapshot["items"] = depth_first(snapshot["items"])
    return snapshot


@router.patch("/versions/{version_id}/settings")
async def update_version_settings(
    version_id: str,
    req: VersionSettingsUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        editor.update_settings(**req.model_dump(exclude_unset=True))
        await editor.save_settings()
        return editor.snapshot()


@router.patch("/versions/{version_id}/status")
async def update_version_status(
    version_id: str,
    req: VersionStatusUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        await editor.change_status(req.status)
        return editor.snapshot()


@router.post("/versions/{version_id}/duplicate", status_code=201)
async def duplicate_version(
    version_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Copy a version and its whole item tree as the next draft of the project."""
    source = await db.get(EstimateVersion, version_id)
    if not source:
        raise NotFoundError("Version introuvable.")

    last_number = (await db.execute(
        select(func.max(EstimateVersion.version_number)).where(EstimateVersion.project_id == source.project_id)
    )).scalar() or 0
    duplicate = EstimateVersion(
        project_id=source.project_id,
        version_number=last_number + 1,
        status="draft",
        **{field: getattr(source, field) for field in _COPIED_VERSION_FIELDS},
    )
    db.add(duplicate)
    await db.flush()

    items = (await db.execute(
        select(EstimateItem).where(EstimateItem.version_id == version_id)
    )).scalars().all()
    rows = clone_item_rows([row_to_dict(item) for item in items], duplicate.id, gen_uuid)
    db.add_all(EstimateItem(**row) for row in rows)
    await db.flush()

    logger.info(
        f"Version duplicated as V{duplicate.version_number} ({len(rows)} items)", extra={"version_id": duplicate.id}
    )
    return {"version_id": duplicate.id, "version_number": duplicate.version_number}


async def _export_context(db: AsyncSession, version_id: str, user: User):
    async with open_editor(db, version_id, user) as editor:
        version = editor.version
        project = await db.get(EstimateProject, version["project_id"])
        project_name = project.name if project else ""
        recap = build_recap_row(project_name, version, editor.settings.discount_cents, editor.totals)
        lines = build_line_rows(
            depth_first(editor.items),
            {c["id"]: c["name"] for c in editor.categories},
            {r["id"]: r["name"] for r in editor.labor_roles},
        )
    return build_export_filename(project_name, version.get("version_number")), recap, lines


@router.get("/versions/{version_id}/export.xlsx")
async def export_version_xlsx(
    version_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filename, recap, lines = await _export_context(db, version_id, user)
    path = write_estimate_workbook(filename, recap, lines)
    return FileResponse(
        path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"{filename}.xlsx",
    )


@router.get("/versions/{version_id}/export.csv")
async def export_version_csv(
    version_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filename, _, lines = await _export_context(db, version_id, user)
    path = write_lines_csv(filename, lines)
    return FileResponse(path, media_type="text/csv", filename=f"{filename}.csv")


# ── ITEMS ─────────────────────────────────────────────────────────────────────

@router.post("/versions/{version_id}/items", status_code=201)
async def add_item(
    version_id: str,
    req: ItemCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """New lines titled on creation are prefilled by the first matching suggestion rule."""
    async with open_editor(db, version_id, user) as editor:
        if req.parent_id:
            editor.get_item(req.parent_id)
        if req.item_type == "section":
            item = await editor.add_section(req.parent_id)
        else:
            item = await editor.add_line(req.parent_id)

        patch = {}
        if req.title and req.title.strip():
            patch["title"] = req.title.strip()
            if req.item_type == "line":
                patch.update(suggest_line_fields(patch["title"], await _load_rules(db)))
        if patch:
            item = await editor.patch_item(item["id"], patch, persist=True)
        return {"item": item, "totals": editor.snapshot()["totals"]}


@router.patch("/versions/{version_id}/items/{item_id}")
async def patch_item(
    version_id: str,
    item_id: str,
    req: ItemPatch,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        patch = req.model_dump(exclude_unset=True)
        category_name = patch.pop("category_name", None)
        if category_name is not None:
            category = await editor.ensure_category(category_name)
            patch["category_id"] = category["id"] if category else None
        item = await editor.patch_item(item_id, patch, persist=True)
        return {"item": item, "totals": editor.snapshot()["totals"]}


@router.delete("/versions/{version_id}/items/{item_id}")
async def delete_item(
    version_id: str,
    item_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        removed = await editor.delete_item(item_id)
        return {"deleted_ids": sorted(removed), "totals": editor.snapshot()["totals"]}


@router.post("/versions/{version_id}/items/reorder")
async def reorder_items(
    version_id: str,
    req: ItemReorder,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    async with open_editor(db, version_id, user) as editor:
        await editor.reorder(req.parent_id, req.ordered_ids)
        return {"items": [row for row in editor.children_of(req.parent_id)]}


# ── LABOUR ROLES ──────────────────────────────────────────────────────────────

@router.get("/labor-roles")
async def list_labor_roles(
    active_only: bool = Query(False, description="Hide inactive roles (new-assignment pickers)"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(LaborRole).order_by(LaborRole.position, LaborRole.name)
    if active_only:
        stmt = stmt.where(LaborRole.is_active.is_(True))
    result = await db.execute(stmt)
    return [row_to_dict(r) for r in result.scalars().all()]


@router.post("/labor-roles", status_code=201)
async def create_labor_role(
    req: LaborRoleCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Le nom du role est obligatoire.")
    if req.position:
        position = req.position
    else:
        position = ((await db.execute(select(func.max(LaborRole.position)))).scalar() or 0) + 1
    role = LaborRole(
        user_id=user.id,
        name=name,
        hourly_rate_cents=req.hourly_rate_cents,
        is_active=req.is_active,
        position=position,
    )
    db.add(role)
    await db.flush()
    await db.refresh(role)
    return row_to_dict(role)


@router.patch("/labor-roles/{role_id}")
async def update_labor_role(
    role_id: str,
    req: LaborRoleUpdate,
    version_id: Optional[str] = Query(None, description="Draft version whose lines follow the new rate"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Other draft versions pick the new rate up when they are next loaded: the
    editor recomputes stale lines on load.
    """
    patch = req.model_dump(exclude_unset=True)
    if "name" in patch:
        patch["name"] = (patch["name"] or "").strip()
        if not patch["name"]:
            raise HTTPException(status_code=400, detail="Le nom du role est obligatoire.")
    if not await db.get(LaborRole, role_id):
        raise NotFoundError("Role introuvable.")

    if version_id:
        async with open_editor(db, version_id, user) as editor:
            role = await editor.update_labor_role(role_id, patch)
            return {"role": role, "totals": editor.snapshot()["totals"]}

    role = await SqlAlchemyEstimateStore(db, user.id).update_labor_role(role_id, patch)
    return {"role": role}


@router.delete("/labor-roles/{role_id}")
async def delete_labor_role(
    role_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Roles still assigned to estimate lines are deactivated instead."""
    role = await db.get(LaborRole, role_id)
    if not role:
        raise NotFoundError("Role introuvable.")
    in_use = (await db.execute(
        select(func.count()).select_from(EstimateItem).where(EstimateItem.labor_role_id == role_id)
    )).scalar() or 0
    if in_use:
        role.is_active = False
        await db.flush()
        logger.info(f"Labor role deactivated ({in_use} lines use it): {role.name}")
        return {"status": "deactivated", "id": role_id}
    await db.delete(role)
    return {"status": "deleted", "id": role_id}


# ── CATEGORIES ────────────────────────────────────────────────────────────────

@router.get("/categories")
async def list_categories(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EstimateCategory).order_by(EstimateCategory.position, EstimateCategory.name)
    )
    return [row_to_dict(c) for c in result.scalars().all()]


@router.post("/versions/{version_id}/categories")
async def ensure_category(
    version_id: str,
    req: CategoryEnsure,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Case-insensitive match on name, created on first use."""
    async with open_editor(db, version_id, user) as editor:
        category = await editor.ensure_category(req.name)
    if category is None:
        raise HTTPException(status_code=400, detail="Le nom de la categorie est obligatoire.")
    return category


# ── SUGGESTION RULES ──────────────────────────────────────────────────────────

def _rule_values(req: SuggestionRuleIn) -> dict:
    match_value = normalize_keywords(req.match_value)
    if not match_value:
        raise HTTPException(status_code=400, detail="Au moins un mot-cle est requis.")
    return {
        "name": req.name.strip(),
        "match_type": "keyword",
        "match_value": match_value,
        "unit": (req.unit or "").strip() or None,
        "category_id": req.category_id or None,
        "k_fo": req.k_fo,
        "k_mo": req.k_mo,
        "labor_role_id": req.labor_role_id or None,
        "is_active": req.is_active,
    }


@router.get("/suggestion-rules")
async def list_suggestion_rules(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(EstimateSuggestionRule).order_by(EstimateSuggestionRule.position))
    return [row_to_dict(r) for r in result.scalars().all()]


@router.post("/suggestion-rules", status_code=201)
async def create_suggestion_rule(
    req: SuggestionRuleIn,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    values = _rule_values(req)
    rule = EstimateSuggestionRule(
        user_id=user.id,
        position=next_rule_position(await _load_rules(db), req.position),
        **values,
    )
    db.add(rule)
    await db.flush()
    await db.refresh(rule)
    return row_to_dict(rule)


@router.put("/suggestion-rules/{rule_id}")
async def update_suggestion_rule(
    rule_id: str,
    req: SuggestionRuleIn,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rule = await db.get(EstimateSuggestionRule, rule_id)
    if not rule:
        raise NotFoundError("Regle introuvable.")
    for key, value in _rule_values(req).items():
        setattr(rule, key, value)
    if req.position:
        rule.position = req.position
    await db.flush()
    return row_to_dict(rule)


@router.delete("/suggestion-rules/{rule_id}")
async def delete_suggestion_rule(
    rule_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rule = await db.get(EstimateSuggestionRule, rule_id)
    if not rule:
        raise NotFoundError("Regle introuvable.")
    await db.delete(rule)
    return {"status": "deleted"}


@router.get("/suggest")
async def suggest_for_title(
    title: str = Query("", description="Line title to match against the rules"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"title": title, "suggestion": suggest_line_fields(title, await _load_rules(db))}
