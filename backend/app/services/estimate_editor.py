"""
Estimate Editor - in-memory chiffrage tree with optimistic edits.

The editor owns one version, its items, the labour roles and categories.
Every edit recomputes the affected line synchronously, then writes through
the injected EstimateStore. Version totals are written separately by a
debounced autosave: each recompute restarts a cancellable timer and only the
last one fires.

Covers:
  - load + normalisation of draft lines (missing multipliers, stale cents)
  - add section / add line, patch, delete subtree, reorder siblings
  - version settings (margin, discount, tax, rounding) and status changes
  - labour-role rate changes propagated to the lines using the role
  - case-insensitive category match-or-create
  - debounced totals autosave

Non-draft versions are frozen: every mutation raises ReadOnlyError and the
displayed totals come from the stored snapshot.
"""
import asyncio
import copy
import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from app.services.errors import (
    GENERIC_LINES_UPDATE_MESSAGE,
    READ_ONLY_VERSION_MESSAGE,
    ReadOnlyError,
    StoreError,
    ValidationError,
    resolve_action_error,
)
from app.services.estimate_calculations import (
    ROUNDING_MODES,
    EstimateLine,
    EstimateTotals,
    compute_estimate_line_values,
    compute_estimate_totals,
    compute_initial_discount_cents,
    compute_read_only_totals,
    derive_line_fields,
    discount_cents_to_bp,
    stored_discount_cents,
)

logger = logging.getLogger("achats-estimates")

AUTOSAVE_DELAY_SECONDS = 0.4

# Line states
CLEAN = "clean"
DIRTY = "dirty"
PERSISTING = "persisting"
ERROR = "error"

EDITABLE_ITEM_FIELDS = {
    "title", "description", "quantity", "unit_price_ht_cents", "tax_rate_bp",
    "k_fo", "h_mo", "k_mo", "labor_role_id", "category_id",
}

# Stored fields rewritten when a line is recomputed
DERIVED_LINE_FIELDS = (
    "tax_rate_bp", "k_fo", "h_mo", "k_mo", "pu_ht_cents",
    "line_total_ht_cents", "line_tax_cents", "line_total_ttc_cents",
)

LINE_PAYLOAD_FIELDS = (
    "title", "description", "quantity", "unit_price_ht_cents", "tax_rate_bp",
    "k_fo", "h_mo", "k_mo", "pu_ht_cents", "labor_role_id", "category_id",
    "line_total_ht_cents", "line_tax_cents", "line_total_ttc_cents",
)

STATUS_TRANSITIONS = {
    "draft": {"sent", "archived"},
    "sent": {"accepted", "archived"},
    "accepted": {"archived"},
    "archived": set(),
}


class EstimateStore(Protocol):
    """Persistence used by the editor. Failures raise StoreError."""

    async def get_version(self, version_id: str) -> Dict[str, Any]: ...
    async def list_items(self, version_id: str) -> List[Dict[str, Any]]: ...
    async def list_labor_roles(self) -> List[Dict[str, Any]]: ...
    async def list_categories(self) -> List[Dict[str, Any]]: ...
    async def insert_item(self, row: Dict[str, Any]) -> Dict[str, Any]: ...
    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> None: ...
    async def delete_items(self, item_ids: List[str]) -> None: ...
    async def update_version(self, version_id: str, fields: Dict[str, Any]) -> None: ...
    async def update_labor_role(self, role_id: str, fields: Dict[str, Any]) -> Dict[str, Any]: ...
    async def insert_category(self, row: Dict[str, Any]) -> Dict[str, Any]: ...


@dataclass
class EstimateSettings:
    title: str
    date_devis: Any
    validite_jours: Optional[int]
    margin_multiplier: float
    discount_cents: int
    tax_rate_bp: int
    rounding_mode: str
    rounding_step_cents: int


class Debouncer:
    """Runs action once, delay seconds after the last schedule() call."""

    def __init__(self, delay: float, action: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.action = action
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        try:
            await self.action()
        except Exception:
            # nobody awaits the timer task
            logger.exception("Debounced action failed")

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Cancel the pending timer and run the action now."""
        self.cancel()
        await self.action()


class EstimateEditor:

    def __init__(
        self,
        store: EstimateStore,
        version: Dict[str, Any],
        items: List[Dict[str, Any]],
        labor_roles: List[Dict[str, Any]],
        categories: List[Dict[str, Any]],
        autosave_delay: float = AUTOSAVE_DELAY_SECONDS,
    ):
        self.store = store
        self.version = dict(version)
        self.labor_roles = sorted((dict(r) for r in labor_roles), key=lambda r: r.get("position") or 0)
        self.categories = sorted((dict(c) for c in categories), key=lambda c: c.get("position") or 0)
        self.action_error: Optional[str] = None

        raw_items = [dict(item) for item in items]
        if self.is_read_only:
            discount = stored_discount_cents(
                self._line_inputs(raw_items), self.version.get("total_ht_cents"), self.version.get("discount_bp")
            )
            self.items = raw_items
        else:
            discount = compute_initial_discount_cents(
                self._line_inputs(raw_items),
                self.version.get("margin_multiplier"),
                self.version.get("tax_rate_bp"),
                self.version.get("discount_bp"),
            )
            self.items = self._normalize_items(raw_items)

        self.settings = EstimateSettings(
            title=self.version.get("title") or "",
            date_devis=self.version.get("date_devis"),
            validite_jours=self.version.get("validite_jours"),
            margin_multiplier=self.version.get("margin_multiplier"),
            discount_cents=discount,
            tax_rate_bp=self.version.get("tax_rate_bp"),
            rounding_mode=self.version.get("rounding_mode") or "none",
            rounding_step_cents=self.version.get("rounding_step_cents"),
        )
        self.saved_settings = replace(self.settings)
        self.line_states: Dict[str, str] = {item["id"]: CLEAN for item in self.items}
        self._last_totals_key = self._stored_totals_key()
        self._debouncer = Debouncer(autosave_delay, self._save_totals)

    @classmethod
    async def load(
        cls, store: EstimateStore, version_id: str, autosave_delay: float = AUTOSAVE_DELAY_SECONDS
    ) -> "EstimateEditor":
        version, items, roles, categories = await asyncio.gather(
            store.get_version(version_id),
            store.list_items(version_id),
            store.list_labor_roles(),
            store.list_categories(),
        )
        editor = cls(store, version, items, roles, categories, autosave_delay=autosave_delay)
        if editor.is_read_only:
            return editor

        originals = {item["id"]: item for item in items}
        changed = [
            item for item in editor.items
            if item.get("item_type") == "line"
            and item["id"] in originals
            and any(originals[item["id"]].get(f) != item.get(f) for f in DERIVED_LINE_FIELDS)
        ]
        if changed:
            logger.info(
                f"Normalising {len(changed)} stale line(s)", extra={"version_id": version_id}
            )
            if not await editor._write_lines(changed):
                editor.action_error = GENERIC_LINES_UPDATE_MESSAGE
        editor.schedule_totals_save()
        return editor

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def is_read_only(self) -> bool:
        return self.version.get("status") != "draft"

    @property
    def can_send(self) -> bool:
        return self.version.get("status") == "draft"

    @property
    def can_accept(self) -> bool:
        return self.version.get("status") == "sent"

    @property
    def can_archive(self) -> bool:
        return self.version.get("status") != "archived"

    @property
    def rate_by_id(self) -> Dict[str, int]:
        return {role["id"]: role.get("hourly_rate_cents") or 0 for role in self.labor_roles}

    def get_item(self, item_id: str) -> Dict[str, Any]:
        for item in self.items:
            if item["id"] == item_id:
                return item
        raise ValidationError("Element introuvable.")

    def _hourly_rate(self, item: Dict[str, Any]) -> int:
        role_id = item.get("labor_role_id")
        return self.rate_by_id.get(role_id, 0) if role_id else 0

    def _line_inputs(self, items: List[Dict[str, Any]]) -> List[EstimateLine]:
        return [
            EstimateLine.from_row(item, self._hourly_rate(item))
            for item in items
            if item.get("item_type") == "line"
        ]

    def _recompute_line(self, item: Dict[str, Any], margin_multiplier, tax_rate_bp) -> Dict[str, Any]:
        fields = derive_line_fields(item, margin_multiplier, tax_rate_bp, self._hourly_rate(item))
        return {**item, **fields}

    def _normalize_items(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        normalized = []
        for item in items:
            if item.get("item_type") != "line":
                normalized.append(item)
                continue
            tax_rate = self.version.get("tax_rate_bp")
            if tax_rate is None:
                tax_rate = item.get("tax_rate_bp") or 0
            normalized.append(self._recompute_line(item, self.version.get("margin_multiplier"), tax_rate))
        return normalized

    def _ensure_editable(self) -> None:
        if self.is_read_only:
            raise ReadOnlyError(READ_ONLY_VERSION_MESSAGE)

    def next_position(self, parent_id: Optional[str]) -> int:
        siblings = [item.get("position") or 0 for item in self.items if item.get("parent_id") == parent_id]
        return max(siblings, default=0) + 1

    def children_of(self, parent_id: Optional[str]) -> List[Dict[str, Any]]:
        return sorted(
            (item for item in self.items if item.get("parent_id") == parent_id),
            key=lambda item: item.get("position") or 0,
        )

    # ── Totals ───────────────────────────────────────────────────────────────

    def _totals_for(self, settings: EstimateSettings) -> EstimateTotals:
        return compute_estimate_totals(
            self._line_inputs(self.items),
            margin_multiplier=settings.margin_multiplier,
            discount_cents=settings.discount_cents,
            tax_rate_bp=settings.tax_rate_bp,
            rounding_mode=settings.rounding_mode,
            rounding_step_cents=settings.rounding_step_cents,
        )

    @property
    def totals(self) -> EstimateTotals:
        if self.is_read_only:
            return compute_read_only_totals(
                self._line_inputs(self.items),
                self.settings.discount_cents,
                self.version.get("total_ht_cents"),
                self.version.get("total_tax_cents"),
                self.version.get("total_ttc_cents"),
            )
        return self._totals_for(self.settings)

    @property
    def persisted_totals(self) -> EstimateTotals:
        """Totals from the last saved settings; what the autosave writes."""
        return self._totals_for(self.saved_settings)

    def _stored_totals_key(self) -> Optional[str]:
        stored = [self.version.get(k) for k in ("total_ht_cents", "total_tax_cents", "total_ttc_cents")]
        if any(value is None for value in stored):
            return None
        return "-".join(str(value) for value in stored)

    def schedule_totals_save(self) -> None:
        if self.is_read_only:
            return
        self._debouncer.schedule()

    async def flush_totals(self) -> None:
        await self._debouncer.flush()

    async def close(self) -> None:
        self._debouncer.cancel()

    async def _save_totals(self) -> None:
        if self.is_read_only:
            return
        totals = self.persisted_totals
        key = totals.signature
        if key == self._last_totals_key:
            return
        fields = {
            "total_ht_cents": totals.sale_total_cents,
            "total_tax_cents": totals.adjusted_tax_cents,
            "total_ttc_cents": totals.rounded_ttc_cents,
        }
        try:
            await self.store.update_version(self.version["id"], fields)
        except StoreError as e:
            logger.warning(f"Totals autosave failed: {e}", extra={"version_id": self.version["id"]})
            return
        self.version.update(fields)
        self._last_totals_key = key

    # ── Store helpers ────────────────────────────────────────────────────────

    async def _write_lines(self, lines: List[Dict[str, Any]]) -> bool:
        """Concurrent derived-field writes. False when any of them failed."""
        results = await asyncio.gather(
            *(
                self.store.update_item(line["id"], {f: line.get(f) for f in DERIVED_LINE_FIELDS})
                for line in lines
            ),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, StoreError):
                raise failure
        if failures:
            logger.warning(
                f"{len(failures)}/{len(lines)} line update(s) failed: {failures[0]}",
                extra={"version_id": self.version.get("id")},
            )
        return not failures

    def _replace_items(self, updated: List[Dict[str, Any]]) -> None:
        by_id = {item["id"]: item for item in updated}
        self.items = [by_id.get(item["id"], item) for item in self.items]

    @staticmethod
    def _failure(error: StoreError, fallback: str) -> Exception:
        message = resolve_action_error(error.message, fallback)
        if message == READ_ONLY_VERSION_MESSAGE:
            return ReadOnlyError(message)
        return StoreError(message)

    async def reload_items(self) -> None:
        items = await self.store.list_items(self.version["id"])
        raw = [dict(item) for item in items]
        self.items = raw if self.is_read_only else self._normalize_items(raw)
        self.line_states = {item["id"]: CLEAN for item in self.items}

    # ── Item operations ──────────────────────────────────────────────────────

    async def add_section(self, parent_id: Optional[str] = None) -> Dict[str, Any]:
        self._ensure_editable()
        row = {
            "version_id": self.version["id"],
            "parent_id": parent_id,
            "item_type": "section",
            "position": self.next_position(parent_id),
            "title": "Nouveau sous-chapitre" if parent_id else "Nouveau chapitre",
        }
        try:
            inserted = await self.store.insert_item(row)
        except StoreError as e:
            raise self._failure(e, "Impossible de creer le chapitre.")
        self.items.append(dict(inserted))
        self.line_states[inserted["id"]] = CLEAN
        return inserted

    async def add_line(self, parent_id: Optional[str] = None) -> Dict[str, Any]:
        self._ensure_editable()
        tax_rate = self.settings.tax_rate_bp
        values = compute_estimate_line_values(
            EstimateLine(quantity=1, unit_price_ht_cents=0, tax_rate_bp=tax_rate,
                         k_fo=1, h_mo=0, k_mo=1, pu_ht_cents=0, labor_role_hourly_rate_cents=0),
            self.settings.margin_multiplier,
            tax_rate,
        )
        row = {
            "version_id": self.version["id"],
            "parent_id": parent_id,
            "item_type": "line",
            "position": self.next_position(parent_id),
            "title": "Nouvelle ligne",
            "description": None,
            "quantity": 1,
            "unit_price_ht_cents": 0,
            "tax_rate_bp": tax_rate,
            "k_fo": 1,
            "h_mo": 0,
            "k_mo": 1,
            "pu_ht_cents": values.pu_ht_cents,
            "labor_role_id": None,
            "category_id": None,
            "line_total_ht_cents": values.sale_line_cents,
            "line_tax_cents": values.tax_line_cents,
            "line_total_ttc_cents": values.ttc_line_cents,
        }
        try:
            inserted = await self.store.insert_item(row)
        except StoreError as e:
            raise self._failure(e, "Impossible d'ajouter la ligne.")
        self.items.append(dict(inserted))
        self.line_states[inserted["id"]] = CLEAN
        self.schedule_totals_save()
        return inserted

    async def patch_item(self, item_id: str, patch: Dict[str, Any], persist: bool = False) -> Dict[str, Any]:
        """
        Merge patch into the item and recompute it. Without persist the change
        is local only (the row becomes dirty); with persist the row is written
        and a failure restores every item to its state before the call.
        """
        self._ensure_editable()
        unknown = set(patch) - EDITABLE_ITEM_FIELDS
        if unknown:
            raise ValidationError(f"Champs non modifiables: {', '.join(sorted(unknown))}")

        snapshot = copy.deepcopy(self.items)
        current = self.get_item(item_id)
        updated = {**current, **patch}

        if updated.get("item_type") == "line":
            tax_rate = updated.get("tax_rate_bp")
            if tax_rate is None:
                tax_rate = self.settings.tax_rate_bp
            if tax_rate is None:
                tax_rate = current.get("tax_rate_bp") or 0
            margin = self.settings.margin_multiplier
            updated = self._recompute_line(updated, 1 if margin is None else margin, tax_rate)

        self._replace_items([updated])
        self.schedule_totals_save()
        if not persist:
            self.line_states[item_id] = DIRTY
            return updated

        if updated.get("item_type") == "line":
            payload = {field: updated.get(field) for field in LINE_PAYLOAD_FIELDS}
        else:
            payload = {"title": updated.get("title")}

        self.line_states[item_id] = PERSISTING
        try:
            await self.store.update_item(item_id, payload)
        except StoreError as e:
            self.items = snapshot
            self.line_states[item_id] = ERROR
            self.schedule_totals_save()
            raise self._failure(e, "Impossible d'enregistrer la ligne.")
        self.line_states[item_id] = CLEAN
        return updated

    def collect_subtree(self, item_id: str) -> Set[str]:
        ids: Set[str] = set()
        pending = [item_id]
        while pending:
            current = pending.pop()
            if current in ids:
                continue
            ids.add(current)
            pending.extend(item["id"] for item in self.items if item.get("parent_id") == current)
        return ids

    async def delete_item(self, item_id: str) -> Set[str]:
        """Remove an item and its descendants. On failure the tree is reloaded."""
        self._ensure_editable()
        self.get_item(item_id)
        ids_to_remove = self.collect_subtree(item_id)
        self.items = [item for item in self.items if item["id"] not in ids_to_remove]
        for removed in ids_to_remove:
            self.line_states.pop(removed, None)

        try:
            await self.store.delete_items(sorted(ids_to_remove))
        except StoreError as e:
            await self.reload_items()
            raise self._failure(e, "Impossible de supprimer l'element.")
        self.schedule_totals_save()
        return ids_to_remove

    async def reorder(self, parent_id: Optional[str], ordered_ids: List[str]) -> None:
        """
        Renumber the children of parent_id 1..n following ordered_ids, which
        must name every child exactly once.
        """
        self._ensure_editable()
        children = {item["id"] for item in self.items if item.get("parent_id") == parent_id}
        if len(set(ordered_ids)) != len(ordered_ids):
            raise ValidationError("La liste de reordonnancement contient des doublons.")
        foreign = [item_id for item_id in ordered_ids if item_id not in children]
        if foreign:
            raise ValidationError(f"Element {foreign[0]} hors de ce niveau.")
        if len(ordered_ids) != len(children):
            raise ValidationError("La liste de reordonnancement est incomplete.")
        snapshot = copy.deepcopy(self.items)
        index_by_id = {item_id: index for index, item_id in enumerate(ordered_ids)}
        for item in self.items:
            if item.get("parent_id") == parent_id and item["id"] in index_by_id:
                item["position"] = index_by_id[item["id"]] + 1

        siblings = [item for item in self.items if item.get("parent_id") == parent_id]
        results = await asyncio.gather(
            *(self.store.update_item(item["id"], {"position": item["position"]}) for item in siblings),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            self.items = snapshot
            for failure in failures:
                if not isinstance(failure, StoreError):
                    raise failure
            raise StoreError("Impossible de reordonner les lignes.")

    # ── Version settings & status ────────────────────────────────────────────

    def update_settings(self, **patch: Any) -> EstimateSettings:
        """Local edit of the settings form; nothing is written until save_settings()."""
        self._ensure_editable()
        unknown = set(patch) - set(EstimateSettings.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Parametres inconnus: {', '.join(sorted(unknown))}")
        if "rounding_mode" in patch and patch["rounding_mode"] not in ROUNDING_MODES:
            raise ValidationError("Mode d'arrondi invalide.")
        self.settings = replace(self.settings, **patch)
        return self.settings

    async def save_settings(self) -> Dict[str, Any]:
        self._ensure_editable()
        settings = replace(self.settings)
        totals = self._totals_for(settings)
        payload = {
            "title": settings.title.strip() or None,
            "date_devis": settings.date_devis,
            "validite_jours": settings.validite_jours,
            "margin_multiplier": settings.margin_multiplier,
            "discount_bp": discount_cents_to_bp(settings.discount_cents, totals.sale_subtotal_cents),
            "tax_rate_bp": settings.tax_rate_bp,
            "rounding_mode": settings.rounding_mode,
            "rounding_step_cents": settings.rounding_step_cents,
            "total_ht_cents": totals.sale_total_cents,
            "total_tax_cents": totals.adjusted_tax_cents,
            "total_ttc_cents": totals.rounded_ttc_cents,
        }
        try:
            await self.store.update_version(self.version["id"], payload)
        except StoreError as e:
            raise self._failure(e, "Impossible d'enregistrer les parametres.")

        self.saved_settings = settings
        self._last_totals_key = totals.signature

        lines_ok = True
        should_update_lines = (
            settings.tax_rate_bp != self.version.get("tax_rate_bp")
            or settings.margin_multiplier != self.version.get("margin_multiplier")
        )
        if should_update_lines:
            updated_lines = [
                self._recompute_line(item, settings.margin_multiplier, settings.tax_rate_bp)
                for item in self.items
                if item.get("item_type") == "line"
            ]
            self._replace_items(updated_lines)
            lines_ok = await self._write_lines(updated_lines)

        self.version.update(payload)
        logger.info("Estimate settings saved", extra={"version_id": self.version["id"]})
        if not lines_ok:
            raise StoreError(GENERIC_LINES_UPDATE_MESSAGE)
        return payload

    async def change_status(self, next_status: str) -> None:
        current = self.version.get("status")
        if next_status not in STATUS_TRANSITIONS.get(current, set()):
            raise ValidationError(f"Transition de statut invalide: {current} -> {next_status}.")
        try:
            await self.store.update_version(self.version["id"], {"status": next_status})
        except StoreError as e:
            raise self._failure(e, "Impossible de changer le statut.")
        self.version["status"] = next_status
        if self.is_read_only:
            self._debouncer.cancel()
        logger.info(
            f"Estimate status {current} -> {next_status}", extra={"version_id": self.version["id"]}
        )

    # ── Labour roles & categories ────────────────────────────────────────────

    async def update_labor_role(self, role_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Update a role; a new hourly rate is pushed to every line using it."""
        try:
            role = await self.store.update_labor_role(role_id, patch)
        except StoreError as e:
            raise StoreError(e.message)
        self.labor_roles = [
            {**r, **patch} if r["id"] == role_id else r for r in self.labor_roles
        ]
        if "hourly_rate_cents" not in patch:
            return role

        affected = [
            item for item in self.items
            if item.get("item_type") == "line" and item.get("labor_role_id") == role_id
        ]
        if not affected:
            return role

        updated_lines = []
        for item in affected:
            tax_rate = self.settings.tax_rate_bp
            if tax_rate is None:
                tax_rate = item.get("tax_rate_bp") or 0
            updated_lines.append(self._recompute_line(item, self.settings.margin_multiplier, tax_rate))
        self._replace_items(updated_lines)

        if self.is_read_only:
            return role
        self.schedule_totals_save()
        if not await self._write_lines(updated_lines):
            raise StoreError(GENERIC_LINES_UPDATE_MESSAGE)
        return role

    async def ensure_category(self, name: str) -> Optional[Dict[str, Any]]:
        trimmed = (name or "").strip()
        if not trimmed:
            return None
        for category in self.categories:
            if (category.get("name") or "").lower() == trimmed.lower():
                return category

        position = max((c.get("position") or 0 for c in self.categories), default=0) + 1
        try:
            created = await self.store.insert_category({"name": trimmed, "color": None, "position": position})
        except StoreError as e:
            raise StoreError(e.message or "Impossible de creer la categorie.")
        self.categories = sorted([*self.categories, dict(created)], key=lambda c: c.get("position") or 0)
        return created

    # ── Serialisation ────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "settings": asdict(self.settings),
            "items": self.items,
            "totals": asdict(self.totals),
            "line_states": self.line_states,
            "is_read_only": self.is_read_only,
            "can_send": self.can_send,
            "can_accept": self.can_accept,
            "can_archive": self.can_archive,
            "action_error": self.action_error,
        }


def depth_first(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Items in display order: each parent followed by its children, by position."""
    children: Dict[Optional[str], List[Dict[str, Any]]] = {}
    for item in items:
        children.setdefault(item.get("parent_id"), []).append(item)
    for siblings in children.values():
        siblings.sort(key=lambda item: item.get("position") or 0)

    ordered: List[Dict[str, Any]] = []
    seen: Set[str] = set()
    pending = list(reversed(children.get(None, [])))
    while pending:
        item = pending.pop()
        if item["id"] in seen:
            continue
        seen.add(item["id"])
        ordered.append(item)
        pending.extend(reversed(children.get(item["id"], [])))
    return ordered


def clone_item_rows(
    items: List[Dict[str, Any]], version_id: str, new_id: Callable[[], str]
) -> List[Dict[str, Any]]:
    """
    Copy an item tree into another version. Ids are regenerated, parent links
    remapped, and rows come parents-first so they can be inserted in order.
    Items whose parent is not part of the tree are dropped.
    """
    id_map = {item["id"]: new_id() for item in items}
    rows = []
    for item in depth_first(items):
        row = {key: value for key, value in item.items() if key not in ("created_at", "updated_at")}
        row["id"] = id_map[item["id"]]
        row["version_id"] = version_id
        row["parent_id"] = id_map[item["parent_id"]] if item.get("parent_id") else None
        rows.append(row)
    return rows
