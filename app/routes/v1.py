from __future__ import annotations

from functools import lru_cache
import logging
from typing import Any, AsyncIterator, Optional, TypeVar

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from pydantic import BaseModel, ValidationError

from app.catalog import default_catalog
from app.models import AccountProfile, Location, Routine, SavedProduct, UserSkinProfile
from app.services.accounts import ACCOUNT_PROFILES, ROUTINE_COLLECTION
from app.services.guest_profile import EphemeralProfileStore
from app.services.ranking import (
    CATEGORY_LIMIT,
    DEFAULT_LIMIT,
    DEFAULT_MIN_SCORE,
    CatalogRankingEngine,
    profile_from_ephemeral,
)
from app.services.reconciliation import ReconciliationEngine
from app.store.slot_store import PERSISTENT_SLOT_STORE


router = APIRouter()

logger = logging.getLogger("glow-core.v1")

M = TypeVar("M", bound=BaseModel)

_SOURCES = {"marketplace", "discovery"}
_MAX_LIMIT = 50


@lru_cache(maxsize=1)
def _ranking_engine() -> CatalogRankingEngine:
    return CatalogRankingEngine(default_catalog())


def _require_guest_id(x_guest_id: Optional[str]) -> str:
    guest_id = (x_guest_id or "").strip()
    if not guest_id:
        raise HTTPException(status_code=400, detail="Missing X-Guest-ID")
    if len(guest_id) > 200:
        raise HTTPException(status_code=400, detail="X-Guest-ID too long")
    return guest_id


def _require_user_id(x_user_id: Optional[str]) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-ID")
    return user_id


def _validate(model: type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "INVALID_BODY", "issues": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


def _int_field(body: dict[str, Any], key: str, default: int, *, minimum: int = 0, maximum: int = _MAX_LIMIT) -> int:
    raw = body.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {key}") from None
    return max(minimum, min(maximum, value))


def _str_field(body: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def guest_store(x_guest_id: Optional[str] = Header(default=None, alias="X-Guest-ID")) -> AsyncIterator[EphemeralProfileStore]:
    store = EphemeralProfileStore(PERSISTENT_SLOT_STORE, _require_guest_id(x_guest_id))
    try:
        yield store
    finally:
        await store.dispose()


async def optional_guest_store(
    x_guest_id: Optional[str] = Header(default=None, alias="X-Guest-ID"),
) -> AsyncIterator[Optional[EphemeralProfileStore]]:
    if not (x_guest_id or "").strip():
        yield None
        return
    store = EphemeralProfileStore(PERSISTENT_SLOT_STORE, _require_guest_id(x_guest_id))
    try:
        yield store
    finally:
        await store.dispose()


async def _resolve_profile(raw: Any, guest: Optional[EphemeralProfileStore]) -> Optional[UserSkinProfile]:
    if isinstance(raw, dict):
        return _validate(UserSkinProfile, raw)
    if guest is not None:
        return profile_from_ephemeral(await guest.get_profile())
    return None


# ----------------------------------------------------------------------
# Guest session
# ----------------------------------------------------------------------


@router.post("/guest/session")
async def guest_session_start(guest: EphemeralProfileStore = Depends(guest_store)):
    await guest.init()
    profile = await guest.get_profile()
    return {"ok": True, "guest_id": guest.guest_id, "profile": profile.to_json_dict()}


@router.get("/guest/profile")
async def guest_profile(guest: EphemeralProfileStore = Depends(guest_store)):
    profile = await guest.get_profile()
    return {"guest_id": guest.guest_id, "profile": profile.to_json_dict()}


@router.delete("/guest/profile")
async def guest_profile_clear(guest: EphemeralProfileStore = Depends(guest_store)):
    cleared = await guest.clear_ephemeral_data()
    return {"ok": True, "cleared": cleared}


@router.post("/guest/profile/patch")
async def guest_profile_patch(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    if "skinType" in body or "skin_type" in body:
        raw = body.get("skinType", body.get("skin_type"))
        if raw is not None and not isinstance(raw, str):
            raise HTTPException(status_code=400, detail="Invalid skinType")
        await guest.set_skin_type(raw)

    if "concerns" in body:
        concerns = body.get("concerns") or []
        if not isinstance(concerns, list):
            raise HTTPException(status_code=400, detail="Invalid concerns")
        await guest.set_concerns([str(c) for c in concerns])

    preferences = body.get("preferences")
    if preferences is not None:
        if not isinstance(preferences, dict):
            raise HTTPException(status_code=400, detail="Invalid preferences")
        await guest.update_preferences(preferences)

    survey = body.get("surveyAnswers", body.get("survey_answers"))
    if survey is not None:
        if not isinstance(survey, dict):
            raise HTTPException(status_code=400, detail="Invalid surveyAnswers")
        await guest.set_survey_answers(survey)

    if body.get("location") is not None:
        await guest.set_location(_validate(Location, body.get("location")))

    profile = await guest.get_profile()
    return {"ok": True, "profile": profile.to_json_dict()}


@router.post("/guest/interactions")
async def guest_interaction(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    kind = _str_field(body, "type", "kind")
    target = _str_field(body, "target")
    if not kind or not target:
        raise HTTPException(status_code=400, detail="Missing type or target")
    try:
        await guest.record_interaction(kind, target, body.get("data"))  # type: ignore[arg-type]
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid interaction type: {kind}") from exc
    return {"ok": True}


@router.post("/guest/navigate")
async def guest_navigate(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    page = _str_field(body, "page", "path")
    if not page:
        raise HTTPException(status_code=400, detail="Missing page")
    await guest.navigate_to(page)
    return {"ok": True}


@router.post("/guest/actions")
async def guest_complete_action(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    action = _str_field(body, "action")
    if not action:
        raise HTTPException(status_code=400, detail="Missing action")
    completed = await guest.complete_action(action)
    return {"ok": True, "completed": completed}


@router.post("/guest/search")
async def guest_search(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    query = _str_field(body, "query", "q")
    if not query:
        raise HTTPException(status_code=400, detail="Missing query")
    await guest.add_search(query)
    return {"ok": True}


@router.post("/guest/products/viewed")
async def guest_product_viewed(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    product_id = body.get("productId", body.get("product_id"))
    if product_id is None or str(product_id).strip() == "":
        raise HTTPException(status_code=400, detail="Missing productId")
    await guest.view_product(product_id)
    return {"ok": True}


@router.post("/guest/products/saved")
async def guest_product_save(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    product = _validate(SavedProduct, body.get("product") if isinstance(body.get("product"), dict) else body)
    saved = await guest.save_product(product)
    return {"ok": True, "saved": saved}


@router.delete("/guest/products/saved/{product_id}")
async def guest_product_unsave(product_id: int, guest: EphemeralProfileStore = Depends(guest_store)):
    removed = await guest.remove_saved_product(product_id)
    return {"ok": True, "removed": removed}


@router.post("/guest/routines")
async def guest_routine_save(body: dict[str, Any], guest: EphemeralProfileStore = Depends(guest_store)):
    routine = _validate(Routine, body.get("routine") if isinstance(body.get("routine"), dict) else body)
    stored = await guest.save_routine(routine)
    return {"ok": True, "routine": stored.to_json_dict()}


@router.get("/guest/behavior")
async def guest_behavior(guest: EphemeralProfileStore = Depends(guest_store)):
    patterns = await guest.derive_behavior_patterns()
    return patterns.to_json_dict()


@router.get("/guest/context")
async def guest_context(guest: EphemeralProfileStore = Depends(guest_store)):
    return await guest.get_personalization_context()


# ----------------------------------------------------------------------
# Account reconciliation
# ----------------------------------------------------------------------


@router.post("/account/merge")
async def account_merge(
    body: Optional[dict[str, Any]] = Body(default=None),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    guest: EphemeralProfileStore = Depends(guest_store),
):
    user_id = _require_user_id(x_user_id)
    payload = body or {}
    raw_existing = payload.get("existingProfile", payload.get("existing_profile"))
    existing = _validate(AccountProfile, raw_existing) if raw_existing is not None else None

    engine = ReconciliationEngine(guest=guest, accounts=ACCOUNT_PROFILES, routines=ROUTINE_COLLECTION)
    result = await engine.merge_guest_data_to_account(user_id, existing)
    return result.to_json_dict()


# ----------------------------------------------------------------------
# Catalog ranking
# ----------------------------------------------------------------------


@router.post("/products/retrieve")
async def products_retrieve(
    body: Optional[dict[str, Any]] = Body(default=None),
    guest: Optional[EphemeralProfileStore] = Depends(optional_guest_store),
):
    payload = body or {}
    profile = await _resolve_profile(payload.get("profile"), guest) or UserSkinProfile()
    source = _str_field(payload, "source")
    if source is not None and source not in _SOURCES:
        raise HTTPException(status_code=400, detail="Invalid source")

    result = _ranking_engine().retrieve_products(
        profile,
        category=_str_field(payload, "category"),
        limit=_int_field(payload, "limit", DEFAULT_LIMIT),
        min_score=_int_field(payload, "minScore", DEFAULT_MIN_SCORE, maximum=1000),
        source=source,  # type: ignore[arg-type]
    )
    return result.to_json_dict()


@router.get("/products/category/{category}")
async def products_by_category(
    category: str,
    limit: int = Query(default=CATEGORY_LIMIT, ge=0, le=_MAX_LIMIT),
    guest: Optional[EphemeralProfileStore] = Depends(optional_guest_store),
):
    profile = await _resolve_profile(None, guest) or UserSkinProfile()
    products = _ranking_engine().retrieve_by_category(category, profile, limit)
    return {"category": category, "products": [p.to_json_dict() for p in products]}


@router.post("/products/routine")
async def products_routine(
    body: Optional[dict[str, Any]] = Body(default=None),
    guest: Optional[EphemeralProfileStore] = Depends(optional_guest_store),
):
    profile = await _resolve_profile((body or {}).get("profile"), guest) or UserSkinProfile()
    routine = _ranking_engine().retrieve_routine_products(profile)
    return {"routine": {slot: [p.to_json_dict() for p in products] for slot, products in routine.items()}}


@router.post("/products/ingredient")
async def products_by_ingredient(
    body: dict[str, Any],
    guest: Optional[EphemeralProfileStore] = Depends(optional_guest_store),
):
    ingredient = _str_field(body, "ingredient")
    if not ingredient:
        raise HTTPException(status_code=400, detail="Missing ingredient")
    profile = await _resolve_profile(body.get("profile"), guest)
    products = _ranking_engine().search_by_ingredient(ingredient, profile, _int_field(body, "limit", DEFAULT_LIMIT))
    logger.info("ingredient_search ingredient=%s profile=%s results=%d", ingredient, profile is not None, len(products))
    return {"ingredient": ingredient, "products": [p.to_json_dict() for p in products]}
