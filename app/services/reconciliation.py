from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Optional

from app.models import AccountProfile, EphemeralProfile, MergeResult, Routine
from app.services.accounts import AccountProfileService, RoutineCollectionService
from app.services.guest_profile import EphemeralProfileStore
from app.store.slot_store import env_float


logger = logging.getLogger("glow-core.reconcile")

ROUTINES_MERGE_TIMEOUT_S = env_float("ROUTINES_MERGE_TIMEOUT_S", 5.0)

SEARCH_HISTORY_CAP = 20
VIEWED_PRODUCTS_CAP = 50

NO_GUEST_DATA = "all (no guest data)"


def _dedupe(values: list[Any]) -> list[Any]:
    seen: set[Any] = set()
    out: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _union_saved_products(existing: list[Any], incoming: list[dict[str, Any]]) -> list[Any]:
    existing_ids = {p.get("id") for p in existing if isinstance(p, dict)}
    merged = list(existing)
    for product in incoming:
        if product.get("id") in existing_ids:
            continue
        existing_ids.add(product.get("id"))
        merged.append(product)
    return merged


def _routine_row(user_id: str, routine: Routine) -> dict[str, Any]:
    return {
        "id": routine.id,
        "user_id": user_id,
        "name": routine.name,
        "description": routine.description,
        "time_of_day": routine.time_of_day,
        "steps": routine.steps,
        "step_count": len(routine.steps),
        "thumbnail_url": routine.thumbnail,
        "tags": [],
        "frequency": None,
        "is_active": True,
        "is_template": False,
        "created_at": routine.created_at or None,
        "updated_at": routine.updated_at or None,
    }


class ReconciliationEngine:
    """Folds a guest session into an account profile once per login.

    Field policies (fill-if-empty, set union, id-keyed union, prepend with
    de-duplication) are safe to re-run, so a failed merge can simply be
    attempted again on the next login.
    """

    def __init__(
        self,
        *,
        guest: EphemeralProfileStore,
        accounts: AccountProfileService,
        routines: RoutineCollectionService,
        routines_timeout_s: float = ROUTINES_MERGE_TIMEOUT_S,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._guest = guest
        self._accounts = accounts
        self._routines = routines
        self._routines_timeout_s = routines_timeout_s
        self._clock = clock

    async def merge_guest_data_to_account(
        self,
        user_id: str,
        existing_profile: Optional[AccountProfile] = None,
    ) -> MergeResult:
        result = MergeResult()
        logger.info("guest_merge_start user_id=%s guest_id=%s", user_id, self._guest.guest_id)

        guest = await self._guest.get_profile()
        if not guest.has_mergeable_data():
            logger.info("guest_merge_noop user_id=%s reason=no_guest_data", user_id)
            result.success = True
            result.skipped_fields.append(NO_GUEST_DATA)
            return result

        if existing_profile is None:
            try:
                existing_profile = await self._accounts.read(user_id) or AccountProfile(id=user_id)
            except Exception as exc:
                logger.warning("guest_merge_profile_read_failed user_id=%s err=%s", user_id, exc)
                result.errors.append(f"profile read: {exc}")
                return result

        updates: dict[str, Any] = {}
        existing_prefs = dict(existing_profile.preferences)
        new_prefs = dict(existing_prefs)
        prefs_changed = False

        if guest.skin_type:
            if existing_profile.skin_type:
                result.skipped_fields.append("skin_type (server has value)")
            else:
                updates["skin_type"] = guest.skin_type
                result.merged_fields.append("skin_type")

        if guest.concerns:
            merged_concerns = _dedupe([*existing_profile.concerns, *guest.concerns])
            if len(merged_concerns) > len(_dedupe(existing_profile.concerns)):
                updates["concerns"] = merged_concerns
                result.merged_fields.append("concerns")
            else:
                result.skipped_fields.append("concerns (no new values)")

        if guest.saved_products:
            existing_saved = existing_prefs.get("savedProducts") or []
            merged_saved = _union_saved_products(existing_saved, [p.to_json_dict() for p in guest.saved_products])
            if len(merged_saved) > len(existing_saved):
                new_prefs["savedProducts"] = merged_saved
                prefs_changed = True
                result.merged_fields.append("savedProducts")
            else:
                result.skipped_fields.append("savedProducts (no new values)")

        if guest.routines:
            await self._merge_routines(user_id, guest, result)

        for field, cap in (("searchHistory", SEARCH_HISTORY_CAP), ("viewedProducts", VIEWED_PRODUCTS_CAP)):
            incoming = guest.search_history if field == "searchHistory" else guest.viewed_products
            if not incoming:
                continue
            existing_list = list(existing_prefs.get(field) or [])
            merged_list = _dedupe([*incoming, *existing_list])[:cap]
            if merged_list == existing_list:
                result.skipped_fields.append(f"{field} (no new values)")
                continue
            new_prefs[field] = merged_list
            prefs_changed = True
            result.merged_fields.append(field)

        if guest.survey_answers:
            if existing_prefs.get("surveyAnswers"):
                result.skipped_fields.append("surveyAnswers (server has value)")
            else:
                new_prefs["surveyAnswers"] = guest.survey_answers
                prefs_changed = True
                result.merged_fields.append("surveyAnswers")

        if guest.location is not None:
            if existing_prefs.get("location"):
                result.skipped_fields.append("location (server has value)")
            else:
                new_prefs["location"] = guest.location.to_json_dict()
                prefs_changed = True
                result.merged_fields.append("location")

        if prefs_changed:
            updates["preferences"] = new_prefs

        if not updates:
            logger.info("guest_merge_no_updates user_id=%s", user_id)
            result.success = True
            return result

        updates["updated_at"] = self._clock().isoformat()
        logger.info("guest_merge_apply user_id=%s fields=%s", user_id, sorted(updates))
        try:
            await self._accounts.write(user_id, updates)
        except Exception as exc:
            logger.warning("guest_merge_profile_write_failed user_id=%s err=%s", user_id, exc)
            result.errors.append(str(exc) or exc.__class__.__name__)
            return result

        await self._guest.clear_ephemeral_data()
        result.success = True
        logger.info(
            "guest_merge_done user_id=%s merged=%s skipped=%s errors=%s",
            user_id,
            result.merged_fields,
            result.skipped_fields,
            len(result.errors),
        )
        return result

    async def _merge_routines(self, user_id: str, guest: EphemeralProfile, result: MergeResult) -> None:
        try:
            inserted = await asyncio.wait_for(
                self._insert_unseen_routines(user_id, guest.routines),
                timeout=self._routines_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("guest_merge_routines_timeout user_id=%s timeout_s=%s", user_id, self._routines_timeout_s)
            result.errors.append(f"routines: timed out after {self._routines_timeout_s:g}s")
            return
        except Exception as exc:
            logger.warning("guest_merge_routines_failed user_id=%s err=%s", user_id, exc)
            result.errors.append(f"routines: {exc}")
            return

        if inserted:
            result.merged_fields.append("routines")
        else:
            result.skipped_fields.append("routines (no new values)")

    async def _insert_unseen_routines(self, user_id: str, routines: list[Routine]) -> int:
        existing_ids = await self._routines.list_ids(user_id)
        fresh: list[Routine] = []
        for routine in routines:
            if routine.id in existing_ids:
                continue
            existing_ids.add(routine.id)
            fresh.append(routine)
        if not fresh:
            return 0
        await self._routines.insert_batch([_routine_row(user_id, r) for r in fresh])
        return len(fresh)
