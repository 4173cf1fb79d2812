from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import time
import uuid
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

from pydantic import TypeAdapter, ValidationError

from app.errors import StorageReadError
from app.models import (
    BehaviorPatterns,
    EphemeralProfile,
    Interaction,
    InteractionKind,
    Location,
    Routine,
    SavedProduct,
    SessionState,
)
from app.store.slot_store import (
    GUEST_SLOTS,
    SLOT_LOCATION,
    SLOT_ROUTINES,
    SLOT_SAVED_PRODUCTS,
    SLOT_SESSION_STATE,
    SLOT_SURVEY_ANSWERS,
    SlotStore,
    env_float,
)


logger = logging.getLogger("glow-core.guest-profile")

T = TypeVar("T")

ChangeHandler = Callable[[EphemeralProfile], None]


INTERACTION_LOG_LIMIT = 100
SEARCH_HISTORY_LIMIT = 20
VIEWED_PRODUCTS_LIMIT = 50
RECENT_INTERACTIONS_LIMIT = 10
SESSION_MAX_AGE_S = env_float("GUEST_SESSION_MAX_AGE_HOURS", 24.0) * 3600.0

_SAVED_PRODUCTS = TypeAdapter(list[SavedProduct])
_ROUTINES = TypeAdapter(list[Routine])


@dataclass(frozen=True)
class ReadResult(Generic[T]):
    """Outcome of a storage read: a value (possibly absent) or an error."""

    value: Optional[T] = None
    error: Optional[StorageReadError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value


def _decode_survey_answers(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise TypeError("survey answers must be an object")
    return obj


def _prepend_unique(items: list[str], value: str, limit: int) -> list[str]:
    return [value, *[v for v in items if v != value]][:limit]


def _top_keys(counts: dict[str, int], n: int) -> list[str]:
    # sorted() is stable, so equal counts keep first-seen order.
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])
    return [key for key, _ in ranked[:n]]


def _page_feature(page: str) -> str:
    parts = page.split("/")
    if len(parts) > 1 and parts[1]:
        return parts[1]
    return "home"


class EphemeralProfileStore:
    """Working profile of one guest session, persisted through a SlotStore.

    Construct one per guest session, call ``init()`` when the session starts
    and ``dispose()`` when it ends. Every mutation is written through to the
    slot store and then announced to ``on_change`` handlers.
    """

    def __init__(
        self,
        slots: SlotStore,
        guest_id: str,
        *,
        clock: Callable[[], float] = time.time,
        max_age_s: float = SESSION_MAX_AGE_S,
    ) -> None:
        self._slots = slots
        self._guest_id = guest_id
        self._clock = clock
        self._max_age_s = max_age_s
        self._handlers: list[ChangeHandler] = []
        self._disposed = False

    @property
    def guest_id(self) -> str:
        return self._guest_id

    async def init(self) -> "EphemeralProfileStore":
        self._ensure_open()
        result = await self._read_session()
        if result.value is None:
            if result.error is not None:
                logger.warning("guest_session_unreadable guest_id=%s err=%s", self._guest_id, result.error)
            await self._write_session(self._fresh_session())
        return self

    async def dispose(self) -> None:
        self._handlers.clear()
        self._disposed = True

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_profile(self) -> ReadResult[EphemeralProfile]:
        self._ensure_open()
        session = await self._read_session()
        survey = await self._read_slot(SLOT_SURVEY_ANSWERS, _decode_survey_answers)
        saved = await self._read_slot(SLOT_SAVED_PRODUCTS, _SAVED_PRODUCTS.validate_python)
        routines = await self._read_slot(SLOT_ROUTINES, _ROUTINES.validate_python)
        location = await self._read_slot(SLOT_LOCATION, Location.model_validate)

        for part in (session, survey, saved, routines, location):
            if part.error is not None:
                return ReadResult(error=part.error)

        state = session.value
        profile = EphemeralProfile(
            skin_type=state.skin_type if state else None,
            concerns=list(state.concerns) if state else [],
            survey_answers=survey.value,
            saved_products=saved.value or [],
            routines=routines.value or [],
            search_history=list(state.context.search_history) if state else [],
            viewed_products=list(state.context.viewed_products) if state else [],
            location=location.value if location.value and not location.value.is_empty() else None,
            preferences=dict(state.preferences) if state else {},
        )
        return ReadResult(value=profile)

    async def get_profile(self) -> EphemeralProfile:
        result = await self.read_profile()
        if result.error is not None:
            logger.warning("guest_profile_read_failed guest_id=%s err=%s", self._guest_id, result.error)
        return result.unwrap_or(EphemeralProfile())

    async def derive_behavior_patterns(self) -> BehaviorPatterns:
        self._ensure_open()
        state = (await self._read_session()).value or self._fresh_session()
        duration_ms = max(0, self._now_ms() - state.start_time)
        minutes = duration_ms / 60000.0
        count = len(state.interactions)
        frequency = count / minutes if minutes > 0 else float(count)
        pages = len(state.context.visited_pages)

        if frequency > 5 or pages > 10:
            engagement = "high"
        elif frequency > 2 or pages > 5:
            engagement = "medium"
        else:
            engagement = "low"

        interest_counts: dict[str, int] = {}
        for interaction in state.interactions:
            if interaction.target:
                interest_counts[interaction.target] = interest_counts.get(interaction.target, 0) + 1

        feature_counts: dict[str, int] = {}
        for page in state.context.visited_pages:
            feature = _page_feature(page)
            feature_counts[feature] = feature_counts.get(feature, 0) + 1

        return BehaviorPatterns(
            engagement_level=engagement,
            primary_interests=_top_keys(interest_counts, 5),
            preferred_features=_top_keys(feature_counts, 3),
            session_duration=duration_ms,
            interaction_frequency=frequency,
        )

    async def get_personalization_context(self) -> dict[str, Any]:
        self._ensure_open()
        state = (await self._read_session()).value or self._fresh_session()
        patterns = await self.derive_behavior_patterns()
        return {
            "preferences": dict(state.preferences),
            "patterns": patterns.to_json_dict(),
            "recentInteractions": [i.to_json_dict() for i in state.interactions[-RECENT_INTERACTIONS_LIMIT:]],
            "context": state.context.to_json_dict(),
        }

    # ------------------------------------------------------------------
    # Session-state mutations
    # ------------------------------------------------------------------

    async def record_interaction(self, kind: InteractionKind, target: str, data: Any = None) -> None:
        interaction = self._interaction(kind, target, data)

        def apply(state: SessionState) -> None:
            self._append_interaction(state, interaction)

        await self._mutate_session(apply)

    async def set_skin_type(self, skin_type: Optional[str]) -> None:
        def apply(state: SessionState) -> None:
            state.skin_type = (skin_type or "").strip() or None

        await self._mutate_session(apply)

    async def set_concerns(self, concerns: list[str]) -> None:
        cleaned = EphemeralProfile(concerns=[str(c).strip() for c in concerns]).concerns

        def apply(state: SessionState) -> None:
            state.concerns = cleaned

        await self._mutate_session(apply)

    async def update_preferences(self, updates: Mapping[str, Any]) -> None:
        def apply(state: SessionState) -> None:
            state.preferences = {**state.preferences, **dict(updates)}

        await self._mutate_session(apply)

    async def navigate_to(self, page: str) -> None:
        interaction = self._interaction("navigation", page)

        def apply(state: SessionState) -> None:
            if page not in state.context.visited_pages:
                state.context.visited_pages.append(page)
            state.context.current_page = page
            self._append_interaction(state, interaction)

        await self._mutate_session(apply)

    async def complete_action(self, action: str) -> bool:
        state = await self._load_session_for_write()
        if action in state.context.completed_actions:
            return False
        state.context.completed_actions.append(action)
        self._append_interaction(state, self._interaction("completion", action))
        await self._write_session(state)
        await self._notify()
        return True

    async def add_search(self, query: str) -> None:
        text = query.strip()
        if not text:
            return
        interaction = self._interaction("input", "search", {"query": text})

        def apply(state: SessionState) -> None:
            state.context.search_history = _prepend_unique(state.context.search_history, text, SEARCH_HISTORY_LIMIT)
            self._append_interaction(state, interaction)

        await self._mutate_session(apply)

    async def view_product(self, product_id: int | str) -> None:
        key = str(product_id)
        interaction = self._interaction("click", "product", {"productId": product_id})

        def apply(state: SessionState) -> None:
            state.context.viewed_products = _prepend_unique(state.context.viewed_products, key, VIEWED_PRODUCTS_LIMIT)
            self._append_interaction(state, interaction)

        await self._mutate_session(apply)

    # ------------------------------------------------------------------
    # Slot mutations
    # ------------------------------------------------------------------

    async def set_survey_answers(self, answers: Mapping[str, Any]) -> None:
        self._ensure_open()
        await self._write_slot(SLOT_SURVEY_ANSWERS, dict(answers))
        await self._notify()

    async def set_location(self, location: Location) -> None:
        self._ensure_open()
        if location.is_empty():
            await self._slots.remove(self._guest_id, SLOT_LOCATION)
        else:
            await self._write_slot(SLOT_LOCATION, location.to_json_dict())
        await self._notify()

    async def save_product(self, product: SavedProduct) -> bool:
        self._ensure_open()
        saved = await self._saved_products_for_write()
        if any(p.id == product.id for p in saved):
            return False
        stamped = product.model_copy(update={"saved_at": product.saved_at or self._now_iso()})
        saved.append(stamped)
        await self._write_slot(SLOT_SAVED_PRODUCTS, [p.to_json_dict() for p in saved])
        await self.record_interaction("click", "save", {"itemId": product.id, "type": "product"})
        return True

    async def remove_saved_product(self, product_id: int) -> bool:
        self._ensure_open()
        saved = await self._saved_products_for_write()
        kept = [p for p in saved if p.id != product_id]
        if len(kept) == len(saved):
            return False
        await self._write_slot(SLOT_SAVED_PRODUCTS, [p.to_json_dict() for p in kept])
        await self._notify()
        return True

    async def save_routine(self, routine: Routine) -> Routine:
        self._ensure_open()
        result = await self._read_slot(SLOT_ROUTINES, _ROUTINES.validate_python)
        if result.error is not None:
            logger.warning("guest_routines_unreadable guest_id=%s err=%s", self._guest_id, result.error)
        routines = result.unwrap_or([])

        now = self._now_iso()
        stamped = routine.model_copy(update={"created_at": routine.created_at or now, "updated_at": now})
        for idx, existing in enumerate(routines):
            if existing.id == routine.id:
                stamped = stamped.model_copy(update={"created_at": existing.created_at or stamped.created_at})
                routines[idx] = stamped
                break
        else:
            routines.append(stamped)

        await self._write_slot(SLOT_ROUTINES, [r.to_json_dict() for r in routines])
        await self._notify()
        return stamped

    async def clear_ephemeral_data(self) -> bool:
        """Remove every guest slot at once. Returns False when nothing was stored."""
        self._ensure_open()
        present = False
        for slot in GUEST_SLOTS:
            if await self._slots.get(self._guest_id, slot) is not None:
                present = True
                break
        if not present:
            return False

        await self._slots.remove(self._guest_id, *GUEST_SLOTS)
        logger.info("guest_data_cleared guest_id=%s", self._guest_id)
        await self._notify()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._disposed:
            raise RuntimeError("guest profile store is disposed")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def _fresh_session(self) -> SessionState:
        return SessionState(session_id=uuid.uuid4().hex, start_time=self._now_ms())

    def _interaction(self, kind: InteractionKind, target: str, data: Any = None) -> Interaction:
        return Interaction(timestamp=self._now_ms(), type=kind, target=target, data=data)

    @staticmethod
    def _append_interaction(state: SessionState, interaction: Interaction) -> None:
        state.interactions.append(interaction)
        if len(state.interactions) > INTERACTION_LOG_LIMIT:
            state.interactions = state.interactions[-INTERACTION_LOG_LIMIT:]

    async def _read_slot(self, slot: str, decode: Callable[[Any], T]) -> ReadResult[T]:
        raw = await self._slots.get(self._guest_id, slot)
        if raw is None:
            return ReadResult()
        try:
            return ReadResult(value=decode(json.loads(raw)))
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            return ReadResult(error=StorageReadError(slot, str(exc)[:200]))

    async def _write_slot(self, slot: str, value: Any) -> None:
        await self._slots.set(self._guest_id, slot, json.dumps(value, ensure_ascii=False, separators=(",", ":")))

    async def _read_session(self) -> ReadResult[SessionState]:
        result = await self._read_slot(SLOT_SESSION_STATE, SessionState.model_validate)
        state = result.value
        if state is not None and (self._now_ms() - state.start_time) >= self._max_age_s * 1000:
            logger.info("guest_session_expired guest_id=%s session_id=%s", self._guest_id, state.session_id)
            return ReadResult()
        return result

    async def _write_session(self, state: SessionState) -> None:
        await self._write_slot(SLOT_SESSION_STATE, state.to_json_dict())

    async def _load_session_for_write(self) -> SessionState:
        self._ensure_open()
        result = await self._read_session()
        if result.error is not None:
            logger.warning("guest_session_unreadable guest_id=%s err=%s", self._guest_id, result.error)
        return result.value or self._fresh_session()

    async def _mutate_session(self, apply: Callable[[SessionState], None]) -> None:
        state = await self._load_session_for_write()
        apply(state)
        await self._write_session(state)
        await self._notify()

    async def _saved_products_for_write(self) -> list[SavedProduct]:
        result = await self._read_slot(SLOT_SAVED_PRODUCTS, _SAVED_PRODUCTS.validate_python)
        if result.error is not None:
            logger.warning("guest_saved_products_unreadable guest_id=%s err=%s", self._guest_id, result.error)
        return result.unwrap_or([])

    async def _notify(self) -> None:
        if not self._handlers:
            return
        profile = await self.get_profile()
        for handler in list(self._handlers):
            try:
                handler(profile)
            except Exception:
                logger.exception("guest_profile_listener_failed guest_id=%s", self._guest_id)
