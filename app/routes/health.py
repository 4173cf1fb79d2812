from __future__ import annotations

import os

from fastapi import APIRouter

from app.catalog import default_catalog
from app.services.accounts import ACCOUNT_BACKEND_KIND
from app.store.slot_store import PERSISTENT_SLOT_STORE

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in ("GITHUB_SHA", "COMMIT_SHA", "GIT_SHA"):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "service": "glow-personalization-core",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "slot_store_backend": PERSISTENT_SLOT_STORE.backend_kind,
        "account_backend": ACCOUNT_BACKEND_KIND,
        "catalog_items": len(default_catalog()),
    }
