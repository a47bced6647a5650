"""Shared plumbing for services that talk to Supabase or the local database."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from supabase import Client as SupabaseClient, create_client

from ..extensions import db

logger = logging.getLogger(__name__)

# Postgres ``unique_violation``; PostgREST forwards it as ``code``.
UNIQUE_VIOLATION = "23505"


class DuplicateRecordError(ValueError):
    """Raised when an insert collides with a uniqueness constraint."""


def init_supabase() -> Optional[SupabaseClient]:
    """Return a Supabase client when credentials are configured."""

    url = get_env_value(
        "SUPABASE_URL",
        "SUPABASE_URL_SECRET",
        "SUPABASE_PROJECT_URL",
    )
    key = get_env_value(
        "SUPABASE_SERVICE_ROLE_KEY",
        "SUPABASE_ANON_KEY",
        "SUPABASE_ANON_KEY_SECRET",
        "SUPABASE_API_KEY",
    )
    if not url or not key:
        logger.info("Supabase disabled (missing env); using the local database")
        return None
    try:
        return create_client(url, key)
    except Exception as exc:
        logger.warning("Supabase init failed: %s", exc)
        return None


def get_env_value(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_duplicate_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` reports a unique constraint violation."""

    if isinstance(exc, IntegrityError):
        return True

    code = getattr(exc, "code", None)
    if code is None and exc.args and isinstance(exc.args[0], dict):
        code = exc.args[0].get("code")
    return str(code) == UNIQUE_VIOLATION


def rows(response: Any) -> List[Dict[str, Any]]:
    """Extract the row list from a PostgREST response."""

    data = getattr(response, "data", None)
    if data is None and isinstance(response, dict):
        data = response.get("data")
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return []


def first_row(response: Any) -> Optional[Dict[str, Any]]:
    found = rows(response)
    return found[0] if found else None


def row_count(response: Any) -> int:
    count = getattr(response, "count", None)
    if count is None and isinstance(response, dict):
        count = response.get("count")
    try:
        return int(count or 0)
    except (TypeError, ValueError):
        return 0


def commit_local(*records: Any, message: str = "That record already exists.") -> None:
    """Add ``records`` to the local session and commit.

    Integrity errors are rolled back and re-raised as
    :class:`DuplicateRecordError` so callers see the same failure the hosted
    database reports.
    """

    try:
        db.session.add_all(records)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise DuplicateRecordError(message) from exc
