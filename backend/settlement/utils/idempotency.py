from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import has_request_context, request

from settlement.extensions import db
from settlement.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Resolve an ``Idempotency-Key`` for ``scope``.

    Returns ``None`` when no key was sent, ``("hit", body, status)`` for a
    replay, ``("conflict", body, 409)`` when the key was reused with a
    different payload, and ``("miss", row, 0)`` after reserving the key.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None

    req_hash = _hash_request(scope=scope, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is not None:
        if (row.request_hash or "") != req_hash or (
            row.user_id is not None and user_id is not None and int(row.user_id) != int(user_id)
        ):
            return (
                "conflict",
                {
                    "ok": False,
                    "error": "IDEMPOTENCY_KEY_REUSE",
                    "message": "This Idempotency-Key was already used with a different request.",
                },
                409,
            )
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        return (
            "conflict",
            {
                "ok": False,
                "error": "IDEMPOTENCY_KEY_IN_FLIGHT",
                "message": "A request with this Idempotency-Key is still being processed.",
            },
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope,
        user_id=int(user_id) if user_id is not None else None,
        request_hash=req_hash,
        response_json=None,
        status_code=0,
    )
    db.session.add(row)
    db.session.commit()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()


def forget(row: IdempotencyKey) -> None:
    """Drop a reserved key whose request failed so the client may retry."""
    db.session.delete(row)
    db.session.commit()
