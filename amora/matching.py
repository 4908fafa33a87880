"""
Amora — matching.py
─────────────────────────────────────────────────────────────────
Match Engine
- Candidate pool (random sample of complete, unseen profiles)
- Like / dislike with mutual-like detection
- Match creation exactly once per unordered pair
- Symmetric unwind when a match is disliked

Every like / dislike runs inside one BEGIN IMMEDIATE transaction,
so two users liking each other at the same instant serialize and
exactly one of the two calls creates the match.

Routes:
  GET  /api/matches/candidates
  POST /api/matches/like/{target_id}     → {message, isMatch}
  POST /api/matches/dislike/{target_id}  → {message}
  GET  /api/matches
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from amora.core.config import cfg
from amora.core.database import get_db, transaction
from amora.core.errors import ConflictError, NotFoundError, ValidationError
from amora.core.security import Principal, get_current_principal
from amora.models.user import RelationKind, User
from amora.users import row_to_user, public_profile

logger = logging.getLogger("amora.matching")


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def match_id_for(user_a: str, user_b: str) -> str:
    """Deterministic id for the unordered pair."""
    lo, hi = sorted((user_a, user_b))
    return f"{lo}-{hi}"


async def _relation(db, user_id: str, target_id: str) -> Optional[RelationKind]:
    async with db.execute(
        "SELECT kind FROM user_relations WHERE user_id = ? AND target_id = ?",
        (user_id, target_id)
    ) as cur:
        row = await cur.fetchone()
    return RelationKind(row["kind"]) if row else None


async def _set_relation(db, user_id: str, target_id: str, kind: RelationKind, ts: str):
    await db.execute(
        """INSERT INTO user_relations (user_id, target_id, kind, created_at)
           VALUES (?,?,?,?)
           ON CONFLICT(user_id, target_id)
           DO UPDATE SET kind = excluded.kind, created_at = excluded.created_at""",
        (user_id, target_id, kind.value, ts)
    )


async def _require_users(db, *user_ids: str):
    for uid in user_ids:
        async with db.execute("SELECT 1 FROM users WHERE id = ?", (uid,)) as cur:
            if await cur.fetchone() is None:
                raise NotFoundError("User not found")


# ─────────────────────────────────────────────
# MatchEngine
# ─────────────────────────────────────────────
class MatchEngine:

    def __init__(self, hub, db_path: Optional[str] = None):
        self.hub     = hub
        self.db_path = db_path

    # ─── Candidates ────────────────────────────

    async def find_candidates(self, user_id: str, limit: int = None) -> List[User]:
        """
        Up to `limit` random users that are not self, not admin, not
        already liked / disliked / matched, and have a complete profile.
        """
        limit = limit or cfg.CANDIDATE_LIMIT
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)) as cur:
                if await cur.fetchone() is None:
                    raise NotFoundError("User not found")

            async with db.execute(
                """SELECT u.* FROM users u
                   WHERE u.id != ?
                     AND u.role != 'admin'
                     AND COALESCE(u.gender, '')        != ''
                     AND COALESCE(u.profile_image, '') != ''
                     AND COALESCE(u.date_of_birth, '') != ''
                     AND COALESCE(u.first_name, '')    != ''
                     AND COALESCE(u.last_name, '')     != ''
                     AND COALESCE(u.interest, '')      != ''
                     AND NOT EXISTS (
                         SELECT 1 FROM user_relations r
                         WHERE r.user_id = ? AND r.target_id = u.id
                     )
                   ORDER BY RANDOM()
                   LIMIT ?""",
                (user_id, user_id, limit)
            ) as cur:
                rows = await cur.fetchall()
        return [row_to_user(r) for r in rows]

    # ─── Like ──────────────────────────────────

    async def like(self, user_id: str, target_id: str) -> dict:
        """
        Record a like. Returns {"message", "isMatch"}.
        Raises ConflictError if target is already liked or matched.
        """
        if user_id == target_id:
            raise ValidationError("You cannot like yourself")

        ts       = _now()
        is_match = False

        async with transaction(self.db_path) as db:
            await _require_users(db, user_id, target_id)

            current = await _relation(db, user_id, target_id)
            if current in (RelationKind.LIKE, RelationKind.MATCH):
                raise ConflictError("Already liked or matched with this user")

            # Replaces a dislike if there was one
            await _set_relation(db, user_id, target_id, RelationKind.LIKE, ts)

            if await _relation(db, target_id, user_id) == RelationKind.LIKE:
                await _set_relation(db, user_id, target_id, RelationKind.MATCH, ts)
                await _set_relation(db, target_id, user_id, RelationKind.MATCH, ts)
                lo, hi = sorted((user_id, target_id))
                await db.execute(
                    """INSERT INTO matches (id, user_lo, user_hi, created_at)
                       VALUES (?,?,?,?)
                       ON CONFLICT(user_lo, user_hi) DO NOTHING""",
                    (match_id_for(user_id, target_id), lo, hi, ts)
                )
                is_match = True

        if not is_match:
            return {"message": "Like recorded", "isMatch": False}

        logger.info(f"Match created: {user_id} ↔ {target_id}")
        payload = {
            "matchId":   match_id_for(user_id, target_id),
            "users":     sorted((user_id, target_id)),
            "timestamp": ts,
        }
        # userId is always the other side
        await self.hub.emit_to_user(user_id, "match:created", {**payload, "userId": target_id})
        await self.hub.emit_to_user(target_id, "match:created", {**payload, "userId": user_id})
        return {"message": "Match created!", "isMatch": True}

    # ─── Dislike ───────────────────────────────

    async def dislike(self, user_id: str, target_id: str) -> dict:
        """
        Record a dislike. Unwinds an existing match on both sides.
        Raises ConflictError if already disliked.
        """
        if user_id == target_id:
            raise ValidationError("You cannot dislike yourself")

        async with transaction(self.db_path) as db:
            await _require_users(db, user_id, target_id)

            current = await _relation(db, user_id, target_id)
            if current == RelationKind.DISLIKE:
                raise ConflictError("Already disliked this user")

            if current == RelationKind.MATCH:
                await db.execute(
                    "DELETE FROM user_relations WHERE user_id = ? AND target_id = ? AND kind = 'match'",
                    (target_id, user_id)
                )
                lo, hi = sorted((user_id, target_id))
                await db.execute(
                    "DELETE FROM matches WHERE user_lo = ? AND user_hi = ?", (lo, hi)
                )
                logger.info(f"Match removed: {user_id} ↔ {target_id}")

            await _set_relation(db, user_id, target_id, RelationKind.DISLIKE, _now())

        return {"message": "Dislike recorded"}

    # ─── Matches ───────────────────────────────

    async def get_mutual_matches(self, user_id: str) -> List[User]:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)) as cur:
                if await cur.fetchone() is None:
                    raise NotFoundError("User not found")
            async with db.execute(
                """SELECT u.* FROM user_relations r
                   JOIN users u ON u.id = r.target_id
                   WHERE r.user_id = ? AND r.kind = 'match'
                   ORDER BY r.created_at DESC""",
                (user_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [row_to_user(r) for r in rows]


# ─────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/matches", tags=["matches"])


def _engine(request: Request) -> MatchEngine:
    return request.app.state.matches


@router.get("/candidates")
async def get_candidates(request: Request, principal: Principal = Depends(get_current_principal)):
    users = await _engine(request).find_candidates(principal.user_id)
    return [public_profile(u) for u in users]


@router.post("/like/{target_id}")
async def like_user(target_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    result = await _engine(request).like(principal.user_id, target_id)
    return JSONResponse(result, status_code=201 if result["isMatch"] else 200)


@router.post("/dislike/{target_id}")
async def dislike_user(target_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    return await _engine(request).dislike(principal.user_id, target_id)


@router.get("")
async def get_matches(request: Request, principal: Principal = Depends(get_current_principal)):
    users = await _engine(request).get_mutual_matches(principal.user_id)
    return [public_profile(u) for u in users]
