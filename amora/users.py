"""
Amora — users.py
─────────────────────────────────────────────────────────────────
User Directory
- Identity (email / phone), profile fields, role, premium flag
- Like / dislike / match sets (read side, writes live in matching.py)
- Presence (online / last_seen) with bounded retry
- Profile views (append-only) + profile completion

Routes:
  GET  /api/users/me              → own profile + completion
  PUT  /api/users/me              → update profile (optional image upload)
  GET  /api/users/profile-views   → last 10 viewers
  GET  /api/users/{user_id}/profile
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import aiosqlite
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from amora.core.database import get_db, transaction
from amora.core.errors import NotFoundError, ValidationError
from amora.core.retry import retry_async
from amora.core.security import Principal, get_current_principal
from amora.models.user import ProfileView, RelationKind, Role, User

logger = logging.getLogger("amora.users")

PROFILE_FIELDS = (
    "first_name", "last_name", "date_of_birth", "gender", "interest",
    "profile_image", "bio", "about",
)

# Completion is measured over these, in this order
REQUIRED_FIELDS = (
    "interest", "gender", "date_of_birth", "phone", "bio",
    "profile_image", "first_name", "last_name", "email", "about",
)

GENDERS   = ("man", "woman")
INTERESTS = ("dating", "hookup")


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_user_id() -> str:
    return "usr_" + secrets.token_urlsafe(12)

def row_to_user(row) -> User:
    return User(
        id            = row["id"],
        email         = row["email"],
        phone         = row["phone"],
        role          = Role(row["role"]),
        first_name    = row["first_name"],
        last_name     = row["last_name"],
        date_of_birth = row["date_of_birth"],
        gender        = row["gender"],
        interest      = row["interest"],
        profile_image = row["profile_image"],
        bio           = row["bio"],
        about         = row["about"],
        coins         = int(row["coins"]),
        is_premium    = bool(row["is_premium"]),
        is_online     = bool(row["is_online"]),
        last_seen     = row["last_seen"],
        created_at    = row["created_at"],
        updated_at    = row["updated_at"],
    )


def public_profile(user: User) -> dict:
    """Profile as shown to other users. No contact details, no coin balance."""
    return {
        "id":            user.id,
        "first_name":    user.first_name,
        "last_name":     user.last_name,
        "date_of_birth": user.date_of_birth,
        "gender":        user.gender,
        "interest":      user.interest,
        "profile_image": user.profile_image,
        "bio":           user.bio,
        "about":         user.about,
        "role":          user.role.value,
        "is_online":     user.is_online,
        "last_seen":     user.last_seen,
    }


def private_profile(user: User) -> dict:
    return {
        **public_profile(user),
        "email":      user.email,
        "phone":      user.phone,
        "coins":      user.coins,
        "is_premium": user.is_premium,
        "created_at": user.created_at,
    }


def profile_status(user: User) -> dict:
    completed = [f for f in REQUIRED_FIELDS if getattr(user, f)]
    missing   = [f for f in REQUIRED_FIELDS if not getattr(user, f)]
    return {
        "completed_profile":  not missing,
        "profile_completion": f"{round(len(completed) / len(REQUIRED_FIELDS) * 100)}%",
        "missing_fields":     missing,
    }


def _validate_profile(fields: Dict[str, Optional[str]]):
    unknown = set(fields) - set(PROFILE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
    if fields.get("gender") is not None and fields["gender"] not in GENDERS:
        raise ValidationError("gender must be 'man' or 'woman'")
    if fields.get("interest") is not None and fields["interest"] not in INTERESTS:
        raise ValidationError("interest must be 'dating' or 'hookup'")


# ─────────────────────────────────────────────
# UserDirectory
# ─────────────────────────────────────────────
class UserDirectory:

    def __init__(self, hub, db_path: Optional[str] = None):
        self.hub     = hub
        self.db_path = db_path

    # ─── Create ────────────────────────────────

    async def create_user(
        self,
        email:      Optional[str] = None,
        phone:      Optional[str] = None,
        role:       Role = Role.USER,
        is_premium: bool = False,
        coins:      int = 0,
        **profile,
    ) -> User:
        """Registration. At least one of email / phone is required."""
        if not email and not phone:
            raise ValidationError("Either email or phone is required")
        if coins < 0:
            raise ValidationError("coins must be >= 0")
        _validate_profile(profile)

        user_id = _new_user_id()
        ts      = _now()
        columns = ["id", "email", "phone", "role", "coins", "is_premium", "last_seen",
                   "created_at", "updated_at", *profile.keys()]
        values  = [user_id, email, phone, role.value, coins, int(is_premium), ts,
                   ts, ts, *profile.values()]

        async with get_db(self.db_path) as db:
            try:
                await db.execute(
                    f"INSERT INTO users ({', '.join(columns)}) VALUES ({', '.join('?' * len(values))})",
                    values
                )
                await db.commit()
            except aiosqlite.IntegrityError:
                raise ValidationError("Email or phone already registered")

        logger.info(f"New user: {user_id} ({email or phone}, role={role.value})")
        return await self.get_user(user_id)

    # ─── Read ──────────────────────────────────

    async def get_user(self, user_id: str) -> User:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFoundError("User not found")
        return row_to_user(row)

    async def find_by_phone(self, phone: str) -> Optional[User]:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT * FROM users WHERE phone = ?", (phone,)) as cur:
                row = await cur.fetchone()
        return row_to_user(row) if row else None

    async def get_or_create_by_phone(self, phone: str) -> User:
        """
        Phone login. The first verified login signs the user up; a
        concurrent first login that loses the insert gets the winner's row.
        """
        user = await self.find_by_phone(phone)
        if user is not None:
            return user
        try:
            user = await self.create_user(phone=phone)
        except ValidationError:
            user = await self.find_by_phone(phone)
            if user is None:
                raise
            return user
        logger.info(f"Signed up by phone: {user.id}")
        return user

    async def get_admin(self) -> User:
        """Any admin user. Oldest first, so the choice is stable."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM users WHERE role = 'admin' ORDER BY created_at, id LIMIT 1"
            ) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFoundError("Admin user not found")
        return row_to_user(row)

    async def relations(self, user_id: str) -> Dict[str, Set[str]]:
        """{"likes": {...}, "dislikes": {...}, "matches": {...}}"""
        sets = {"likes": set(), "dislikes": set(), "matches": set()}
        names = {
            RelationKind.LIKE.value:    "likes",
            RelationKind.DISLIKE.value: "dislikes",
            RelationKind.MATCH.value:   "matches",
        }
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT target_id, kind FROM user_relations WHERE user_id = ?", (user_id,)
            ) as cur:
                async for row in cur:
                    sets[names[row["kind"]]].add(row["target_id"])
        return sets

    # ─── Profile ───────────────────────────────

    async def update_profile(self, user_id: str, fields: Dict[str, Optional[str]]) -> User:
        fields = {k: v for k, v in fields.items() if v is not None}
        _validate_profile(fields)
        if fields:
            sets = ", ".join(f"{k} = ?" for k in fields)
            async with get_db(self.db_path) as db:
                cur = await db.execute(
                    f"UPDATE users SET {sets}, updated_at = ? WHERE id = ?",
                    (*fields.values(), _now(), user_id)
                )
                await db.commit()
                if cur.rowcount == 0:
                    raise NotFoundError("User not found")
        return await self.get_user(user_id)

    async def set_premium(self, user_id: str, is_premium: bool) -> User:
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                "UPDATE users SET is_premium = ?, updated_at = ? WHERE id = ?",
                (int(is_premium), _now(), user_id)
            )
            await db.commit()
            if cur.rowcount == 0:
                raise NotFoundError("User not found")
        return await self.get_user(user_id)

    # ─── Presence ──────────────────────────────

    async def set_online(self, user_id: str, is_online: bool) -> str:
        """
        Mark online / offline. last_seen is refreshed either way.
        Idempotent, so it is retried with backoff.
        Returns the last_seen timestamp written.
        """
        ts = _now()

        async def _write():
            async with get_db(self.db_path) as db:
                await db.execute(
                    "UPDATE users SET is_online = ?, last_seen = ? WHERE id = ?",
                    (int(is_online), ts, user_id)
                )
                await db.commit()

        await retry_async(_write, label=f"presence update for {user_id}")
        return ts

    # ─── Profile views ─────────────────────────

    async def record_profile_view(self, user_id: str, viewer_id: str) -> ProfileView:
        """Append a view against user_id and notify them."""
        ts = _now()
        async with transaction(self.db_path) as db:
            async with db.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)) as cur:
                if await cur.fetchone() is None:
                    raise NotFoundError("User not found")
            await db.execute(
                "INSERT INTO profile_views (user_id, viewer_id, created_at) VALUES (?,?,?)",
                (user_id, viewer_id, ts)
            )

        await self.hub.emit_to_user(user_id, "profile:viewed", {"viewerId": viewer_id, "timestamp": ts})
        return ProfileView(viewer_id=viewer_id, timestamp=ts)

    async def recent_profile_views(self, user_id: str, limit: int = 10) -> List[dict]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT v.viewer_id, v.created_at, u.first_name, u.last_name, u.profile_image
                   FROM profile_views v
                   JOIN users u ON u.id = v.viewer_id
                   WHERE v.user_id = ?
                   ORDER BY v.created_at DESC, v.id DESC
                   LIMIT ?""",
                (user_id, limit)
            ) as cur:
                rows = await cur.fetchall()
        return [
            {
                "viewer_id":     r["viewer_id"],
                "first_name":    r["first_name"],
                "last_name":     r["last_name"],
                "profile_image": r["profile_image"],
                "timestamp":     r["created_at"],
            }
            for r in rows
        ]


# ─────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/users", tags=["users"])


def _directory(request: Request) -> UserDirectory:
    return request.app.state.users


@router.get("/me")
async def get_me(request: Request, principal: Principal = Depends(get_current_principal)):
    user = await _directory(request).get_user(principal.user_id)
    return {**private_profile(user), **profile_status(user)}


@router.put("/me")
async def update_me(
    request:       Request,
    first_name:    Optional[str] = Form(None),
    last_name:     Optional[str] = Form(None),
    date_of_birth: Optional[str] = Form(None),
    gender:        Optional[str] = Form(None),
    interest:      Optional[str] = Form(None),
    bio:           Optional[str] = Form(None),
    about:         Optional[str] = Form(None),
    profile_image: Optional[UploadFile] = File(None),
    principal:     Principal = Depends(get_current_principal),
):
    """Email and phone are not editable here."""
    fields = {
        "first_name": first_name, "last_name": last_name, "date_of_birth": date_of_birth,
        "gender": gender, "interest": interest, "bio": bio, "about": about,
    }
    if profile_image is not None:
        from amora.storage.s3 import upload_image
        data = await profile_image.read()
        fields["profile_image"] = await upload_image(
            data, profile_image.content_type or "image/jpeg", principal.user_id
        )

    user = await _directory(request).update_profile(principal.user_id, fields)
    return private_profile(user)


@router.get("/profile-views")
async def get_profile_views(request: Request, principal: Principal = Depends(get_current_principal)):
    return await _directory(request).recent_profile_views(principal.user_id)


@router.get("/{user_id}/profile")
async def get_profile(user_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    user = await _directory(request).get_user(user_id)
    return public_profile(user)
