"""
User directory access.
- get_user(user_id)
- require_user(user_id)
- upsert_user(...) (seeding and tests; the auth service owns user creation)
"""

from typing import Optional
from sqlalchemy import select, update

from assetgate.core.database import get_db_session, insert_ignore, users as app_users, utc_now, ensure_utc
from assetgate.core.errors import NotFoundError
from assetgate.models.user import Role, User


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        role=Role(row.role),
        email=row.email,
        display_name=row.display_name,
        is_active=row.is_active,
        token_version=row.token_version,
        created_at=ensure_utc(row.created_at),
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def require_user(user_id: str) -> User:
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user


def upsert_user(
    user_id: str,
    *,
    role: Role = Role.USER,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    is_active: bool = True,
    token_version: int = 0,
) -> User:
    values = {
        "role": Role(role).value,
        "email": email,
        "display_name": display_name,
        "is_active": is_active,
        "token_version": token_version,
    }
    with get_db_session() as session:
        inserted = insert_ignore(
            session,
            app_users,
            {"user_id": user_id, "created_at": utc_now(), **values},
            ["user_id"],
        )
        if not inserted:
            session.execute(update(app_users).where(app_users.c.user_id == user_id).values(**values))
    return require_user(user_id)
