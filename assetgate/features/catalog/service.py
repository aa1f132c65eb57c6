"""
Catalog access for the download path.

The catalog itself (CRUD, categories, uploads) lives elsewhere; this module
only resolves assets, builds download URLs and bumps the download count.
"""

from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from assetgate.core.config import settings
from assetgate.core.database import get_db_session, assets
from assetgate.core.errors import NotFoundError
from assetgate.models.asset import Asset


def _row_to_asset(row) -> Asset:
    return Asset(
        asset_id=row.asset_id,
        name=row.name,
        file_key=row.file_key,
        description=row.description,
        thumbnail=row.thumbnail,
        is_active=row.is_active,
        download_count=row.download_count,
    )


def get_asset(asset_id: str, session: Optional[Session] = None) -> Optional[Asset]:
    if session is not None:
        row = session.execute(select(assets).where(assets.c.asset_id == asset_id)).first()
        return _row_to_asset(row) if row else None
    with get_db_session() as own_session:
        return get_asset(asset_id, own_session)


def require_asset(asset_id: str, session: Optional[Session] = None) -> Asset:
    asset = get_asset(asset_id, session)
    if asset is None:
        raise NotFoundError(f"Asset not found: {asset_id}")
    return asset


def increment_download_count(session: Session, asset_id: str) -> None:
    session.execute(
        update(assets)
        .where(assets.c.asset_id == asset_id)
        .values(download_count=assets.c.download_count + 1)
    )


def build_download_url(asset: Asset) -> str:
    """Absolute URL for an asset's file; file keys that are already URLs pass through."""
    if asset.file_key.startswith(("http://", "https://")):
        return asset.file_key
    return f"{settings.ASSET_BASE_URL.rstrip('/')}/{asset.file_key.lstrip('/')}"
