"""
Download API routes.

- POST /downloads/{asset_id}: gate and record one download
- GET  /downloads/status: caller's quota position
- GET  /downloads/history: caller's paginated download history
- GET  /downloads/stats: admin download statistics
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from assetgate.core.auth import get_current_user, require_admin
from assetgate.core.errors import EntitlementError
from assetgate.features.downloads.service import attempt_download, download_status
from assetgate.features.entitlements.service import DenialReason
from assetgate.features.usage.service import download_stats, list_history
from assetgate.models.user import User


router = APIRouter(prefix="/downloads", tags=["downloads"])


class AssetSummary(BaseModel):
    id: str
    name: str
    thumbnail: Optional[str] = None


class DownloadResponse(BaseModel):
    downloadUrl: str
    remainingDownloads: Optional[int]
    asset: AssetSummary


def _request_metadata(request: Request) -> Dict[str, Any]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post("/{asset_id}", response_model=DownloadResponse)
def download_asset(asset_id: str, request: Request, user: User = Depends(get_current_user)):
    """
    Download an asset if the caller is entitled.

    Errors:
        401: missing or invalid token
        403: NO_SUBSCRIPTION or ASSET_UNAVAILABLE
        404: unknown asset
        429: LIMIT_REACHED (with resetsAt)
    """
    result = attempt_download(user, asset_id, metadata=_request_metadata(request))

    if result.reason == DenialReason.LIMIT_REACHED:
        raise EntitlementError(
            result.reason.value,
            "Daily download limit reached",
            status_code=429,
            resets_at=result.resets_at.isoformat(),
        )
    if result.reason is not None:
        raise EntitlementError(result.reason.value, "An active subscription is required to download")

    return {
        "downloadUrl": result.download_url,
        "remainingDownloads": result.remaining,
        "asset": {"id": result.asset.asset_id, "name": result.asset.name, "thumbnail": result.asset.thumbnail},
    }


@router.get("/status")
def get_download_status(user: User = Depends(get_current_user)):
    return download_status(user)


@router.get("/history")
def get_download_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
):
    return list_history(user.user_id, page=page, limit=limit)


@router.get("/stats")
def get_download_stats(days: int = Query(30, ge=1, le=365), admin: User = Depends(require_admin)):
    return download_stats(days)
