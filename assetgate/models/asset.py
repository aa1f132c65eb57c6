from typing import Optional
from pydantic import BaseModel, ConfigDict


class Asset(BaseModel):
    """Catalog entry as seen by the download path."""
    model_config = ConfigDict(frozen=True)

    asset_id: str
    name: str
    file_key: str
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    is_active: bool = True
    download_count: int = 0
