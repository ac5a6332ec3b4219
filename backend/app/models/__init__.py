from app.db.base import Base
from app.models.repository import Repository, ManifestState

__all__ = ["Base", "Repository", "ManifestState"]
