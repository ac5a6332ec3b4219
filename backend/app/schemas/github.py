from typing import List, Optional
from pydantic import BaseModel


class CodeSearchResult(BaseModel):
    """A single file hit from GitHub code search."""
    owner: str
    repo: str
    repository_full_name: str
    path: str

    @property
    def key(self) -> tuple:
        return (self.repository_full_name, self.path)


class CodeSearchPage(BaseModel):
    results: List[CodeSearchResult] = []
    total_count: int = 0
    next_page: Optional[int] = None


class RepositoryInfo(BaseModel):
    """Subset of the GitHub repository payload the catalog cares about."""
    owner: str
    name: str
    full_name: str
    description: str = ""
    stars: int = 0
    language: str = ""
    html_url: str
    default_branch: str = "main"
    owner_avatar_url: str = ""
