"""
Pure decision helpers shared by ingestion and re-analysis.

Nothing here touches the network or the database, so each rule can be
tested on plain values.
"""
import enum
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from app.models.repository import ManifestState, Repository
from app.schemas.catalog import ServerConfig
from app.schemas.github import RepositoryInfo

VERIFIED_TAG = "Verified"

# Launchers in order of preference. npm launches are the most portable,
# and only these can be auto-launched for tool introspection.
PREFERRED_LAUNCHERS: Sequence[Sequence[str]] = (
    ("npx",),
    ("uv", "uvx"),
    ("docker",),
)


class BackfillNeed(str, enum.Enum):
    NOT_APPLICABLE = "not_applicable"
    ALREADY_PRESENT = "already_present"
    REQUIRED = "required"


@dataclass(frozen=True)
class RepositoryIdentity:
    full_name: str
    url: str


def has_manifest_keywords(readme: str, keywords: Iterable[str]) -> bool:
    """True if the README mentions at least one launch-manifest keyword."""
    return any(keyword in readme for keyword in keywords)


def derive_identity(info: RepositoryInfo, path: str) -> RepositoryIdentity:
    """
    Build the catalog name and web URL for a README at `path`.

    Subdirectories become part of the name so every manifest inside a
    monorepo gets its own record:

        ("acme/tools", "servers/weather/README.md")
        -> acme/tools/servers/weather
        -> https://github.com/acme/tools/tree/<branch>/servers/weather
    """
    directories = [part for part in path.split("/")[:-1] if part]
    if not directories:
        return RepositoryIdentity(full_name=info.full_name, url=info.html_url)

    subpath = "/".join(directories)
    return RepositoryIdentity(
        full_name=f"{info.full_name}/{subpath}",
        url=f"{info.html_url}/tree/{info.default_branch}/{subpath}",
    )


def mark_preferred(configs: List[ServerConfig]) -> Optional[ServerConfig]:
    """
    Flag at most one config as preferred: first npx, else uv/uvx, else docker.

    Any `preferred` flag already on the configs is cleared first.

    Returns:
        The preferred config, or None if no config uses a known launcher
    """
    for config in configs:
        config.preferred = False

    for launchers in PREFERRED_LAUNCHERS:
        for config in configs:
            if config.command in launchers:
                config.preferred = True
                return config
    return None


def merge_categories(existing: Optional[Dict[str, str]], category: str) -> Dict[str, str]:
    """
    Return a new metadata map with `categories` replaced by the analysed tags.

    Every other key is kept, and a Verified tag already on the record
    survives re-analysis.
    """
    metadata = dict(existing or {})
    previous = [tag.strip() for tag in metadata.get("categories", "").split(",") if tag.strip()]

    tags: List[str] = []
    for tag in category.split(","):
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)

    if VERIFIED_TAG in previous and VERIFIED_TAG not in tags:
        tags.append(VERIFIED_TAG)

    metadata["categories"] = ",".join(tags)
    return metadata


def manifest_target(existing: Optional[Repository], force: bool) -> ManifestState:
    """
    Decide where a fresh analysis goes.

    New records, records without an accepted manifest, and forced runs write
    the accepted manifest directly; everything else becomes a proposal.
    """
    if force or existing is None or not existing.has_accepted_manifest:
        return ManifestState.ACCEPTED
    return ManifestState.PROPOSED


def backfill_need(preferred: Optional[ServerConfig], existing: Optional[Repository], force: bool) -> BackfillNeed:
    if preferred is None:
        return BackfillNeed.NOT_APPLICABLE
    if force or existing is None or existing.tool_definitions is None:
        return BackfillNeed.REQUIRED
    return BackfillNeed.ALREADY_PRESENT
