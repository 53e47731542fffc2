"""Tag index (``repositories`` file) handling."""

from typing import Any

from ..exceptions import AmbiguousExportError, MetadataError, TagFormatError

DEFAULT_TAG = "latest"

TagIndex = dict[str, dict[str, str]]


def parse_repository_tag(repo_tag: str) -> tuple[str, str]:
    """Parse a repository:tag string into its repository and tag parts.

    Args:
        repo_tag: Repository tag string
            - e.g. "nginx:alpine", "localhost:5000/myapp:latest"
            - without a tag: "myapp" (tag defaults to "latest")

    Returns:
        tuple[str, str]: (repository, tag)

    Raises:
        TagFormatError: If the repository or tag half is empty

    Examples:
        parse_repository_tag("nginx:alpine")                # ("nginx", "alpine")
        parse_repository_tag("localhost:5000/myapp:latest") # ("localhost:5000/myapp", "latest")
        parse_repository_tag("myapp")                       # ("myapp", "latest")
    """
    repository, tag = repo_tag, DEFAULT_TAG

    if ":" in repo_tag:
        # Split only on the last ':' to handle registry URLs like localhost:5000/repo
        head, tail = repo_tag.rsplit(":", 1)
        if "/" not in tail:
            repository, tag = head, tail
            if not tag:
                raise TagFormatError(f"bad tag format: {repo_tag}")

    if not repository:
        raise TagFormatError(f"bad tag format: {repo_tag}")

    return repository, tag


def parse_tag_index(data: Any) -> TagIndex:
    """Validate a parsed ``repositories`` document.

    Format: {"repo/name": {"tag": "layer_id"}}

    Raises:
        MetadataError: If the document does not have that shape
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MetadataError("repositories must be a JSON object")

    index: TagIndex = {}
    for repo_name, tags in data.items():
        if not isinstance(tags, dict):
            raise MetadataError(f"repositories entry {repo_name!r} must map tags to ids")
        for tag, layer_id in tags.items():
            if not isinstance(layer_id, str) or not layer_id:
                raise MetadataError(f"tag {repo_name}:{tag} has no layer id")
        index[repo_name] = dict(tags)
    return index


def validate_single_image(index: TagIndex) -> None:
    """Reject exports holding more than one image.

    An export may carry several tags, but within a repository they must
    all name the same layer.

    Raises:
        AmbiguousExportError: If a repository's tags resolve to different layers
    """
    for repo_name, tags in index.items():
        commits = set(tags.values())
        if len(commits) > 1:
            raise AmbiguousExportError(
                f"Repository {repo_name!r} in this export holds {len(commits)} images "
                "(full repository export with multiple images). Generate the export "
                "from a specific image ID or tag."
            )


def list_repo_tags(index: TagIndex) -> list[str]:
    """Flatten a tag index into "repo:tag" strings."""
    return [f"{repo}:{tag}" for repo, tags in index.items() for tag in tags]
