"""Tests for repository:tag parsing and the repositories tag index."""

import pytest

from docker_squash.exceptions import AmbiguousExportError, MetadataError, TagFormatError
from docker_squash.tar.tags import (
    list_repo_tags,
    parse_repository_tag,
    parse_tag_index,
    validate_single_image,
)


def test_parse_repository_tag():
    """Test parsing repository:tag strings."""
    # Standard cases
    assert parse_repository_tag("nginx:alpine") == ("nginx", "alpine")
    assert parse_repository_tag("myrepo:stable") == ("myrepo", "stable")
    assert parse_repository_tag("my-app:v1.0.0") == ("my-app", "v1.0.0")

    # Registry URLs with ports
    assert parse_repository_tag("localhost:5000/myapp:latest") == (
        "localhost:5000/myapp",
        "latest",
    )
    assert parse_repository_tag("registry.example.com:443/team/app:v2") == (
        "registry.example.com:443/team/app",
        "v2",
    )

    # No tag (defaults to latest)
    assert parse_repository_tag("nginx") == ("nginx", "latest")
    assert parse_repository_tag("localhost:5000/myapp") == ("localhost:5000/myapp", "latest")


@pytest.mark.parametrize("value", ["myrepo:", ":stable", ":"])
def test_parse_repository_tag_rejects_empty_parts(value):
    """Test that an empty repository or tag half is rejected."""
    with pytest.raises(TagFormatError, match="bad tag format"):
        parse_repository_tag(value)


def test_parse_tag_index():
    """Test validation of a repositories document."""
    data = {"nginx": {"alpine": "a" * 64, "latest": "a" * 64}}
    assert parse_tag_index(data) == data
    assert parse_tag_index(None) == {}
    assert parse_tag_index({}) == {}


@pytest.mark.parametrize(
    "data",
    [
        ["nginx"],
        {"nginx": "latest"},
        {"nginx": {"latest": ""}},
        {"nginx": {"latest": 12}},
    ],
)
def test_parse_tag_index_malformed(data):
    """Test malformed repositories documents."""
    with pytest.raises(MetadataError):
        parse_tag_index(data)


def test_validate_single_image():
    """Several tags are fine as long as each repository names one layer."""
    validate_single_image({})
    validate_single_image({"app": {"latest": "x", "v1": "x"}, "other/app": {"latest": "y"}})


def test_validate_single_image_rejects_repository_export():
    """Test rejection of a full repository export."""
    index = {"app": {"latest": "x", "v1": "y"}}

    with pytest.raises(AmbiguousExportError, match="multiple images"):
        validate_single_image(index)


def test_list_repo_tags():
    """Test flattening the tag index."""
    index = {"nginx": {"alpine": "x", "latest": "x"}, "app": {"v1": "y"}}
    assert list_repo_tags(index) == ["nginx:alpine", "nginx:latest", "app:v1"]
    assert list_repo_tags({}) == []
