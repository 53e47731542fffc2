"""Layer graph of an unpacked docker save export."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterator

from .exceptions import AmbiguousExportError, LayerNotFoundError, MetadataError
from .tar.codec import extract_layer
from .tar.models import LayerConfig, LayerEntry
from .tar.reader import read_json_file
from .tar.tags import TagIndex, parse_tag_index, validate_single_image
from .utils.fs import force_rmtree
from .utils.identifiers import truncate_id

logger = logging.getLogger(__name__)

ROOT_ALIAS = "root"

# Command fragments docker records for the layers we anchor on
SQUASH_MARKER = "#(squash)"
FROM_MARKER = "#(nop) ADD file"

REPOSITORIES_FILE = "repositories"


class ExportGraph:
    """Layers of an export keyed by id, with parent and children indices.

    Every layer has at most one parent; in a single-image export the
    layers form one chain from the root (no parent) to the image's top.
    """

    def __init__(
        self,
        path: Path | str,
        entries: dict[str, LayerEntry] | None = None,
        repositories: TagIndex | None = None,
    ) -> None:
        self.path = Path(path)
        self.entries: dict[str, LayerEntry] = {}
        self.children: dict[str, list[str]] = {}
        self.repositories: TagIndex = repositories or {}

        for entry in (entries or {}).values():
            self.entries[entry.id] = entry
            self.children.setdefault(entry.id, [])
        for entry in self.entries.values():
            if entry.parent:
                self.children.setdefault(entry.parent, []).append(entry.id)
        for ids in self.children.values():
            ids.sort()

    @classmethod
    async def load(cls, path: Path | str) -> "ExportGraph":
        """Load the tag index and every layer's metadata from an unpacked export.

        Args:
            path: Directory holding ``repositories`` and one directory per layer

        Returns:
            ExportGraph

        Raises:
            MetadataError: If metadata is malformed, a parent reference dangles
                or the parent links form a cycle
        """
        path = Path(path)
        repositories = parse_tag_index(
            await read_json_file(path / REPOSITORIES_FILE, missing_ok=True)
        )

        entries: dict[str, LayerEntry] = {}
        for layer_path in sorted(p for p in path.iterdir() if p.is_dir()):
            json_path = layer_path / "json"
            if not json_path.exists():
                logger.debug("Ignoring %s: no layer json", layer_path.name)
                continue

            data = await read_json_file(json_path)
            try:
                config = LayerConfig.from_dict(data)
            except (TypeError, ValueError) as e:
                raise MetadataError(f"Malformed layer metadata {json_path}: {e}") from e

            if config.id != layer_path.name:
                raise MetadataError(
                    f"Layer directory {layer_path.name} holds metadata for {config.id}"
                )
            entries[config.id] = LayerEntry(config=config, path=layer_path)

        graph = cls(path, entries, repositories)
        graph.check()
        logger.debug("Loaded %d layers from %s", len(entries), path)
        return graph

    def check(self) -> None:
        """Verify parent links and tag targets resolve and the links are acyclic.

        Raises:
            MetadataError: On a dangling reference or a cycle
        """
        for entry in self.entries.values():
            if entry.parent and entry.parent not in self.entries:
                raise MetadataError(
                    f"Layer {truncate_id(entry.id)} references missing parent "
                    f"{truncate_id(entry.parent)}"
                )

        for repo_name, tags in self.repositories.items():
            for tag, layer_id in tags.items():
                if layer_id not in self.entries:
                    raise MetadataError(
                        f"Tag {repo_name}:{tag} references missing layer {truncate_id(layer_id)}"
                    )

        for entry in self.entries.values():
            list(self.ancestors(entry.id))

    def validate_single_image(self) -> None:
        """Reject exports with more than one image (see tags.validate_single_image)."""
        validate_single_image(self.repositories)

    def get(self, layer_id: str) -> LayerEntry:
        """Look up a layer by its exact id.

        Raises:
            LayerNotFoundError: If no layer has that id
        """
        try:
            return self.entries[layer_id]
        except KeyError:
            raise LayerNotFoundError(f"no layer matching {layer_id}") from None

    def get_by_id(self, layer_id: str) -> LayerEntry:
        """Look up a layer by id or by an unambiguous id prefix (short id).

        Raises:
            LayerNotFoundError: If nothing, or more than one layer, matches
        """
        if layer_id in self.entries:
            return self.entries[layer_id]

        matches = [e for e in self.entries.values() if layer_id and e.id.startswith(layer_id)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise LayerNotFoundError(f"layer id {layer_id} is ambiguous ({len(matches)} matches)")
        raise LayerNotFoundError(f"no layer matching {layer_id}")

    def root(self) -> LayerEntry | None:
        """Return the layer with no parent, or None for an empty graph."""
        roots = sorted(e.id for e in self.entries.values() if not e.parent)
        if not roots:
            return None
        return self.entries[roots[0]]

    def child_of(self, layer_id: str) -> LayerEntry | None:
        """Return the single child of a layer, or None at the chain's top.

        Raises:
            AmbiguousExportError: If the layer has several children
        """
        children = self.children.get(layer_id, [])
        if not children:
            return None
        if len(children) > 1:
            raise AmbiguousExportError(
                f"Layer {truncate_id(layer_id)} has {len(children)} children; "
                "exports with multiple branches are not supported"
            )
        return self.entries[children[0]]

    def walk(self) -> Iterator[LayerEntry]:
        """Iterate the chain from the root down to its top."""
        entry = self.root()
        while entry is not None:
            yield entry
            entry = self.child_of(entry.id)

    def last_child(self, from_id: str | None = None) -> LayerEntry | None:
        """Return the top of the chain (the image's newest layer).

        Args:
            from_id: Start the descent here instead of at the root
        """
        entry = self.get(from_id) if from_id else self.root()
        while entry is not None:
            child = self.child_of(entry.id)
            if child is None:
                break
            entry = child
        return entry

    def ancestors(self, layer_id: str) -> Iterator[LayerEntry]:
        """Iterate the parents of a layer, nearest first (the layer excluded).

        Raises:
            MetadataError: If the parent links loop
        """
        seen = {layer_id}
        entry = self.get(layer_id)
        while entry.parent:
            if entry.parent in seen:
                raise MetadataError(f"Parent links of layer {truncate_id(layer_id)} form a cycle")
            seen.add(entry.parent)
            entry = self.get(entry.parent)
            yield entry

    def chain(self, tip_id: str) -> list[LayerEntry]:
        """Return the layers from the root down to ``tip_id``, parents first."""
        layers = [self.get(tip_id)] + list(self.ancestors(tip_id))
        layers.reverse()
        return layers

    def between(self, start_id: str, end_id: str) -> list[LayerEntry]:
        """Return the layers after ``start_id`` up to and including ``end_id``.

        Parents come first. Empty when the two ids are the same layer.

        Raises:
            LayerNotFoundError: If ``start_id`` is not ``end_id`` or one of its ancestors
        """
        self.get(start_id)
        layers = []
        entry = self.get(end_id)
        while entry.id != start_id:
            layers.append(entry)
            if not entry.parent:
                raise LayerNotFoundError(
                    f"layer {truncate_id(start_id)} is not an ancestor of {truncate_id(end_id)}"
                )
            entry = self.get(entry.parent)
        layers.reverse()
        return layers

    def _first_with(self, marker: str) -> LayerEntry | None:
        for entry in self.walk():
            if marker in entry.config.created_by:
                return entry
        return None

    def first_squash_marker(self) -> LayerEntry | None:
        """Return the first layer created by an earlier squash, if any."""
        return self._first_with(SQUASH_MARKER)

    def first_from_boundary(self) -> LayerEntry | None:
        """Return the first base image layer (the rootfs ADD behind a FROM)."""
        return self._first_with(FROM_MARKER)

    def resolve_start(self, from_layer: str | None = None) -> LayerEntry:
        """Choose the layer to squash after.

        An explicit ``from_layer`` (an id, a short id or "root") wins. Otherwise
        the first squash marker is used, then the first FROM boundary, then
        the root.

        Raises:
            LayerNotFoundError: If ``from_layer`` does not resolve, or the graph is empty
        """
        if from_layer:
            if from_layer == ROOT_ALIAS:
                start = self.root()
            else:
                start = self.get_by_id(from_layer)
        else:
            start = self.first_squash_marker() or self.first_from_boundary() or self.root()

        if start is None:
            raise LayerNotFoundError(f"no layer matching {from_layer or ROOT_ALIAS}")
        return start

    def add(self, entry: LayerEntry) -> None:
        """Register a new layer (its parent must already be present)."""
        if entry.parent and entry.parent not in self.entries:
            raise LayerNotFoundError(f"no layer matching {entry.parent}")
        self.entries[entry.id] = entry
        self.children.setdefault(entry.id, [])
        if entry.parent:
            self.children[entry.parent].append(entry.id)
            self.children[entry.parent].sort()

    def reparent(self, layer_id: str, parent_id: str) -> None:
        """Move a layer under a new parent, keeping the children index in step."""
        entry = self.get(layer_id)
        self.get(parent_id)
        if entry.parent:
            self.children[entry.parent].remove(layer_id)
        entry.config.parent = parent_id
        self.children[parent_id].append(layer_id)
        self.children[parent_id].sort()

    def discard(self, layer_id: str) -> None:
        """Drop a layer that has no children left."""
        entry = self.get(layer_id)
        if self.children.get(layer_id):
            raise MetadataError(f"Layer {truncate_id(layer_id)} still has children")
        if entry.parent:
            self.children[entry.parent].remove(layer_id)
        del self.children[layer_id]
        del self.entries[layer_id]

    async def extract(self, entry: LayerEntry) -> None:
        """Extract one layer's diff archive into its ``layer`` directory."""
        loop = asyncio.get_event_loop()
        count = await loop.run_in_executor(
            None, extract_layer, entry.archive_path, entry.tree_path
        )
        entry.layer_dir = entry.tree_path
        logger.debug("Extracted %s (%d entries)", truncate_id(entry.id), count)

    async def extract_all(self, checkpoint: Callable[[], None] | None = None) -> None:
        """Extract every layer of the export.

        Args:
            checkpoint: Called before each layer; raising from it stops extraction
        """
        for entry in list(self.entries.values()):
            if checkpoint is not None:
                checkpoint()
            await self.extract(entry)

    async def remove_extracted(self) -> None:
        """Delete every extracted diff tree; layers never extracted are skipped."""
        loop = asyncio.get_event_loop()
        for entry in self.entries.values():
            if entry.tree_path.exists() or entry.tree_path.is_symlink():
                await loop.run_in_executor(None, force_rmtree, entry.tree_path)
            entry.layer_dir = None
