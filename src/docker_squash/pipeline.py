"""End-to-end squash of a docker save archive."""

import logging
import sys
import tempfile
from pathlib import Path

from .core.cleanup import CleanupWatcher
from .core.types import SquashOptions, SquashResult
from .graph import ExportGraph
from .squash import SquashEngine
from .tar.reader import ExportSource, unpack_export
from .tar.tags import list_repo_tags
from .tar.writer import ExportSink, ImageWriter
from .utils.identifiers import truncate_id

logger = logging.getLogger(__name__)


async def squash_image(
    options: SquashOptions,
    watcher: CleanupWatcher,
    source: ExportSource | None = None,
    sink: ExportSink | None = None,
) -> SquashResult:
    """Squash an image archive inside ``watcher``'s working directory.

    Args:
        options: Run settings
        watcher: Cleanup scope owning the working directory
        source: Input stream used when ``options.input_path`` is unset
        sink: Output stream used when ``options.output_path`` is unset

    Returns:
        SquashResult describing the new layer and history

    Raises:
        SquashError: Any failure; nothing is written past the first error
    """
    repository_tag = options.repository_tag()
    source = options.input_path or source or sys.stdin.buffer
    sink = options.output_path or sink or sys.stdout.buffer
    export_dir = watcher.workdir / "export"

    async with watcher.stage():
        logger.info("Reading image archive")
        await unpack_export(source, export_dir)
        graph = await ExportGraph.load(export_dir)
        # Multi-image exports are rejected before any layer is touched
        graph.validate_single_image()
        start = graph.resolve_start(options.from_layer)
        logger.info("Squashing after %s %s", truncate_id(start.id), start.config.created_by)

    async with watcher.stage():
        logger.info("Extracting %d layers", len(graph.entries))
        await graph.extract_all(checkpoint=watcher.raise_if_cancelled)

    engine = SquashEngine(graph)
    async with watcher.stage():
        new_entry = await engine.insert_layer(start.id)
        tip = graph.last_child(new_entry.id)
        logger.info(
            "Inserted new layer %s after %s",
            truncate_id(new_entry.id),
            truncate_id(start.id),
        )

    async with watcher.stage():
        merged = await engine.squash(new_entry.id, tip.id)
        if not merged:
            logger.warning("Nothing to squash above %s", truncate_id(start.id))
        logger.info("Packing squashed layer %s", truncate_id(new_entry.id))
        await engine.commit_layer(new_entry, tip)

    async with watcher.stage():
        logger.debug("Removing extracted layers")
        await graph.remove_extracted()
        for entry in reversed(merged):
            graph.discard(entry.id)

    writer = ImageWriter(graph)
    async with watcher.stage():
        writer.retarget_tags(new_entry.id)
        if repository_tag:
            await writer.write_tag(*repository_tag, new_entry.id)
        tags = list_repo_tags(graph.repositories)
        if tags:
            logger.info("Repository tags: %s", ", ".join(tags))
        if isinstance(sink, (str, Path)):
            logger.info("Writing new image to %s", sink)
        else:
            logger.info("Writing new image to stream")
        await writer.serialize(new_entry.id, sink)

    logger.info("Done. New image created.")
    return SquashResult(
        layer_id=new_entry.id,
        start_id=start.id,
        merged_ids=[entry.id for entry in merged],
        repository_tag=repository_tag,
        history=writer.history(new_entry.id, squashed_id=new_entry.id),
    )


async def run(
    options: SquashOptions,
    source: ExportSource | None = None,
    sink: ExportSink | None = None,
) -> SquashResult:
    """Squash an image in a fresh working directory that is always cleaned up.

    The working directory is removed on success, on error and on SIGINT or
    SIGTERM, unless ``options.keep_temp`` is set.
    """
    # Fail on a malformed tag before creating anything
    options.repository_tag()

    workdir = Path(tempfile.mkdtemp(prefix="docker-squash-", dir=options.temp_root))
    logger.debug("Working directory %s", workdir)
    async with CleanupWatcher(workdir, keep=options.keep_temp) as watcher:
        return await squash_image(options, watcher, source, sink)
