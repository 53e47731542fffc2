"""docker-squash command line interface."""

import asyncio
import logging
import sys

import click

from . import __version__
from .core.types import SquashOptions
from .exceptions import SquashCancelledError, SquashError
from .pipeline import run
from .tar.writer import format_history

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-i",
    "--input",
    "input_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Read from a tar archive file, instead of STDIN.",
)
@click.option(
    "-o",
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write to a file, instead of STDOUT.",
)
@click.option("-t", "--tag", default=None, help="Repository name and tag for the new image.")
@click.option(
    "--from",
    "from_layer",
    default=None,
    help='Squash from layer ID, or "root" (default: first FROM layer).',
)
@click.option(
    "--keep-temp",
    is_flag=True,
    envvar="DOCKER_SQUASH_KEEP_TEMP",
    help="Keep the temp dir when done (useful for debugging).",
)
@click.option(
    "--tmpdir",
    "temp_root",
    type=click.Path(file_okay=False),
    envvar="DOCKER_SQUASH_TMPDIR",
    default=None,
    help="Where to create the working directory.",
)
@click.option("--debug", is_flag=True, envvar="DOCKER_SQUASH_DEBUG", help="Verbose logging.")
@click.version_option(__version__, "-v", "--version", message="%(version)s")
def main(
    input_path: str | None,
    output_path: str | None,
    tag: str | None,
    from_layer: str | None,
    keep_temp: bool,
    temp_root: str | None,
    debug: bool,
) -> None:
    """Squash the layers of a docker save archive on STDIN and stream it to STDOUT."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s %(message)s",
        stream=sys.stderr,
    )

    options = SquashOptions(
        input_path=input_path,
        output_path=output_path,
        tag=tag,
        from_layer=from_layer,
        keep_temp=keep_temp,
        temp_root=temp_root,
    )

    try:
        result = asyncio.run(run(options))
    except SquashCancelledError as e:
        logger.error("%s", e)
        sys.exit(EXIT_INTERRUPTED)
    except SquashError as e:
        logger.error("%s", e)
        sys.exit(EXIT_FAILURE)

    click.echo(format_history(result.history), err=True)


if __name__ == "__main__":
    main()
