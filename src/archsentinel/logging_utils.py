from __future__ import annotations

import logging
import sys


def configure_logging(*, verbose: bool, quiet: bool) -> None:
    """
    Configure process-wide logging defaults for CLI usage.

    - Default: INFO
    - --verbose: DEBUG
    - --quiet: WARNING

    Logs go to stderr so the JSON session payload on stdout stays parseable.
    """

    if verbose and quiet:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    fmt = "ArchSentinel: %(message)s"
    if verbose:
        fmt = "ArchSentinel [%(levelname)s] %(name)s (%(threadName)s): %(message)s"

    logging.basicConfig(level=level, format=fmt, stream=sys.stderr, force=True)
