"""CLI logging setup: plain %(message)s format on stdout."""

import logging
import sys

from clawcontrol.redact import SecretRedactingFilter


def setup_cli_logging(verbose=False):
    """Configure the root logger so log output reads like print().

    The redacting filter sits on the handler so records from every
    logger pass through it.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    # asyncssh is chatty at INFO (one line per channel open/close)
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if verbose else logging.WARNING)
