"""CLI logging setup: plain %(message)s format with secret redaction."""

import logging
import sys

from stackvm.redact import SecretRedactingFilter


def setup_cli_logging(verbose=False):
    """Configure the root logger for CLI commands.

    Output looks like print(); ``verbose`` adds DEBUG records (HTTP calls).
    The redaction filter sits on the handler so records from every logger
    pass through it.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
