# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

""".env support for `!env` config values.

The collector API key usually lives in the `.env` next to the config file
rather than in the YAML itself.  A `.env` in the working directory is read
after it and can only add variables, never override them.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once() -> None:
    """Load the config-directory and working-directory .env files once."""
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    # Imported here to avoid a cycle: config imports this module.
    from proxynode.config import get_dotenv_path

    xdg_env = get_dotenv_path()
    if xdg_env.exists():
        load_dotenv(xdg_env)
        logger.debug("Loaded .env from %s", xdg_env)

    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.debug("Loaded .env from %s", cwd_env)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Allow the next load_dotenv_once() call to load again (tests)."""
    global _dotenv_loaded
    _dotenv_loaded = False
