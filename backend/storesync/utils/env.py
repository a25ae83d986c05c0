"""Environment helpers for the database module."""

import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load variables from a local .env file without overwriting existing ones.

    WHAT:
        Reads backend/.env (or the nearest .env found by python-dotenv) into os.environ.
    WHY:
        Developers keep DATABASE_URL and SHOPIFY_* credentials in .env;
        deployed environments export real variables, which must win.

    Returns:
        True if a .env file was found and loaded
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
