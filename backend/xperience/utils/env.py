"""Local .env loading for development and scripts."""

import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Load backend/.env into os.environ without overriding real env vars.

    WHAT: Fills in DATABASE_URL, WHOP_* etc. when running locally
    WHY: Deployed environments inject variables directly; a stray .env must
         never shadow them
    """
    # True whenever a file was found, even if every key was already set
    if load_dotenv(override=False):
        logger.info("[ENV] Loaded local .env (existing variables kept)")
    else:
        logger.debug("[ENV] No local .env file found")
