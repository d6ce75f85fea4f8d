"""
Pre-start check

Waits for the database to accept connections before the API or the worker
starts, then creates the subscription tables when they are missing.

Called from the container entry point:
    python -m certlab.backend_pre_start
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from certlab.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # five minutes
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def init(db_engine: Engine) -> None:
    """
    Open a session and run ``SELECT 1``; tenacity retries until it works.
    """
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def main() -> None:
    logger.info("Initializing service")
    init(engine)
    with Session(engine) as session:
        init_db(session)
    logger.info("Service finished initializing")


if __name__ == "__main__":  # pragma: no cover
    main()
