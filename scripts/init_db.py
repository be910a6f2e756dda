from fiatgate.db import create_db_and_tables
from fiatgate.core.logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info("Creating settlement gate tables")
    create_db_and_tables()
    logger.info("Tables created")
