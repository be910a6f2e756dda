"""
Run one settlement sweep from the command line.

Usage:
    python -m scripts.run_sweep
"""

from fiatgate.container import build_container
from fiatgate.core.logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    container = build_container()
    try:
        result = container.scheduler.run_sweep()
        logger.info("Sweep finished", **result.to_dict())
    finally:
        container.close()
