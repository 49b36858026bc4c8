"""Entry point for running the worker: python -m chatstream.queue"""

import asyncio
import os
import sys

# Unbuffered output so container log collectors see lines immediately
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from chatstream.core.logging import get_logger, setup_logging  # noqa: E402

setup_logging()
logger = get_logger("chatstream.queue")


def main() -> int:
    from chatstream.queue.consumer import run_worker

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.error(f"Worker crashed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
