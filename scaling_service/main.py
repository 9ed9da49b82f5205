# Entrypoint for the scaling service
# Uses environment variables for configuration and runs the sync job
# Includes signal handling for graceful shutdown

import logging
import signal
import sys

from scaling_service.config import JobSettings
from scaling_service.errors import SyncFailedError
from scaling_service.syncer import ScalingJob


def setup_logging():
    """Configure logging with a standard format."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )


def build_position_store(settings):
    """Position store selected by POSITION_STORE."""
    if settings.position_store == "redis":
        from scaling_service.position_store import RedisPositionStore
        return RedisPositionStore(host=settings.redis_host, port=settings.redis_port)
    if settings.position_store == "iceberg":
        from scaling_service.iceberg_position_store import IcebergPositionStore
        return IcebergPositionStore()
    raise RuntimeError(f"Unknown position store {settings.position_store}")


def main():
    """Main entrypoint for the scaling service."""
    setup_logging()
    logger = logging.getLogger("main")

    settings = JobSettings.from_env()
    logger.info(f"Starting scaling job {settings.job_id} in {settings.mode} mode")
    logger.info(f"Source: {settings.source.host}:{settings.source.port}/{settings.source.database}")
    logger.info(f"Target: {settings.target.host}:{settings.target.port}/{settings.target.database}")
    logger.info(f"Concurrency: {settings.concurrency}, position store: {settings.position_store}")

    job = ScalingJob(settings, build_position_store(settings))

    # Handle SIGTERM/SIGINT for graceful shutdown
    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully.")
        job.stop()
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        summary = job.run()
    except SyncFailedError as e:
        logger.error(f"Scaling job {settings.job_id} failed: {e.summary}")
        return 1
    if summary is not None:
        logger.info(f"Scaling job {settings.job_id} finished: {summary}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
