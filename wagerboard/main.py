"""FastAPI application entry point."""
import asyncio
import time

from fastapi import FastAPI, Request
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager

from wagerboard.config import get_settings
from wagerboard.version import APP_VERSION
from wagerboard.routers import health
from wagerboard.services.cache_service import CacheService
from wagerboard.services.leaderboard_service import LeaderboardService
from wagerboard.services.upstream_client import UpstreamClient

# Create logs directory if it doesn't exist
logs_dir = Path("logs")
logs_dir.mkdir(exist_ok=True)

log_file = logs_dir / "wagerboard.log"
sql_log_file = logs_dir / "wagerboard_sql.log"
api_log_file = logs_dir / "wagerboard_api.log"

# Rotating file handler for general logs (1MB max size, keep 5 backup files)
rotating_handler = RotatingFileHandler(
    log_file,
    maxBytes=1024 * 1024,
    backupCount=5,
    encoding='utf-8',
)
rotating_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

sql_rotating_handler = RotatingFileHandler(
    sql_log_file,
    maxBytes=1024 * 1024,
    backupCount=5,
    encoding='utf-8',
)
sql_rotating_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

api_rotating_handler = RotatingFileHandler(api_log_file, maxBytes=2 * 1024 * 1024, backupCount=5, encoding='utf-8')
api_rotating_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

# Force=True overrides any configuration uvicorn already installed
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        rotating_handler,
    ],
    force=True,
)

logger = logging.getLogger(__name__)

api_logger = logging.getLogger("wagerboard.api")
api_logger.handlers.clear()
api_logger.addHandler(api_rotating_handler)
api_logger.setLevel(logging.INFO)
api_logger.propagate = False

# SQL statements go to their own file
sqlalchemy_logger = logging.getLogger("sqlalchemy.engine.Engine")
sqlalchemy_logger.handlers.clear()
sqlalchemy_logger.addHandler(sql_rotating_handler)
sqlalchemy_logger.setLevel(logging.INFO)
sqlalchemy_logger.propagate = False


class SQLTransactionFilter(logging.Filter):
    def filter(self, record):
        if record.levelno == logging.INFO and hasattr(record, 'getMessage'):
            message = record.getMessage()

            if any(keyword in message for keyword in ['ROLLBACK', 'BEGIN', 'COMMIT', 'generated in']):
                return False

            # Collapse multi-line statements onto one line
            if any([kw in message for kw in ['SELECT', 'UPDATE', 'INSERT']]):
                record.msg = ' '.join(message.split())
                record.args = ()

        return True


sqlalchemy_logger.addFilter(SQLTransactionFilter())

settings = get_settings()


async def run_leaderboard_sync(leaderboard_service: LeaderboardService) -> None:
    """Refresh the cached leaderboard and reconcile profiles against it."""
    from wagerboard.database import AsyncSessionLocal
    from wagerboard.services.profile_reconciler import ProfileReconciler

    leaderboard = await leaderboard_service.get_leaderboard(force_refresh=True)
    if leaderboard.status != "success":
        logger.warning("Leaderboard sync skipped: upstream payload could not be ranked")
        return

    async with AsyncSessionLocal() as db:
        result = await ProfileReconciler(db, leaderboard_service).sync_all(leaderboard)
    logger.info(f"Leaderboard sync complete: {result.to_dict()}")


async def leaderboard_sync_cycle(leaderboard_service: LeaderboardService):
    """
    Background task that keeps profiles in line with the affiliate leaderboard.

    Waits a short startup delay, then syncs every
    ``leaderboard_sync_interval_minutes``.
    """
    startup_delay = settings.leaderboard_sync_startup_delay_seconds
    logger.info(f"Leaderboard sync cycle starting in {startup_delay}s")
    await asyncio.sleep(startup_delay)

    logger.info("Leaderboard sync cycle starting main loop")

    while True:
        try:
            await run_leaderboard_sync(leaderboard_service)
        except Exception as e:
            logger.error(f"Leaderboard sync cycle error: {e}")

        await asyncio.sleep(settings.leaderboard_sync_interval_minutes * 60)


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    """Manage application startup and shutdown tasks."""
    from wagerboard.database import init_models

    logger.info("=" * 60)
    logger.info(f"Wagerboard API {APP_VERSION} starting")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Database: {settings.database_url.split('@')[-1] if '@' in settings.database_url else 'SQLite'}")
    logger.info(f"Upstream: {settings.upstream_api_url}")
    logger.info("=" * 60)

    await init_models()

    client = UpstreamClient(settings)
    if not client.has_api_token():
        logger.warning("UPSTREAM_API_TOKEN is not set, upstream requests will be rejected")
    cache = CacheService(
        default_ttl=settings.cache_default_ttl_seconds,
        error_ttl=settings.cache_error_ttl_seconds,
    )
    leaderboard_service = LeaderboardService(client, cache, settings)

    app_instance.state.upstream_client = client
    app_instance.state.cache_service = cache
    app_instance.state.leaderboard_service = leaderboard_service

    sync_task = None
    if settings.leaderboard_sync_enabled:
        try:
            sync_task = asyncio.create_task(leaderboard_sync_cycle(leaderboard_service))
            logger.info(
                f"Leaderboard sync task started (runs every {settings.leaderboard_sync_interval_minutes} minutes)"
            )
        except Exception as e:
            logger.error(f"Failed to start leaderboard sync cycle: {e}")
    else:
        logger.info("Leaderboard sync is disabled, not starting cycle")

    try:
        yield
    finally:
        logger.info("Shutting down background tasks...")

        if sync_task:
            sync_task.cancel()
            try:
                await asyncio.wait_for(sync_task, timeout=2.0)
            except asyncio.CancelledError:
                logger.info("Leaderboard sync task cancelled")
            except asyncio.TimeoutError:
                logger.warning("Leaderboard sync task did not cancel within timeout, forcing shutdown")
            except Exception as e:
                logger.error(f"Error cancelling leaderboard sync task: {e}")

        try:
            await client.close()
            logger.info("Upstream client session closed")
        except Exception as e:
            logger.error(f"Error closing upstream client: {e}")

        logger.info("Wagerboard API shutting down")


app = FastAPI(
    title="Wagerboard API",
    description="Affiliate wager leaderboard sync",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with status code and timing to the API log file."""
    start_time = time.time()
    client_ip = request.client.host if request.client else "unknown"
    method = request.method
    path = request.url.path
    request_id = f"{method}:{path}:{int(start_time * 1000) % 100000}"

    api_logger.info(f">> {request_id} | START | {method} {path} | IP: {client_ip}")

    try:
        response = await call_next(request)
    except Exception as e:
        api_logger.error(
            f"<< {request_id} | EXCEPTION | {method} {path} | "
            f"Error: {str(e)[:100]} | Time: {time.time() - start_time:.3f}s"
        )
        raise

    api_logger.info(
        f"<< {request_id} | COMPLETE | {method} {path} | "
        f"Status: {response.status_code} | Time: {time.time() - start_time:.3f}s"
    )
    return response


app.include_router(health.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Wagerboard API",
        "version": APP_VERSION,
        "environment": settings.environment,
        "docs": "/docs",
    }
