import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .state import StateManager
from .clients.abs_client import ABSClient
from .engine import SessionController
from .search import ItemResolver
from .skill import AudiobookSkill
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SkillService:
    def __init__(self):
        self.state_manager = StateManager(settings.STATE_PATH)
        self.abs = ABSClient()
        self.skill = AudiobookSkill(
            self.state_manager,
            SessionController(self.abs),
            ItemResolver(self.abs),
        )

        # Link skill to server module
        server.skill = self.skill

    async def start(self):
        config = uvicorn.Config(
            server.app,
            host=settings.HTTP_SERVER_HOST,
            port=settings.HTTP_SERVER_PORT,
            log_level="warning",
        )
        logger.info(f"Serving skill on {settings.HTTP_SERVER_HOST}:{settings.HTTP_SERVER_PORT} for {settings.ABS_BASE_URL}")
        try:
            await uvicorn.Server(config).serve()
        except asyncio.CancelledError:
            pass
        finally:
            await self.abs.aclose()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def main():
    if not settings.ABS_TOKEN:
        logger.error("ABS_TOKEN is not set; refusing to start")
        sys.exit(1)

    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SkillService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    main()
