#!/usr/bin/env python3
"""
FPL Refresh Service - Main Entry Point

Runs the refresh workers and their scheduler, and optionally the HTTP
trigger surface in the same event loop. Start with `python -m fpl_refresh.main`.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

# Load .env from backend directory before Config() is used
from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[2] / ".env")

import uvicorn

from fpl_refresh.api.main import app, set_context
from fpl_refresh.config import Config
from fpl_refresh.orchestrator_context import OrchestratorContext
from fpl_refresh.utils.logger import setup_logging

logger = logging.getLogger(__name__)


class FPLRefreshService:
    """Main service class for the refresh engine."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.context: Optional[OrchestratorContext] = None
        self.server: Optional[uvicorn.Server] = None
        self.running = False
        self._stop = asyncio.Event()

    async def start(self):
        """Start workers, scheduler and (when enabled) the API, then wait for a signal."""
        logger.info("Starting FPL Refresh Service", extra={
            "version": "1.0.0",
            "environment": self.config.environment,
            "queue_backend": self.config.queue_backend,
            "api_enabled": self.config.api_enabled
        })

        try:
            self.context = OrchestratorContext.from_config(self.config)
            await self.context.initialize()
            await self.context.start()

            # Set up signal handlers for graceful shutdown
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._handle_shutdown, sig)

            self.running = True

            if self.config.api_enabled:
                set_context(self.context)
                self.server = uvicorn.Server(uvicorn.Config(
                    app,
                    host=self.config.api_host,
                    port=self.config.api_port,
                    log_config=None,
                ))
                # uvicorn installs its own signal handlers and returns on SIGINT/SIGTERM
                await self.server.serve()
            else:
                await self._stop.wait()

        except Exception as e:
            logger.error("Fatal error in refresh service", extra={
                "error": str(e),
                "error_type": type(e).__name__
            }, exc_info=True)
            raise
        finally:
            await self.shutdown()

    def _handle_shutdown(self, signum):
        """Handle shutdown signals gracefully."""
        logger.info("Received shutdown signal", extra={"signal": signum})
        self.running = False
        self._stop.set()
        if self.server is not None:
            self.server.should_exit = True

    async def shutdown(self):
        self.running = False
        if self.context is not None:
            await self.context.shutdown()
            self.context = None
        set_context(None)


async def main():
    """Main entry point."""
    config = Config()
    setup_logging(config)

    service = FPLRefreshService(config)
    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error("Service crashed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
