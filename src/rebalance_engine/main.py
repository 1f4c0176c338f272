"""
Rebalance Engine Service

Runs the durable task worker and, when enabled, the HTTP trigger API in one
event loop.
"""
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from rebalance_engine.api import create_app
from rebalance_engine.config import load_config
from rebalance_engine.container import ServiceContainer, build_container
from rebalance_engine.logger import AppLogger, configure_root_logger

app_logger = AppLogger(__name__)


class RebalanceService:
    """Main application class owning the worker and API server lifecycle"""

    def __init__(self, container: ServiceContainer):
        self.container = container
        self.worker = container.worker()
        self.server: Optional[uvicorn.Server] = None
        self.running = False

    async def start(self):
        app_logger.log_info("Starting rebalance engine service...")
        self.running = True

        api_config = self.container.config.api()
        coroutines = [self.worker.start()]
        if api_config["enabled"]:
            self.server = uvicorn.Server(uvicorn.Config(
                create_app(self.container),
                host=api_config["host"],
                port=api_config["port"],
                log_config=None,
            ))
            coroutines.append(self.server.serve())
            app_logger.log_info(f"API listening on {api_config['host']}:{api_config['port']}")

        await asyncio.gather(*coroutines)

    async def stop(self):
        if not self.running:
            return

        app_logger.log_info("Stopping rebalance engine service...")
        self.running = False

        try:
            if self.server:
                self.server.should_exit = True
            await self.worker.stop()
            await self.container.notifier().drain()
            await self.container.task_queue().close()
            store = self.container.record_store()
            if hasattr(store, "close"):
                await store.close()
            app_logger.log_info("Rebalance engine service stopped successfully")
        except Exception as e:
            app_logger.log_error(f"Error stopping rebalance engine service: {e}")


def setup_signal_handlers(service: RebalanceService):
    """Set up signal handlers for graceful shutdown"""
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals):
        app_logger.log_info(f"Received {sig.name} signal, initiating graceful shutdown...")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)


async def main():
    config_path = Path(os.getenv('CONFIG_PATH', 'config.yaml'))
    try:
        app_config = load_config(config_path)
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    configure_root_logger(app_config.logging.level, app_config.logging.format)

    service = RebalanceService(build_container(app_config))
    setup_signal_handlers(service)

    try:
        await service.start()
    except Exception as e:
        app_logger.log_error(f"Unhandled exception in main: {e}", exc_info=True)
        await service.stop()
        sys.exit(1)


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
