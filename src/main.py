#!/usr/bin/env python3
"""
Mesh Router Agent - Main Entry Point

This agent:
1. Waits for mesh-router-backend to become reachable
2. Detects its public IP and registers a route for it
3. Refreshes the route (and the detected IP) on a fixed interval
4. Keeps a backend-issued TLS client certificate renewed
"""
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent))

from config import load_config
from daemon.lifecycle import LifecycleController
from errors import ConfigError, DiscoveryExhausted, PersistenceError, RegistrationFailed

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mesh-router-agent")


async def main() -> int:
    """Main entry point. Returns the process exit status."""
    try:
        config = load_config()
        controller = LifecycleController.from_config(config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    identity = controller.identity
    health_check = config.health_check()

    logger.info(f"mesh-router-agent v{config.agent_version} starting...")
    logger.info(f"Backend URL: {identity.backend_url}")
    logger.info(f"User ID: {identity.user_id}")
    logger.info(f"Target port: {config.target_port}")
    logger.info(f"Route priority: {config.route_priority}")
    logger.info(
        f"Refresh interval: {config.refresh_interval}s "
        f"({round(config.refresh_interval / 60)} min)"
    )
    if health_check:
        host = f" (host: {health_check.host})" if health_check.host else ""
        logger.info(f"Health check: {health_check.path}{host}")

    task = asyncio.ensure_future(controller.run())

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        controller.stop()
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await task
    except asyncio.CancelledError:
        logger.info("mesh-router-agent stopped")
        return 0
    except (DiscoveryExhausted, RegistrationFailed, PersistenceError) as e:
        logger.error(f"Exiting: {e}")
        return 1
    finally:
        await controller.client.close()

    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
