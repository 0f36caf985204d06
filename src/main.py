"""
Main entry point for the tug operator.

Wires configuration, the store, the plugin registry, the event bus, the
controller and the input plugins together, then runs until signalled.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

from config import get_config
from controller import Controller, ControllerConfig
from db import DatabaseManager
from events import EventBus
from plugins.base import ResourceRequest
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level)
        logger.info("Initializing tug operator")

        register_builtin_plugins()
        registry = get_registry()

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()

        # Providers load their own env config; PLUGIN_CONFIGS overrides it
        provider_configs: Dict[str, Dict[str, Any]] = {}
        for provider_name in registry.list_providers():
            provider_configs[provider_name] = self.config.plugins.get_plugin_config(
                provider_name
            )

        enabled_providers = self.config.plugins.enabled_providers
        for provider_name in enabled_providers:
            if provider_name not in registry.list_providers():
                logger.warning(f"Provider '{provider_name}' not found, skipping")

        ctrl_config = self.config.controller
        controller_config = ControllerConfig(
            poll_interval=ctrl_config.poll_interval,
            scan_interval=ctrl_config.scan_interval,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            enabled_providers=enabled_providers,
            provider_configs=provider_configs,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )

        self.controller = Controller(
            db_manager=self.db,
            registry=registry,
            config=controller_config,
            event_bus=self.event_bus,
        )

        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin_config = registry.get_input_plugin_config(plugin_name)
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting tug operator")

        # The controller watches the event bus; this only traces submissions.
        async def on_resource_event(event_type: str, request: ResourceRequest):
            logger.debug(
                f"Resource {event_type}: {request.kind} "
                f"{request.namespace}/{request.name}"
            )

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(on_resource_event)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping tug operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.event_bus:
            await self.event_bus.close()

        if self.db:
            await self.db.close()

        logger.info("Tug operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
