"""
Main entry point for the playbook operator.

Wires the resource store, the action plugin, the reconciliation controller,
the lifecycle dispatcher and the input plugins together, and shuts them
down in order on SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import Config, get_config
from controller import ControllerConfig, ReconciliationController
from db import DatabaseManager
from dispatcher import LifecycleDispatcher
from events import EventBus
from metrics import ControllerMetrics
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.metrics: Optional[ControllerMetrics] = None
        self.controller: Optional[ReconciliationController] = None
        self.dispatcher: Optional[LifecycleDispatcher] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing playbook operator")

        register_builtin_plugins()
        registry = get_registry()

        # Initialize database
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

        self.metrics = ControllerMetrics()
        if self.config.metrics.enabled:
            self.metrics.start_server(self.config.metrics.port)

        # The registry merges PLUGIN_CONFIGS over the plugin's own env config
        ctrl_config = self.config.controller
        action_plugin = await registry.get_action_plugin(
            ctrl_config.action_plugin,
            self.config.plugins.get_plugin_config(ctrl_config.action_plugin),
        )

        self.controller = ReconciliationController(
            store=self.db,
            action_plugin=action_plugin,
            metrics=self.metrics,
            config=ControllerConfig(
                status_update_attempts=ctrl_config.status_update_attempts,
                max_status_message_length=ctrl_config.max_status_message_length,
                parameter_schema=ctrl_config.parameter_schema,
            ),
            event_bus=self.event_bus,
        )
        self.dispatcher = LifecycleDispatcher(
            self.controller,
            max_concurrent=ctrl_config.max_concurrent_reconciles,
            shutdown_grace_period=ctrl_config.shutdown_grace_period,
        )

        # Determine which input plugins to load
        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin = await registry.get_input_plugin(
                plugin_name, self.config.plugins.get_plugin_config(plugin_name)
            )
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application and run until stopped."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info(
            f"Starting playbook operator with action plugin "
            f"'{self.controller.action_plugin.name}'"
        )

        tasks = [asyncio.create_task(self.dispatcher.start(self.event_bus))]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """
        Stop the application gracefully.

        Input plugins stop first so no new events arrive, then in-flight
        reconciliations get the grace period before the store is closed.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping playbook operator")
        self.running = False

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.dispatcher:
            await self.dispatcher.stop()

        if self.event_bus:
            await self.event_bus.close()

        if self.db:
            await self.db.close()

        logger.info("Playbook operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
