import argparse
import asyncio
import signal
from datetime import datetime

from core.monitoring_system import MonitoringSystem
from utils.config import Config
from utils.logger import MonitorLogger


class InitMonitoringSystem:
    def __init__(self, logger: MonitorLogger = None):
        self.monitor = None
        self.logger = logger
        self._shutdown_requested = False
        self._shutdown_event = asyncio.Event()

    def handle_shutdown(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}. Starting graceful shutdown...")
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run_monitoring_system(self, config: Config, export_on_exit: bool = False) -> None:
        """Run the monitor until a shutdown signal arrives"""
        try:
            self.monitor = MonitoringSystem(config, logger=self.logger)
            await self.monitor.start()
            self.logger.info("Monitoring system started successfully")

            await self._shutdown_event.wait()
            self.logger.info("Shutdown requested, initiating shutdown sequence")

        except Exception as e:
            self.logger.error(f"Error in monitoring system: {e}")
            raise
        finally:
            if self.monitor is not None:
                if export_on_exit:
                    paths = self.monitor.export_history(datetime.now().strftime("%Y%m%d"))
                    self.logger.info(f"Exported history: {', '.join(str(p) for p in paths.values())}")
                await self.shutdown()

    async def shutdown(self, shutdown_timeout: float = 60):
        """Gracefully shutdown the monitoring system"""
        if self.monitor is None:
            return
        self.logger.info("Shutting down monitoring system...")
        try:
            await asyncio.wait_for(self.monitor.stop(), timeout=shutdown_timeout)
            self.logger.info("Monitoring system stopped successfully")
        except asyncio.TimeoutError:
            self.logger.error(f"Shutdown timed out after {shutdown_timeout} seconds")
        except Exception as e:
            self.logger.error(f"Error during shutdown: {e}")
        finally:
            self.monitor = None


def parse_args():
    parser = argparse.ArgumentParser(description="pump.fun token monitor")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML config file")
    parser.add_argument("--export-on-exit", action="store_true", help="Write recent history to CSV on shutdown")
    return parser.parse_args()


async def main():
    args = parse_args()
    config = Config(args.config)
    config.validate()

    logger = MonitorLogger(
        "token_monitor",
        log_dir=config.logging.log_dir,
        console_output=config.logging.console_output,
        console_level=config.logging.console_level
    )
    init_system = InitMonitoringSystem(logger)

    # Register signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, init_system.handle_shutdown, sig, None)

    try:
        logger.info("Starting token monitor...")
        await init_system.run_monitoring_system(config, export_on_exit=args.export_on_exit)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        logger.info("Token monitor shutdown complete")

def cli():
    asyncio.run(main())

if __name__ == "__main__":
    cli()
