# main.py
import asyncio
import os
import sys

import yaml
from aiohttp import web
from rich.console import Console
from rich.live import Live

from txengine.dashboard import generate_dashboard
from txengine.gateway import GatewayRegistry
from txengine.logger import MetricsAuditLogger, setup_console_logger
from txengine.pipeline import TransactionPipeline
from txengine.price_engine import PriceCache, PriceSubscriptionManager
from txengine.price_oracle import PriceOracle
from txengine.sender import SubmissionEngine
from txengine.server import create_app
from txengine.swap_parser import SwapParser

# Environment variables that override URLs from config.yaml
ENV_OVERRIDES = {
    "TRITON_PRO_RPC": ("rpc", "primary_url"),
    "LITE_RPC_URL": ("rpc", "fast_url"),
    "PRICE_ENGINE_WS": ("price_engine", "ws_url"),
    "TRITON_JUP_API": ("jupiter", "quote_api"),
}


def load_config(path: str = "config.yaml") -> dict:
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config.setdefault(section, {})[key] = value
    return config


# --- MAIN CONTROLLER ---

class TransactionEngineService:
    def __init__(self, config: dict):
        self.config = config
        log_conf = config.get('logging', {})
        self.logger = setup_console_logger("TxEngine", log_conf.get('level', 'INFO'), log_conf.get('file'))

        rpc = config['rpc']
        ws_urls = {rpc['primary_url']: rpc['ws_url']} if rpc.get('ws_url') else None
        self.registry = GatewayRegistry(
            self.logger,
            max_connections=rpc.get('max_connections', 10),
            timeout=rpc.get('timeout_seconds', 30.0),
            ws_urls=ws_urls,
        )

        self.cache = PriceCache()
        price_conf = config['price_engine']
        self.subscriptions = PriceSubscriptionManager(
            price_conf['ws_url'], self.cache, self.logger,
            reconnect_delay=price_conf.get('reconnect_delay_seconds', 1.0),
        )

        primary = self.registry.resolve(rpc['primary_url'])
        jup = config['jupiter']
        self.oracle = PriceOracle(
            self.cache, primary, self.logger,
            quote_api=jup['quote_api'],
            price_api=jup['price_api'],
            max_retries=jup.get('max_retries', 5),
        )

        parser_conf = config.get('parser', {})
        self.parser = SwapParser(
            primary, self.oracle, self.logger,
            max_attempts=parser_conf.get('max_attempts', 10),
            retry_delay=parser_conf.get('retry_delay_seconds', 1.0),
        )

        eng = config.get('engine', {})
        self.engine = SubmissionEngine(
            self.logger,
            resend_interval=eng.get('resend_interval_seconds', 0.5),
            poll_interval=eng.get('poll_interval_seconds', 0.5),
            expiry_margin=eng.get('expiry_margin', 150),
            record_retries=eng.get('record_retries', 5),
            record_retry_delay=eng.get('record_retry_delay_seconds', 0.5),
        )

        self.audit_log = MetricsAuditLogger(config['audit']['metrics_log'], self.logger)
        self.pipeline = TransactionPipeline(
            self.registry, self.engine, self.parser, self.subscriptions, self.audit_log, self.logger,
            primary_url=rpc['primary_url'],
            fast_url=rpc.get('fast_url'),
        )
        self.queue: asyncio.Queue = asyncio.Queue()

    async def run(self):
        server_conf = self.config.get('server', {})
        host = server_conf.get('host', '0.0.0.0')
        port = server_conf.get('port', 3000)
        workers = []
        runner = web.AppRunner(create_app(self.pipeline, self.queue, self.cache, self.oracle, self.logger))

        try:
            await self.audit_log.start()

            for _ in range(server_conf.get('workers', 4)):
                workers.append(asyncio.create_task(self.pipeline.consume(self.queue)))

            await runner.setup()
            await web.TCPSite(runner, host, port).start()
            self.logger.info(f"🚀 Server listening on http://{host}:{port}")

            if self.config.get('dashboard', {}).get('enabled'):
                await self._run_dashboard()
            else:
                await asyncio.Event().wait()
        finally:
            print("Shutting down resources...")
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await runner.cleanup()
            await self.audit_log.flush()
            await self.audit_log.shutdown()
            await self.subscriptions.shutdown()
            await self.oracle.shutdown()
            await self.registry.shutdown()

    async def _run_dashboard(self):
        console = Console()
        with Live(console=console, refresh_per_second=4) as live:
            while True:
                prices = await self.cache.entries()
                live.update(generate_dashboard(prices, list(self.pipeline.recent)))
                await asyncio.sleep(0.25)


if __name__ == "__main__":
    try:
        conf = load_config(os.getenv("TXENGINE_CONFIG", "config.yaml"))
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass

        async def _main():
            await TransactionEngineService(conf).run()

        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\n🛑 Engine Stopped by User.")
        sys.exit()
