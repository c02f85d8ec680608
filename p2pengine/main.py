"""P2P positioning engine — application entry point.

Boots the FastAPI operator API and runs the engine loops: one positioning
scheduler per tuple, the dispatch queue worker, and the order
synchronizer.
"""

import logging

from fastapi import FastAPI

from p2pengine.api.routers import router

app = FastAPI(title="P2P Engine Operator API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("p2pengine")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire components, and start the loops."""
    import argparse
    import asyncio
    import signal

    from p2pengine.api.routers import configure_routers
    from p2pengine.config import load_config, load_merchants
    from p2pengine.dispatch.queue import DispatchQueue
    from p2pengine.repos.db import init_db
    from p2pengine.repos.dispatch_repo import DispatchRepo
    from p2pengine.repos.order_repo import OrderRepo
    from p2pengine.repos.positioning_repo import PositioningRepo
    from p2pengine.repos.tuple_state_repo import TupleStateRepo
    from p2pengine.scheduler_manager import SchedulerManager
    from p2pengine.sync.synchronizer import OrderSynchronizer
    from p2pengine.venue.client import VenueClient

    parser = argparse.ArgumentParser(description="P2P ad positioning and auto-buy engine")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the engine loops without the API server",
    )
    mode.add_argument(
        "--api-only",
        action="store_true",
        help="Serve the operator API without running the engine loops",
    )
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    args = parser.parse_args()

    config = load_config(args.env_file)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    init_db(config.db_path)
    merchants = [m for m in load_merchants(config) if m.enabled]
    clients = {
        m.merchant_id: VenueClient(config, api_key=m.api_key, api_secret=m.api_secret)
        for m in merchants
    }

    dispatch_repo = DispatchRepo(config.db_path)
    order_repo = OrderRepo(config.db_path)
    positioning_repo = PositioningRepo(config.db_path)
    state_repo = TupleStateRepo(config.db_path)

    synchronizer = OrderSynchronizer(config, clients, order_repo)
    queue = DispatchQueue(config, clients, dispatch_repo, order_repo, synchronizer)
    manager = SchedulerManager(config, clients, merchants, positioning_repo, state_repo)
    manager.build_schedulers()

    configure_routers(
        config=config,
        merchant_ids=clients.keys(),
        dispatch_queue=queue,
        order_repo=order_repo,
        synchronizer=synchronizer,
        positioning_repo=positioning_repo,
        state_repo=state_repo,
    )

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        manager.stop_all()
        queue.stop()
        synchronizer.stop()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    logger.info(
        "Loaded %d merchant(s), %d positioning tuple(s).",
        len(merchants), len(manager.schedulers),
    )

    engines = _Engines(manager, queue, synchronizer, list(clients))
    if args.engine_only:
        asyncio.run(engines.run())
    elif args.api_only:
        asyncio.run(_serve(config.api_port))
    else:
        asyncio.run(_run_all(engines, config.api_port))


class _Engines:
    """The three engine loops, run together."""

    def __init__(self, manager, queue, synchronizer, merchant_ids: list[str]) -> None:
        self._manager = manager
        self._queue = queue
        self._synchronizer = synchronizer
        self._merchant_ids = merchant_ids

    async def run(self) -> None:
        import asyncio

        logger.info("Starting engine loops.")
        results = await asyncio.gather(
            self._manager.run_all(),
            self._queue.run(),
            self._synchronizer.run(self._merchant_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Engine loop ended with error: %r", result)
        logger.info("Engine loops stopped.")


async def _serve(port: int) -> None:
    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)
    logger.info("Operator API available at http://localhost:%d", port)
    await server.serve()


async def _run_all(engines: _Engines, port: int) -> None:
    """Start the API server and the engine loops concurrently."""
    import asyncio

    results = await asyncio.gather(
        _serve(port),
        engines.run(),
        return_exceptions=True,
    )
    logger.info("P2P engine stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
