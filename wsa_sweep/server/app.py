"""FastAPI application factory for the sweep server."""

from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from wsa_sweep.config import SweepConfig
from wsa_sweep.engine import Engine
from wsa_sweep.server.routes import router
from wsa_sweep.util.logging import configure_logging


def create_app(engine: Engine | None = None) -> FastAPI:
    cfg = SweepConfig()
    app = FastAPI(title="WSA Sweep")
    app.state.engine = engine or Engine(cfg)
    app.include_router(router)
    return app


# Provide a default app instance for non-factory uvicorn usage.
app = create_app()


def main(argv: Optional[List[str]] = None) -> None:
    p = argparse.ArgumentParser(prog="wsa-sweep-server", description="Serve sweep requests over HTTP")
    p.add_argument("device", nargs="?", default=SweepConfig.host, help="Instrument address")
    p.add_argument("--simulate", action="store_true", help="Use the simulated instrument")
    p.add_argument("--listen", default="127.0.0.1", help="Address to bind (default 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Port to bind (default 8000)")
    p.add_argument("--log-level", dest="log_level", default=None, help="Log level")
    args = p.parse_args(argv)

    configure_logging(level=args.log_level)
    cfg = SweepConfig(host=args.device, simulate=args.simulate)
    uvicorn.run(create_app(Engine(cfg)), host=args.listen, port=args.port)


if __name__ == "__main__":
    main()
