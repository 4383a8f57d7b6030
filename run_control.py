#!/usr/bin/env python3
"""
Control process entry point.

Runs the durable queue, lock and timers behind the control HTTP API.
FastAPI and every timer share one asyncio event loop.

Usage:
    python run_control.py                       # Settings from config.yaml
    python run_control.py --port 9201           # Custom API port
    python run_control.py --data-dir /tmp/run1  # Separate state directory

Prerequisites:
    - Worker process running (python run_worker.py)
"""

import asyncio


async def main():
    """Run the control service with its HTTP API."""
    import argparse

    import uvicorn

    from orchestrator.api import create_app
    from orchestrator.main import ControlService
    from shared.config import ControlConfig, load_config, resolve_path
    from shared.logging import configure_logging

    parser = argparse.ArgumentParser(
        description="Extractor control process - durable queue, lock and timers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--host", default=None, help="HTTP API host")
    parser.add_argument("--port", type=int, default=None, help="HTTP API port")
    parser.add_argument("--data-dir", default=None, help="Directory for durable state")
    parser.add_argument("--worker-url", default=None, help="Worker base URL")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(
        log_dir=str(resolve_path(config["logging"]["dir"])),
        console_level=config["logging"]["console_level"],
    )

    control = ControlConfig.from_dict(config)
    if args.host:
        control.host = args.host
    if args.port:
        control.port = args.port
    if args.data_dir:
        control.data_dir = resolve_path(args.data_dir)
    if args.worker_url:
        control.worker_url = args.worker_url

    print("Starting Extractor control process...")
    print(f"  Data dir:   {control.data_dir}")
    print(f"  Worker URL: {control.worker_url}")
    print(f"  API:        http://{control.host}:{control.port}")
    print()

    app = create_app(ControlService(control))
    server = uvicorn.Server(uvicorn.Config(app, host=control.host, port=control.port, log_level="info"))
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")
