#!/usr/bin/env python3
"""
Worker process entry point.

Opens the Gemini surface in a persistent browser profile and serves the
worker HTTP API. If the surface cannot be opened the API still starts and
reports surface_ready=false, so control refuses to start a run.

Usage:
    python run_worker.py
    python run_worker.py --headless
    python run_worker.py --control-url http://127.0.0.1:9201

Prerequisites:
    - Logged-in browser profile (python extractor.py auth)
"""

import asyncio


async def main():
    """Run the worker service with its HTTP API."""
    import argparse

    import uvicorn

    from browser.gemini import GeminiSurface
    from shared.config import ProtocolConfig, SurfaceConfig, load_config, resolve_path
    from shared.logging import configure_logging
    from worker.api import WorkerService, create_app
    from worker.channel import ControlChannel

    parser = argparse.ArgumentParser(
        description="Extractor worker process - drives the chat surface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--host", default=None, help="HTTP API host")
    parser.add_argument("--port", type=int, default=None, help="HTTP API port")
    parser.add_argument("--control-url", default=None, help="Control process base URL")
    parser.add_argument("--headless", action="store_true", help="Run the browser headless")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(
        log_dir=str(resolve_path(config["logging"]["dir"])),
        console_level=config["logging"]["console_level"],
    )

    worker = config["worker"]
    host = args.host or worker["host"]
    port = args.port or int(worker["port"])
    control_url = args.control_url or worker["control_url"]

    surface_config = SurfaceConfig.from_dict(config)
    if args.headless:
        surface_config.headless = True

    print("Starting Extractor worker process...")
    print(f"  Surface:     {surface_config.url}")
    print(f"  Control URL: {control_url}")
    print(f"  API:         http://{host}:{port}")
    print()

    service = WorkerService(
        surface=GeminiSurface(surface_config),
        config=ProtocolConfig.from_dict(config),
        channel=ControlChannel(control_url, attempts=int(worker["report_attempts"])),
    )
    server = uvicorn.Server(uvicorn.Config(create_app(service), host=host, port=port, log_level="info"))
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")
