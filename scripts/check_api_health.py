#!/usr/bin/env python3
"""CLI utility to verify that the ledger bucket gateway and its dependencies are reachable."""
from __future__ import annotations

import argparse
import logging
import os
import sys

from backend.app.utils.api_health import HEALTH_PATH, STATUS_PATH, check_api_health


def parse_args() -> argparse.Namespace:
    """Parse command line arguments for the health check utility.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "base_url",
        nargs="?",
        default="http://localhost:8000",
        help="Base URL for the gateway (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Request timeout in seconds (default: 5.0)",
    )
    parser.add_argument(
        "--liveness-only",
        action="store_true",
        help="Only probe /health and skip the mapping store and ledger readiness check",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("LEDGER_GATEWAY_API_KEY"),
        help="API key sent as x-api-key (default: $LEDGER_GATEWAY_API_KEY)",
    )
    return parser.parse_args()


def main() -> int:
    """Entry point for the CLI health check utility.

    Returns:
        int: Exit status code where ``0`` indicates success.
    """
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_args()

    paths = [HEALTH_PATH] if args.liveness_only else [HEALTH_PATH, STATUS_PATH]
    exit_code = 0
    for path in paths:
        result = check_api_health(
            args.base_url, path=path, timeout=args.timeout, api_key=args.api_key
        )
        if result.ok:
            payload_repr = result.payload if result.payload is not None else "<no payload>"
            print(
                f"{path} succeeded",
                f"status={result.status_code}",
                f"latency_ms={result.latency_ms:.2f}" if result.latency_ms is not None else "latency_ms=unknown",
                f"payload={payload_repr}",
            )
            continue
        exit_code = 1
        print(f"{path} failed:", result.detail, file=sys.stderr)
        if result.status_code is not None:
            print(f"Status code: {result.status_code}", file=sys.stderr)
        if result.payload is not None:
            print(f"Payload: {result.payload}", file=sys.stderr)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
