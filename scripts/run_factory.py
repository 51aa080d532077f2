#!/usr/bin/env python3
"""Run the platform factory API locally with explicit args."""
from __future__ import annotations

import argparse

import uvicorn

from platform_factory.app.main import create_app
from platform_factory.app.settings import FactorySettings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    uvicorn.run(create_app(FactorySettings.from_env()), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
