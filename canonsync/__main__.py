"""Module executed when running ``python -m canonsync``."""

from __future__ import annotations

import argparse

import uvicorn

from app.config import settings


def main(argv: list[str] | None = None) -> None:
    """Start the uvicorn server using the configured settings."""

    parser = argparse.ArgumentParser(prog="canonsync", description=__doc__)
    parser.add_argument("--host", default=settings.server_host)
    parser.add_argument("--port", type=int, default=settings.server_port)
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=settings.environment == "development",
    )
    args = parser.parse_args(argv)

    uvicorn.run("app.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
