"""Uvicorn entrypoint for the edge gateway."""

from __future__ import annotations

import os

import uvicorn

from .app import create_app

app = create_app()


def run() -> None:
    uvicorn.run(
        app,
        host=os.environ.get("EDGEGATE_HOST", "0.0.0.0"),
        port=int(os.environ.get("EDGEGATE_PORT", "8787")),
        proxy_headers=True,
    )
