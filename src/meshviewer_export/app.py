"""FastAPI application serving the meshviewer documents.

Routes
------
GET /mv/nodes.json    node list, version 2 (list of nodes)
GET /mv/graph.json    batman-adv link graph
GET /mv1/nodes.json   node list, version 1 (nodes keyed by node_id)
GET /mv1/graph.json   same graph as /mv/graph.json
GET /metrics          Prometheus metrics for the last builds
GET /health           liveness probe

Query parameters are handed to the data store unchanged.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from meshviewer_export.provider import Handler, MeshviewerProvider, dump_document


class MeshviewerJSONResponse(JSONResponse):
    # NaN/Infinity (memory_usage of a node reporting no memory) render as null.
    def render(self, content: Any) -> bytes:
        return dump_document(content).encode("utf-8")


def _endpoint(handler: Handler) -> Callable[[Request], MeshviewerJSONResponse]:
    def endpoint(request: Request) -> MeshviewerJSONResponse:
        return MeshviewerJSONResponse(handler(dict(request.query_params)))

    return endpoint


def create_app(provider: MeshviewerProvider) -> FastAPI:
    app = FastAPI(
        title="Meshviewer export",
        description="Node list and batman-adv topology documents for the meshviewer front end.",
        version="0.1.0",
    )
    app.state.provider = provider

    # The front end is usually served from a different origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    for name, handler in provider.routes().items():
        app.add_api_route(
            f"/{name}",
            _endpoint(handler),
            methods=["GET"],
            response_class=MeshviewerJSONResponse,
            name=name.replace("/", "_").replace(".", "_"),
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    app.mount("/metrics", make_asgi_app(registry=provider.metrics.registry))
    return app
