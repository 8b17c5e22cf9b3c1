"""Unauthenticated service routes."""

from __future__ import annotations

from fastapi import APIRouter

from cacheguard.api.contracts import HealthResponse, VersionResponse


def create_system_router(*, name: str, version: str) -> APIRouter:
    """Build health and version routes."""
    router = APIRouter(tags=["system"])

    @router.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @router.get("/api/version", response_model=VersionResponse)
    def version_info() -> VersionResponse:
        return VersionResponse(name=name, version=version)

    return router
