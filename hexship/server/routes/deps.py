"""Shared route dependencies."""

from fastapi import Request

from hexship.kernel.engine import PipelineEngine


def get_engine(request: Request) -> PipelineEngine:
    """The engine the application was created with."""
    return request.app.state.engine
