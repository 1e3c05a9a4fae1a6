"""Shared route dependencies."""

from fastapi import Depends, Request

from orchestrator.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Runtime attached to the app at startup."""
    return request.app.state.runtime


def get_db(runtime: Runtime = Depends(get_runtime)):
    """Yield a session from the runtime's factory and close it afterwards."""
    db = runtime.session_factory()
    try:
        yield db
    finally:
        db.close()
