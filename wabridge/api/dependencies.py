"""FastAPI dependencies shared by the routers."""

from fastapi import HTTPException, Request, status

from wabridge.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Relay components started by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay not started",
        )
    return runtime
