import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from yieldsync.api import routes
from yieldsync.core.errors import (
    AlreadyChallengedError,
    AttestationInvalidError,
    DuplicateSubmissionError,
    ExternalFetchError,
    InsufficientStakeError,
    QuorumNotReachedError,
    StaleDataError,
    UnknownEntityError,
    ValidationError,
    WindowExpiredError,
    YieldSyncError,
)
from yieldsync.version import __version__

logger = logging.getLogger(__name__)

# First match wins: subclasses before their bases
ERROR_STATUS = (
    (UnknownEntityError, 404),
    (ValidationError, 400),
    (AttestationInvalidError, 400),
    (DuplicateSubmissionError, 409),
    (AlreadyChallengedError, 409),
    (QuorumNotReachedError, 409),
    (InsufficientStakeError, 409),
    (WindowExpiredError, 410),
    (StaleDataError, 422),
    (ExternalFetchError, 502),
)


def status_for(error: YieldSyncError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(service) -> FastAPI:
    app = FastAPI(title="YieldSync", version=__version__)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(YieldSyncError)
    async def yieldsync_error_handler(request: Request, exc: YieldSyncError):
        status = status_for(exc)
        logger.warning(f"{request.method} {request.url.path} -> {status}: {type(exc).__name__}: {exc} "
                       f"(task={exc.task_id}, asset={exc.asset}, operator={exc.operator})")
        return JSONResponse(status_code=status, content={"detail": exc.message, **exc.to_dict()})

    app.include_router(routes.router)
    return app
