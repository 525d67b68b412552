from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException, Request

from longform_tts.errors import JobNotFoundError, PersistenceError, ValidationError


def _get_service(request: Request):
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return svc


@contextmanager
def http_errors() -> Iterator[None]:
    """
    Map domain errors onto HTTP status codes.
    """
    try:
        yield
    except JobNotFoundError as ex:
        raise HTTPException(status_code=404, detail=str(ex)) from None
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex)) from None
    except PersistenceError as ex:
        raise HTTPException(status_code=503, detail=str(ex)) from None
