import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: str = 'An unexpected error occurred'

    def __init__(self, detail: str | None = None):
        if detail:
            self.detail = detail
        super().__init__(self.detail)


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = 'Not authenticated'


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = 'Not found'


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    detail = 'Conflict'


class DuplicateRequest(Conflict):
    def __init__(self, sender_id: int, receiver_id: int):
        super().__init__(
            f'An active friend request or friendship already exists between users {sender_id} and {receiver_id}.'
        )


class NotFriends(Conflict):
    def __init__(self, user_id: int, peer_id: int):
        super().__init__(f'User {user_id} is not friends with user {peer_id}.')


class InvalidDecision(AppError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, decision: str):
        super().__init__(f"Invalid decision '{decision}'. Expected 'accepted' or 'rejected'.")


class EmptyMessage(AppError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    detail = 'Message must have a body or an attachment'


class AttachmentTooLarge(AppError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    detail = 'Attachment too large'


class InvalidImage(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = 'Invalid image file'


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    detail = 'Rate limit exceeded'


class BackendUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = 'Backend temporarily unavailable, please try again'


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):
        logger.warning({'msg': 'app_error', 'status': exc.status_code, 'detail': exc.detail})
        return JSONResponse(status_code=exc.status_code, content={'detail': exc.detail})

    @app.exception_handler(Exception)
    async def generic_exception_handler(_: Request, exc: Exception):
        logger.exception({'msg': 'unhandled_error', 'error': str(exc)})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={'detail': 'An unexpected error occurred.'},
        )
