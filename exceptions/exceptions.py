from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LendingException(Exception):
    """Base exception for lending-related errors."""

    status_code = 400

    @property
    def kind(self) -> str:
        return type(self).__name__


class NotAuthenticated(LendingException):
    status_code = 401

    def __init__(self):
        super().__init__("No authenticated actor for this request")


class NotAuthorized(LendingException):
    status_code = 403

    def __init__(self, action: str, role: str | None = None):
        self.action = action
        self.role = role
        if role:
            super().__init__(f"The {role} of a borrow record cannot {action} it")
        else:
            super().__init__(f"Not allowed to {action} this borrow record")


class NotFound(LendingException):
    status_code = 404

    def __init__(self, resource: str, resource_id):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} with id {resource_id} not found")


class ProfileExists(LendingException):
    status_code = 409

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"A profile with email {email} already exists")


class SelfLoan(LendingException):
    status_code = 400

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Cannot borrow your own item {item_id}")


class ItemOwnershipMismatch(LendingException):
    status_code = 409

    def __init__(self, item_id: int, owner_id: int):
        self.item_id = item_id
        self.owner_id = owner_id
        super().__init__(f"Item {item_id} is not owned by user {owner_id}")


class AlreadyActive(LendingException):
    status_code = 409

    def __init__(self, item_id: int, record_id: str | None = None):
        self.item_id = item_id
        # only set when the active record belongs to the caller
        self.record_id = record_id
        if record_id:
            super().__init__(
                f"You already have an active borrow record {record_id} for item {item_id}"
            )
        else:
            super().__init__(f"Item {item_id} already has an active borrow record")


class InvalidTransition(LendingException):
    status_code = 409

    def __init__(self, status: str, action: str):
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} a borrow record that is {status}")


class StaleState(LendingException):
    status_code = 409

    def __init__(self, record_id: str, expected_status: str):
        self.record_id = record_id
        self.expected_status = expected_status
        super().__init__(
            f"Borrow record {record_id} is no longer {expected_status}, reload and try again"
        )


class Unavailable(LendingException):
    status_code = 503

    def __init__(self, operation: str, details: str):
        super().__init__(f"Storage unavailable during {operation}: {details}")


class DatabaseError(LendingException):
    status_code = 500

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def lending_exception_handler(request: Request, exc: LendingException):
    if exc.status_code >= 500:
        logger.error(f"Lending error: {str(exc)}")
    else:
        logger.warning(f"{exc.kind}: {str(exc)}")

    content = {"detail": str(exc), "error": exc.kind}
    if isinstance(exc, AlreadyActive) and exc.record_id:
        content["record_id"] = exc.record_id

    headers = None
    if isinstance(exc, NotAuthenticated):
        headers = {"WWW-Authenticate": "Basic"}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LendingException, lending_exception_handler)
