from enum import Enum
from typing import Optional

from fastapi import status


class PointErrorCode(str, Enum):
    INVALID_USER_ID = "INVALID_USER_ID"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    BALANCE_CAP_EXCEEDED = "BALANCE_CAP_EXCEEDED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


_MESSAGES = {
    PointErrorCode.INVALID_USER_ID: ("User id must be a positive integer", status.HTTP_400_BAD_REQUEST),
    PointErrorCode.INVALID_AMOUNT: ("Amount must be a positive integer", status.HTTP_400_BAD_REQUEST),
    PointErrorCode.BALANCE_CAP_EXCEEDED: ("Balance cannot exceed the maximum allowed points", status.HTTP_400_BAD_REQUEST),
    PointErrorCode.INSUFFICIENT_BALANCE: ("Insufficient points", status.HTTP_400_BAD_REQUEST),
    PointErrorCode.LOCK_TIMEOUT: ("Timed out waiting for the user's lock", status.HTTP_503_SERVICE_UNAVAILABLE),
}


class PointServiceError(Exception):
    """Business-rule failure of a point operation.

    Callers distinguish failures by ``code``; the message and status are
    derived from it for the request layer.
    """

    def __init__(self, code: PointErrorCode, detail: Optional[str] = None):
        message, status_code = _MESSAGES[code]
        self.code = code
        self.detail = detail or message
        self.status_code = status_code
        super().__init__(self.detail)

    def __repr__(self) -> str:
        return f"PointServiceError(code={self.code.value!r}, detail={self.detail!r})"
