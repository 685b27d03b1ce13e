# backend/app/core/exceptions.py
from fastapi import status


class ChatError(Exception):
    """채팅 도메인 에러의 기반 클래스. message는 사용자에게 그대로 노출됩니다."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class Internal(ChatError):
    pass
