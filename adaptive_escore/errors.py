from pydantic import BaseModel


class ProblemDetails(BaseModel):
    status: int
    code: str
    message: str
    request_id: str


def problem(*, status: int, code: str, message: str, request_id: str) -> ProblemDetails:
    return ProblemDetails(status=status, code=code, message=message, request_id=request_id)


class StoreError(Exception):
    """Storage failure carrying a stable code from error_codes."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
