from __future__ import annotations


ERROR_TIMEOUT = "TIMEOUT"
ERROR_HTTP = "HTTP_ERROR"
ERROR_EMPTY_CONTENT = "EMPTY_CONTENT"
ERROR_UNKNOWN = "UNKNOWN"


class FetchError(Exception):
    """Article could not be turned into text; ``error_type`` names the reason."""

    def __init__(self, error_type: str, detail: str = "", status_code: int | None = None):
        super().__init__(f"{error_type}: {detail}" if detail else error_type)
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
