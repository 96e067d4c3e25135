from __future__ import annotations


class StorebotError(Exception):
    code = "storebot_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class UpstreamError(StorebotError):
    code = "upstream_error"


class UpstreamTimeout(UpstreamError):
    code = "upstream_timeout"


class UpstreamHTTPError(UpstreamError):
    code = "upstream_http_error"

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class UpstreamEmptyResult(UpstreamError):
    code = "upstream_empty"


class ManifestMalformed(StorebotError):
    code = "manifest_malformed"


class StoreUnavailable(StorebotError):
    code = "store_unavailable"


class QuotaExceeded(StorebotError):
    code = "quota_exceeded"

    def __init__(self, limit: int, *, action: str | None = None) -> None:
        super().__init__(f"daily limit of {limit} reached")
        self.limit = limit
        self.action = action
