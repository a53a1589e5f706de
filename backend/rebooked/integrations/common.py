from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class ProviderRequestError(RuntimeError):
    """A provider call failed in a way the caller may retry later (timeout, 5xx)."""

    def __init__(self, message: str, *, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


def header_value(headers, *names: str) -> str:
    """First non-empty header among ``names``; works for dicts and werkzeug Headers."""
    if headers is None:
        return ""
    lowered = None
    for name in names:
        value = None
        try:
            value = headers.get(name)
        except AttributeError:
            value = None
        if value is None:
            if lowered is None:
                try:
                    lowered = {str(k).lower(): v for k, v in dict(headers).items()}
                except (TypeError, ValueError):
                    lowered = {}
            value = lowered.get(name.lower())
        if value:
            return str(value).strip()
    return ""
