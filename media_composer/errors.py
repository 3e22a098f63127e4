from __future__ import annotations

DIAGNOSTIC_MAX_LINES = 20
DIAGNOSTIC_MAX_CHARS = 1500


def diagnostic_excerpt(text: str | None) -> str:
    """Last lines of an engine log, short enough to hand back to a client."""
    if not text:
        return ""
    lines = text.strip().splitlines()[-DIAGNOSTIC_MAX_LINES:]
    return "\n".join(lines)[-DIAGNOSTIC_MAX_CHARS:]


class MediaComposerError(Exception):
    error_kind = "internal_error"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ConfigError(MediaComposerError):
    error_kind = "config_error"
    status_code = 400


class FetchError(MediaComposerError):
    error_kind = "fetch_error"
    status_code = 502

    def __init__(self, detail: str, url: str | None = None, status: int | None = None) -> None:
        super().__init__(detail)
        self.url = url
        self.status = status


class EncodeError(MediaComposerError):
    error_kind = "encode_error"
    status_code = 500

    def __init__(self, exit_code: int | None, diagnostic_tail: str, detail: str | None = None) -> None:
        super().__init__(detail or f"ffmpeg exit {exit_code}")
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail

    @property
    def excerpt(self) -> str:
        tail = diagnostic_excerpt(self.diagnostic_tail)
        return f"{self.detail}\n{tail}" if tail else self.detail


class ConcatError(EncodeError):
    error_kind = "concat_error"


class EngineNotFound(MediaComposerError):
    error_kind = "engine_not_found"
    status_code = 503


ERROR_STATUS = {
    cls.error_kind: cls.status_code
    for cls in (ConfigError, FetchError, EncodeError, ConcatError, EngineNotFound)
}
