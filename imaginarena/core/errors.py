"""Доменные ошибки контроллеров турнира и матчей."""


class ArenaError(Exception):
    status_code = 400
    code = "arena_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ArenaError):
    status_code = 422
    code = "validation_error"


class Unauthorized(ArenaError):
    status_code = 403
    code = "unauthorized"


class NotFound(ArenaError):
    status_code = 404
    code = "not_found"


class Conflict(ArenaError):
    status_code = 409
    code = "conflict"


class InvalidState(ArenaError):
    status_code = 409
    code = "invalid_state"


class TransientIOError(ArenaError):
    # Сеть или хранилище недоступны, пользователь может повторить вручную.
    status_code = 503
    code = "transient_io"
