from __future__ import annotations


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class AuthenticationError(Exception):
    def __init__(self, message: str = 'unauthorized'):
        super().__init__(message)
        self.message = message
