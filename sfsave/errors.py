from typing import *


class SaveError(Exception):
    """Base class for every decode/encode failure.

    Carries a message plus a context mapping (offset, chunk, level, object...)
    which enclosing decoders extend as the error propagates.
    """

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context)

    def add_context(self, **context: Any) -> 'SaveError':
        # innermost values win
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self):
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class TruncatedHeader(SaveError):
    pass


class UnsupportedVersion(SaveError):
    pass


class TruncatedChunk(SaveError):
    pass


class CorruptChunk(SaveError):
    pass


class DecodeCancelled(SaveError):
    pass


class UnexpectedEof(SaveError):
    def __init__(self, requested: int, available: int, **context: Any):
        super().__init__(f"unexpected end of data: requested {requested} bytes, {available} available", **context)
        self.requested = requested
        self.available = available


class BodyLengthMismatch(SaveError):
    pass


class TruncatedBody(BodyLengthMismatch, TruncatedChunk):
    """The chunk stream ended before the body length prefix was satisfied."""


class UnknownPropertyType(SaveError):
    def __init__(self, prop_type: str, **context: Any):
        super().__init__(f"unknown property type: {prop_type}", **context)
        self.prop_type = prop_type


class PropertySizeMismatch(SaveError):
    pass


class MalformedPropertyList(SaveError):
    pass


class UnsupportedTextHistory(SaveError):
    pass


class MalformedLevel(SaveError):
    pass


class UnconsumedBytes(SaveError):
    pass


class DanglingOuterReference(SaveError):
    pass


class MalformedString(SaveError):
    pass


class EncodeError(SaveError):
    pass
