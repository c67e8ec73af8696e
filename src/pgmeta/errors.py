"""Errors raised while resolving database metadata."""

from typing import List


class PgMetaError(Exception):
    """Base class for resolution-time errors.

    Resolution errors abort the whole run. As an error travels up through
    the resolver, each layer attaches the name of the object it was working
    on, so the final message reads like
    ``while resolving query 'GetUser': argument count mismatch``.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.context: List[str] = []

    def add_context(self, context: str) -> "PgMetaError":
        """Prepend a context frame and return self for re-raising."""
        self.context.insert(0, context)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        return ": ".join(self.context + [self.message])


class ConfigError(PgMetaError):
    """Configuration is inconsistent with itself or with the database."""
    pass


class CatalogError(PgMetaError):
    """The database failed while answering an introspection query."""
    pass


class SchemaNotFoundError(PgMetaError):
    """A configured table or column is absent from the live catalog."""
    pass


class UnknownTypeError(PgMetaError):
    """A native type has no override and no built-in mapping."""
    pass


class MissingPrimaryKeyError(PgMetaError):
    """A table does not declare a single-column primary key."""
    pass


class DuplicateTypeError(PgMetaError):
    """Two different definitions were registered under one type name."""
    pass


class ArgumentCountError(PgMetaError):
    """Configured argument names disagree with the parameters of a query."""
    pass


class ArgumentTypeAmbiguityError(PgMetaError):
    """The type of a query parameter cannot be determined."""
    pass
