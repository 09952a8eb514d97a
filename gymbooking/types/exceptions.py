from typing import Any


class InvalidIdentifierError(ValueError):
    def __init__(self, identifier: str):
        super().__init__(
            f"Invalid SQL identifier {identifier!r}: only letters, digits and underscores are allowed",
        )


class SchemaResolutionError(Exception):
    """
    The physical layout of an external store could not be mapped to a logical entity.

    This is a configuration/environment problem: it is surfaced to the operator and never retried.
    """

    def __init__(self, entity: str, missing_fields: list[str] | None = None):
        self.entity = entity
        self.missing_fields = missing_fields or []
        if self.missing_fields:
            fields = " and ".join(self.missing_fields)
            message = f"{entity} must have {fields} columns"
        else:
            message = f"Missing table {entity}"
        super().__init__(message)


class MissingDependencyError(Exception):
    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Missing table {table_name}")


class DuplicateActiveBookingsError(Exception):
    """
    Raised by the bootstrapper when existing rows would violate the one-active-booking-per-day unique index.

    `duplicates` contains the violating (employee, date) groups. They must be cleaned up manually.
    """

    def __init__(self, index_name: str, duplicates: list[dict[str, Any]]):
        self.duplicates = duplicates
        super().__init__(
            f"Duplicate active bookings exist; cannot create unique index {index_name}",
        )


class BookingValidationError(ValueError):
    pass


class AdmissionLockTimeoutError(Exception):
    def __init__(self, key: str):
        super().__init__(f"Could not acquire the admission lock {key} in time")


class ExternalStoreNotConfiguredError(Exception):
    def __init__(self, store_name: str):
        super().__init__(f"{store_name} DB env is not configured")


class InvalidAppStateTypeError(Exception):
    def __init__(self):
        super().__init__("The application state is neither a dict nor a starlette State")


class DotenvInvalidVariableError(Exception):
    pass


class MultipleWorkersWithoutRedisInitializationError(Exception):
    def __init__(self):
        super().__init__(
            "Initialization steps could not be run once across all workers because Redis is not configured",
        )
