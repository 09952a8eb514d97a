import re

from gymbooking.types.exceptions import InvalidIdentifierError

_SAFE_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


class SafeIdentifier(str):
    """
    A schema or table name that is allowed to appear in generated SQL.

    Only letters, digits and underscores are accepted. Constructing a `SafeIdentifier`
    is the single place where this is checked, so any function typed with it can
    rely on the value without re-validating:
    ```python
    table = SafeIdentifier("employee_core")
    SafeIdentifier("employee_core; DROP TABLE x")  # raises InvalidIdentifierError
    ```

    Column names discovered from a catalog are not `SafeIdentifier`s: they may contain
    spaces (`Employee ID`) and are always passed to SQLAlchemy `column()` constructs,
    which quote them for the target dialect.
    """

    __slots__ = ()

    def __new__(cls, value: str) -> "SafeIdentifier":
        value = str(value).strip()
        if not _SAFE_IDENTIFIER_PATTERN.match(value):
            raise InvalidIdentifierError(value)
        return super().__new__(cls, value)


def is_safe_identifier(value: str) -> bool:
    return bool(_SAFE_IDENTIFIER_PATTERN.match(str(value).strip()))
