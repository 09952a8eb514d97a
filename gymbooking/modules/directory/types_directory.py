from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from pydantic import BaseModel, field_validator

from gymbooking.types.identifiers import SafeIdentifier


class LogicalField(BaseModel):
    """
    A field of an external entity, and the physical column names it is known under.

    Aliases are ordered by priority and compared case-insensitively.
    """

    name: str
    aliases: tuple[str, ...]
    mandatory: bool = False
    # Name used in error messages, defaults to `name`
    label: str | None = None
    # Length of the typed NULL used when an optional field has no column
    null_length: int = 255

    @property
    def display_name(self) -> str:
        return self.label or self.name


class LogicalEntity(BaseModel):
    """
    An external entity we read but do not own.

    `table_candidates` are the physical table names backing the entity, by priority.
    """

    name: str
    table_candidates: tuple[str, ...]
    fields: tuple[LogicalField, ...]

    @field_validator("table_candidates")
    @classmethod
    def validate_table_candidates(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(SafeIdentifier(candidate) for candidate in value)

    def get_field(self, name: str) -> LogicalField:
        for field in self.fields:
            if field.name == name:
                return field
        raise KeyError(name)


class ResolvedTable(BaseModel):
    """The physical table backing an entity in a given store"""

    schema_name: str | None
    table_name: str
    columns: list[str]


class ColumnAdapter(ABC):
    """
    Map a logical field to a physical column of a resolved table.
    """

    @abstractmethod
    def resolve(self, columns: Sequence[str], field: LogicalField) -> str | None:
        """
        Return the physical column backing `field`, or None if the table has none.
        :param columns: the physical columns of the table, in catalog order
        """


class AliasColumnAdapter(ColumnAdapter):
    """Pick the first alias of the field which is a column of the table"""

    def resolve(self, columns: Sequence[str], field: LogicalField) -> str | None:
        by_lower_name = {}
        for column in columns:
            by_lower_name.setdefault(column.lower(), column)
        for alias in field.aliases:
            if alias.lower() in by_lower_name:
                return by_lower_name[alias.lower()]
        return None


class MappedColumnAdapter(ColumnAdapter):
    """
    Use an explicit `{logical field: physical column}` mapping configured for a deployment.

    Fields absent from the mapping are resolved by `fallback`, aliases by default.
    A mapped column which does not exist resolves to None.
    """

    def __init__(
        self,
        mapping: Mapping[str, str],
        fallback: ColumnAdapter | None = None,
    ) -> None:
        self.mapping = dict(mapping)
        self.fallback = fallback or AliasColumnAdapter()

    def resolve(self, columns: Sequence[str], field: LogicalField) -> str | None:
        if field.name not in self.mapping:
            return self.fallback.resolve(columns, field)
        mapped = self.mapping[field.name].strip().lower()
        for column in columns:
            if column.lower() == mapped:
                return column
        return None


EMPLOYEE_CORE = LogicalEntity(
    name="employee_core",
    table_candidates=("employee_core",),
    fields=(
        LogicalField(
            name="employee_id",
            aliases=(
                "employee_id",
                "Employee ID",
                "employeeid",
                "EmployeeID",
                "emp_id",
                "EmpID",
            ),
            mandatory=True,
        ),
        LogicalField(
            name="name",
            aliases=(
                "name",
                "Name",
                "employee_name",
                "Employee Name",
                "full_name",
                "FullName",
            ),
            mandatory=True,
            label="Name",
        ),
        LogicalField(
            name="department",
            aliases=("department", "Department", "dept", "Dept", "dept_name", "DeptName"),
        ),
        LogicalField(
            name="card_no",
            aliases=("id_card", "ID Card", "IDCard", "card_no", "Card No", "CardNo"),
        ),
        LogicalField(
            name="staff_no",
            aliases=("staff_no", "StaffNo", "employee_no", "EmployeeNo"),
        ),
        LogicalField(
            name="gender",
            aliases=(
                "gender",
                "Gender",
                "sex",
                "Sex",
                "jenis_kelamin",
                "Jenis Kelamin",
            ),
            null_length=50,
        ),
    ),
)

EMPLOYEE_EMPLOYMENT = LogicalEntity(
    name="employee_employment",
    table_candidates=("employee_employment",),
    fields=(
        LogicalField(
            name="employee_id",
            aliases=("employee_id", "EmployeeID", "emp_id", "EmpID"),
            mandatory=True,
        ),
        LogicalField(
            name="department",
            aliases=(
                "department",
                "Department",
                "dept",
                "Dept",
                "department_name",
                "DepartmentName",
                "dept_name",
                "DeptName",
            ),
            mandatory=True,
        ),
        LogicalField(
            name="end_date",
            aliases=(
                "end_date",
                "EndDate",
                "enddate",
                "termination_date",
                "TerminationDate",
            ),
        ),
        LogicalField(
            name="start_date",
            aliases=(
                "start_date",
                "StartDate",
                "startdate",
                "effective_date",
                "EffectiveDate",
            ),
        ),
    ),
)

EMPLOYEE_CARD = LogicalEntity(
    name="employee_card",
    table_candidates=("CardDB", "employee_card", "employee_cards", "cards", "card"),
    fields=(
        LogicalField(
            name="employee_id",
            aliases=("employee_id", "EmployeeID", "emp_id", "EmpID", "StaffNo", "staff_no"),
            mandatory=True,
        ),
        LogicalField(
            name="card_no",
            aliases=(
                "card_no",
                "CardNo",
                "card_number",
                "CardNumber",
                "id_card",
                "IDCard",
            ),
            mandatory=True,
        ),
        LogicalField(
            name="active",
            aliases=("is_active", "IsActive", "active", "Active", "status", "Status"),
        ),
        LogicalField(
            name="del_state",
            aliases=("del_state", "DelState"),
        ),
        LogicalField(
            name="block",
            aliases=("block", "Block", "is_blocked", "IsBlocked"),
        ),
    ),
)

DIRECTORY_ENTITIES = {
    entity.name: entity
    for entity in (EMPLOYEE_CORE, EMPLOYEE_EMPLOYMENT, EMPLOYEE_CARD)
}
