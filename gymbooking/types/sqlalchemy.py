import datetime
from collections.abc import Callable

from sqlalchemy import types
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase, MappedAsDataclass

SessionLocalType = Callable[[], AsyncSession]


class Base(MappedAsDataclass, DeclarativeBase):
    """Base class for all models.

    The booking store predates this service and is shared with other tools which write
    naive local timestamps (`GETDATE()`), so datetimes are mapped to a timezone-naive type.
    See https://docs.sqlalchemy.org/en/20/orm/declarative_tables.html#customizing-the-type-map"""

    type_annotation_map = {
        bool: types.Boolean(),
        datetime.date: types.Date(),
        datetime.time: types.Time(),
        datetime.datetime: types.DateTime(),
        str: types.String(),
        int: types.Integer(),
    }
