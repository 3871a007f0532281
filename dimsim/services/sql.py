"""
Dialect-aware date expressions for the normalized queries.

The star schema answers these from pre-computed date dimension columns;
the OLTP schema has to derive them from raw dates at query time.
"""

from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement
from sqlalchemy.types import Integer, String


class year_month(FunctionElement):
    """'YYYY-MM' of a date column."""

    type = String()
    name = "year_month"
    inherit_cache = True


class days_between(FunctionElement):
    """Whole calendar days from the second date argument to the first."""

    type = Integer()
    name = "days_between"
    inherit_cache = True


@compiles(year_month)
def _year_month_default(element, compiler, **kw):
    return "to_char(%s, 'YYYY-MM')" % compiler.process(element.clauses, **kw)


@compiles(year_month, "sqlite")
def _year_month_sqlite(element, compiler, **kw):
    return "strftime('%%Y-%%m', %s)" % compiler.process(element.clauses, **kw)


@compiles(year_month, "mysql")
def _year_month_mysql(element, compiler, **kw):
    return "DATE_FORMAT(%s, '%%%%Y-%%%%m')" % compiler.process(element.clauses, **kw)


def _pair(element, compiler, **kw):
    later, earlier = list(element.clauses)
    return compiler.process(later, **kw), compiler.process(earlier, **kw)


@compiles(days_between)
def _days_between_default(element, compiler, **kw):
    return "(%s - %s)" % _pair(element, compiler, **kw)


@compiles(days_between, "sqlite")
def _days_between_sqlite(element, compiler, **kw):
    return "CAST(julianday(%s) - julianday(%s) AS INTEGER)" % _pair(element, compiler, **kw)


@compiles(days_between, "mysql")
def _days_between_mysql(element, compiler, **kw):
    return "DATEDIFF(%s, %s)" % _pair(element, compiler, **kw)
