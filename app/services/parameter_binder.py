"""Parameter binding for scheduled and ad hoc queries"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.exceptions import ValidationError
from app.schemas.scheduled_query import QueryParameter


_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off"}


def coerce_value(value: Any, declared_type: str) -> Any:
    """
    Convert a stored parameter value to its declared type.

    Args:
        value: Raw value (often a string coming from a form)
        declared_type: string, number, integer, boolean, date or datetime

    Returns:
        Value ready for the driver

    Raises:
        ValidationError: If the value does not fit the declared type
    """
    if value is None:
        return None

    kind = (declared_type or "string").lower()
    try:
        if kind in ("string", "text", "varchar"):
            return str(value)
        if kind in ("integer", "int"):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("not an integer")
            return int(value)
        if kind in ("number", "float", "decimal", "double"):
            number = float(value)
            return int(number) if number.is_integer() and not isinstance(value, float) else number
        if kind in ("boolean", "bool"):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError("not a boolean")
        if kind == "date":
            if isinstance(value, (date, datetime)):
                return value.strftime("%Y-%m-%d")
            return date.fromisoformat(str(value)).isoformat()
        if kind == "datetime":
            if isinstance(value, datetime):
                return value.strftime("%Y-%m-%d %H:%M:%S")
            return datetime.fromisoformat(str(value)).strftime("%Y-%m-%d %H:%M:%S")
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Value {value!r} is not a valid {kind}",
            field="parameters",
            details={"error": str(e)},
        ) from e
    return value


def _scan(sql: str) -> List[Tuple[str, int, int, Optional[str]]]:
    """
    Find placeholders outside quotes and comments.

    Returns:
        (kind, start, end, name) with kind ``?`` or ``:``
    """
    found = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if ch in ("'", '"', "`"):
            i += 1
            while i < n:
                if sql[i] == "\\" and ch != "`":
                    i += 2
                    continue
                if sql[i] == ch:
                    if i + 1 < n and sql[i + 1] == ch:
                        i += 2
                        continue
                    break
                i += 1
            i += 1
            continue
        if ch == "#" or (sql.startswith("--", i) and (i + 2 >= n or sql[i + 2] in " \t\r\n")):
            end = sql.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        if ch == "?":
            found.append(("?", i, i + 1, None))
        elif ch == ":" and i + 1 < n and (sql[i + 1].isalpha() or sql[i + 1] == "_"):
            prev = sql[i - 1] if i > 0 else ""
            if prev != ":" and not (prev.isalnum() or prev == "_"):
                j = i + 1
                while j < n and (sql[j].isalnum() or sql[j] == "_"):
                    j += 1
                found.append((":", i, j, sql[i + 1:j]))
                i = j
                continue
        i += 1
    return found


def bind_parameters(
    sql: str,
    parameters: Sequence[QueryParameter],
) -> Tuple[str, Optional[List[Any]]]:
    """
    Rewrite ``?`` and ``:name`` placeholders into driver ``%s`` placeholders.

    ``?`` placeholders take declared parameters in order; ``:name``
    placeholders take the parameter with that name and may repeat. Every
    literal ``%`` is doubled when values are bound. Placeholders
    inside string literals and comments are left alone.

    Args:
        sql: Statement text
        parameters: Declared parameters

    Returns:
        (statement, values), values None when nothing is bound

    Raises:
        ValidationError: Placeholder count or names do not match the declarations
    """
    tokens = _scan(sql)
    if not tokens:
        return sql, None

    kinds = {t[0] for t in tokens}
    if len(kinds) > 1:
        raise ValidationError("Cannot mix ? and :name placeholders in one query", field="sql")

    by_name: Dict[str, QueryParameter] = {p.name: p for p in parameters}
    values: List[Any] = []
    position = 0
    pieces: List[str] = []
    cursor = 0

    for kind, start, end, name in tokens:
        pieces.append(sql[cursor:start].replace("%", "%%"))
        cursor = end
        if kind == "?":
            if position >= len(parameters):
                raise ValidationError(
                    f"Query has more ? placeholders than the {len(parameters)} declared parameters",
                    field="parameters",
                )
            param = parameters[position]
            position += 1
        else:
            param = by_name.get(name)
            if param is None:
                raise ValidationError(f"No parameter declared for :{name}", field="parameters")
        values.append(coerce_value(param.value, param.type))
        pieces.append("%s")

    pieces.append(sql[cursor:].replace("%", "%%"))
    return "".join(pieces), values
