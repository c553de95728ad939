"""
Sample python job: report tables that autovacuum has not visited recently.

pgcrontab line:

    0 6 * * *  - - - - -  python  sample/stale_tables.py

Returns an empty string when every table is fresh, so nothing is mailed.
"""

from __future__ import annotations

from typing import Any, List, Mapping

MAX_AGE_DAYS = 7

QUERY = """
    SELECT schemaname, relname, coalesce(last_autovacuum, last_vacuum) AS vacuumed
    FROM pg_stat_user_tables
    WHERE coalesce(last_autovacuum, last_vacuum, 'epoch') < now() - make_interval(days => %s)
    ORDER BY schemaname, relname
"""


def run(variables: Mapping[str, str], dsn: Any, entry: Any, connection: Any) -> str:
    max_age = int(variables.get("STALE_TABLE_DAYS", MAX_AGE_DAYS))
    with connection.cursor() as cursor:
        cursor.execute(QUERY, (max_age,))
        rows = cursor.fetchall()
    if not rows:
        return ""

    lines: List[str] = [f"Tables in {dsn.database} not vacuumed for {max_age}+ days:"]
    for schema, table, vacuumed in rows:
        lines.append(f"- {schema}.{table} (last vacuum: {vacuumed or 'never'})")
    return "\n".join(lines)
