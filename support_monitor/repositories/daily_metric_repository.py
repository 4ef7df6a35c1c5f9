"""
Per-instance, per-day additive counters.
"""

from datetime import date

from support_monitor.db.helpers import execute_query, fetch_all
from support_monitor.models.domain.analytics_domain import DailyMetric


class DailyMetricRepository:
    """Raw SQL access to the daily_metrics table."""

    async def upsert_additive(
        self,
        instance_id: str,
        metric_date: date,
        *,
        new_contacts: int = 0,
        messages_received: int = 0,
        messages_sent: int = 0,
        returning_contacts: int = 0,
        connection=None,
    ) -> None:
        """Add the deltas to the day's row, creating it if needed. Never overwrites."""
        query = """
            INSERT INTO daily_metrics AS d (
                instance_id, metric_date, new_contacts,
                messages_received, messages_sent, returning_contacts
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, metric_date) DO UPDATE SET
                new_contacts = d.new_contacts + EXCLUDED.new_contacts,
                messages_received = d.messages_received + EXCLUDED.messages_received,
                messages_sent = d.messages_sent + EXCLUDED.messages_sent,
                returning_contacts = d.returning_contacts + EXCLUDED.returning_contacts
        """
        await execute_query(
            query,
            (
                instance_id,
                metric_date,
                new_contacts,
                messages_received,
                messages_sent,
                returning_contacts,
            ),
            connection=connection,
        )

    async def get_by_date_range(
        self, instance_id: str, start_date: date, end_date: date
    ) -> list[DailyMetric]:
        rows = await fetch_all(
            """
            SELECT instance_id, metric_date, new_contacts, messages_received,
                   messages_sent, returning_contacts
            FROM daily_metrics
            WHERE instance_id = %s AND metric_date >= %s AND metric_date <= %s
            ORDER BY metric_date ASC
            """,
            (instance_id, start_date, end_date),
        )
        return [
            DailyMetric(
                instance_id=row["instance_id"],
                metric_date=row["metric_date"],
                new_contacts=row["new_contacts"],
                messages_received=row["messages_received"],
                messages_sent=row["messages_sent"],
                returning_contacts=row["returning_contacts"],
            )
            for row in rows
        ]
