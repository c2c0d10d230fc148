"""
Document numbering

Human-facing numbers for visits, notices, payments and tasks are drawn from
named counters kept in storage. Drawing a number inside a business
transaction makes a rolled-back operation give its number back.
"""

from datetime import date
from typing import Optional

from .storage import StorageInterface
from .errors import ConflictError


class SequenceGenerator:
    """Monotonic named counters"""

    def __init__(self, storage: StorageInterface, table_name: str = "sequences"):
        self.storage = storage
        self.table_name = table_name

    def next_value(self, key: str) -> int:
        """Increment and return the counter for key, starting at 1"""
        with self.storage.atomic():
            # the row must exist before it can be locked
            try:
                self.storage.insert(self.table_name, key, {'id': key, 'value': 0})
            except ConflictError:
                pass
            current = self.storage.lock_for_update(self.table_name, key)
            value = (current or {}).get('value', 0) + 1
            self.storage.save(self.table_name, key, {'id': key, 'value': value})
            return value

    def current_value(self, key: str) -> int:
        current = self.storage.load(self.table_name, key)
        return (current or {}).get('value', 0)

    def next_visit_number(self, year: int) -> str:
        """FV-2024-000001"""
        return f"FV-{year}-{self.next_value(f'field_visit:{year}'):06d}"

    def next_notice_number(self, year: int) -> str:
        """ENF-2024-000001"""
        return f"ENF-{year}-{self.next_value(f'enforcement_notice:{year}'):06d}"

    def next_payment_number(self, year: int) -> str:
        """PAY-2024-000001"""
        return f"PAY-{year}-{self.next_value(f'payment:{year}'):06d}"

    def next_receipt_number(self, year: int) -> str:
        """RCP-2024-000001"""
        return f"RCP-{year}-{self.next_value(f'receipt:{year}'):06d}"

    def next_task_number(self, collector_id: str, task_date: date,
                         collector_code: Optional[str] = None) -> str:
        """TASK-20240630-<collector>-001, sequential per collector per day"""
        day = task_date.strftime('%Y%m%d')
        seq = self.next_value(f"task:{collector_id}:{day}")
        return f"TASK-{day}-{collector_code or collector_id}-{seq:03d}"
