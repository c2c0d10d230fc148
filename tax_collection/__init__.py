"""
Tax Collection Engine

Arrears escalation and accrual core for municipal tax collection: penalty and
interest accrual on overdue demands, follow-up escalation driven by field
visits, and prioritized daily task queues for collectors.
"""

__version__ = "1.0.0"
