"""
Workshop enrollment admission core.

Seat admission, waitlist promotion, payment-event reconciliation and
exactly-once refunds for workshop enrollments.
"""

__version__ = "1.0.0"
