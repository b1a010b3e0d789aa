"""Month-end reconciliation core.

Tracks whether re-measured district statistics for a reporting month have
stopped changing and decides when the month's data is final. Services live in
``month_end.services``, control-flow drivers (scheduler, batch processor) in
``month_end.jobs``.
"""

__all__: list[str] = []
