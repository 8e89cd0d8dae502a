"""
Transactions module.

Scope:
- Admin create / update / delete with breakdown totals checked against the amount
- Scoped listing for admins (allowedServices) and owner-only listing for citizens
- Aggregation reports, dashboard stats and CSV export

All period boundaries are computed in UTC.
"""
