"""
Online payments through PayMongo hosted checkout.

Hard constraints:
- Webhooks are rejected unless the signature header verifies
- Settled transactions (paid, refunded, completed) are never cancelled
- One email per outcome per transaction
"""
