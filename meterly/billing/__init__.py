"""
Billing and quota metering.

- periods.py: canonical period keys
- plans.py: plan catalog (included quota per period)
- usage_ledger.py: durable usage counters
- quota.py: allow/deny decisions
- usage_recorder.py: exactly-once usage recording
- webhooks.py: billing event convergence
- provisioning.py: organization/subscription provisioning
- stripe_events.py, stripe_client.py: Stripe adapter
"""
